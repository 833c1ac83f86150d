"""Shared plumbing for Bridge-backed domain services."""

import logging
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from kalypso_api.audit.sinks import AuditRecord, AuditSink, write_audit
from kalypso_api.bridge.client import BridgeClient
from kalypso_api.db.models import User
from kalypso_api.errors import NotFoundLocal, PersistenceError, PreconditionFailed
from kalypso_api.services.notifications import NotificationDraft, NotificationService

logger = logging.getLogger(__name__)


class BridgeService:
    """Base for services that own one Bridge resource type.

    Args:
        client: Shared Bridge API client
        db: Request-scoped session on the mirror
        notifier: Notification fan-out bound to the same session
        audit: Audit sink (writes are failure-isolated)
    """

    def __init__(
        self,
        client: BridgeClient,
        db: Session,
        notifier: Optional[NotificationService] = None,
        audit: Optional[AuditSink] = None,
    ):
        self.client = client
        self.db = db
        self.notifier = notifier or NotificationService(db)
        self.audit = audit

    def get_user(self, user_id: str) -> User:
        user = self.db.get(User, user_id)
        if user is None:
            raise NotFoundLocal(f"User {user_id} not found")
        return user

    def require_customer(self, user_id: str) -> User:
        """Return the user if it is linked to a Bridge customer.

        Raises:
            NotFoundLocal: Unknown user
            PreconditionFailed: KYC never started, so no Bridge customer exists
        """
        user = self.get_user(user_id)
        if not user.bridge_customer_id:
            raise PreconditionFailed("User must complete KYC first")
        return user

    def commit(self) -> None:
        """Commit the business write, normalizing store failures.

        Raises:
            PersistenceError: If the commit fails (session is rolled back)
        """
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error(
                "MIRROR_WRITE_FAILED",
                extra={"error_type": type(exc).__name__, "error_msg": str(exc)},
            )
            raise PersistenceError("Failed to save changes") from exc

    def record_audit(
        self,
        event_type: str,
        description: str,
        data: Optional[dict[str, Any]] = None,
        *,
        user_id: Optional[str] = None,
        bridge_event_id: Optional[str] = None,
        bridge_event_type: Optional[str] = None,
    ) -> None:
        write_audit(
            self.audit,
            AuditRecord(
                event_type=event_type,
                description=description,
                data=data or {},
                user_id=user_id,
                bridge_event_id=bridge_event_id,
                bridge_event_type=bridge_event_type,
            ),
        )

    def notify(self, user_id: str, draft: NotificationDraft) -> None:
        self.notifier.notify(user_id, draft)
