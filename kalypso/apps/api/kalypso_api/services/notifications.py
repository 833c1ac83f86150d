"""Notification fan-out.

Notifications are filtered at creation time against the user's stored
preferences: a disabled category or a priority below the user's threshold
means the row is never written. Writes are failure-isolated: callers commit
their business change first, and a failed notification insert is rolled back
and logged without raising.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from kalypso_api.db.models import Notification, NotificationPreference
from kalypso_api.errors import ClientInputError, NotFoundLocal
from kalypso_api.utils.sanitize import json_safe

logger = logging.getLogger(__name__)

PRIORITY_LEVELS: dict[str, int] = {"low": 0, "normal": 1, "high": 2, "urgent": 3}

NOTIFICATION_TYPES = frozenset(
    {"success", "error", "warning", "info", "kyc", "transaction", "card", "account"}
)

# general is always delivered; categories missing from this map are too
CATEGORY_FLAGS: dict[str, str] = {
    "transaction": "enable_transaction_notifications",
    "card": "enable_card_notifications",
    "wallet": "enable_wallet_notifications",
    "kyc": "enable_kyc_notifications",
    "security": "enable_security_notifications",
    "system": "enable_system_notifications",
}

PREFERENCE_FIELDS = frozenset(
    set(CATEGORY_FLAGS.values())
    | {
        "min_priority_level",
        "enable_email_notifications",
        "email_for_high_priority",
        "enable_push_notifications",
        "push_for_urgent",
    }
)


def priority_level(priority: Optional[str]) -> int:
    """Numeric rank of a priority name; unknown names rank as normal."""
    return PRIORITY_LEVELS.get(priority or "normal", PRIORITY_LEVELS["normal"])


def category_enabled(prefs: Optional[NotificationPreference], category: str) -> bool:
    if prefs is None:
        return True
    flag = CATEGORY_FLAGS.get(category)
    if flag is None:
        return True
    # An unset flag (row not yet flushed) follows the column default: enabled
    return getattr(prefs, flag) is not False


def should_deliver(
    prefs: Optional[NotificationPreference], category: str, priority: str
) -> bool:
    """Decide whether a notification passes the user's preference filter."""
    if not category_enabled(prefs, category):
        return False
    if prefs is None:
        return True
    minimum = PRIORITY_LEVELS.get(prefs.min_priority_level, 0)
    return priority_level(priority) >= minimum


@dataclass(frozen=True)
class NotificationDraft:
    """A notification a domain operation wants to emit."""

    type: str
    title: str
    message: str
    data: Optional[dict[str, Any]] = None
    priority: str = "normal"
    category: str = "general"
    action_url: Optional[str] = None
    expires_at: Optional[datetime] = None


class NotificationService:
    """Creates, filters and manages user notifications."""

    def __init__(self, db: Session):
        self.db = db

    def get_preferences(self, user_id: str) -> Optional[NotificationPreference]:
        stmt = select(NotificationPreference).where(NotificationPreference.user_id == user_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def notify(self, user_id: str, draft: NotificationDraft) -> Optional[Notification]:
        """Persist ``draft`` for ``user_id`` unless preferences suppress it.

        Returns:
            The created Notification, or None when suppressed or the write failed
        """
        try:
            prefs = self.get_preferences(user_id)
            if not should_deliver(prefs, draft.category, draft.priority):
                logger.info(
                    "NOTIFICATION_SUPPRESSED",
                    extra={
                        "notification_user_id": user_id,
                        "category": draft.category,
                        "priority": draft.priority,
                    },
                )
                return None

            notification = Notification(
                user_id=user_id,
                type=draft.type,
                title=draft.title,
                message=draft.message,
                data=json_safe(draft.data or {}),
                priority=draft.priority,
                category=draft.category,
                action_url=draft.action_url,
                expires_at=draft.expires_at,
            )
            self.db.add(notification)
            self.db.commit()
            return notification
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error(
                "NOTIFICATION_WRITE_FAILED",
                extra={
                    "notification_user_id": user_id,
                    "title": draft.title,
                    "error_type": type(exc).__name__,
                    "error_msg": str(exc),
                },
            )
            return None

    def has_notified(self, user_id: str, title: str, key: str, value: str) -> bool:
        """True when ``user_id`` already holds a ``title`` notification with ``data[key] == value``."""
        stmt = (
            select(Notification.id)
            .where(
                Notification.user_id == user_id,
                Notification.title == title,
                Notification.data[key].as_string() == value,
            )
            .limit(1)
        )
        return self.db.execute(stmt).first() is not None

    # ------------------------------------------------------------------
    # Inbox management
    # ------------------------------------------------------------------

    def list_notifications(
        self,
        user_id: str,
        *,
        unread_only: bool = False,
        category: Optional[str] = None,
        priority: Optional[str] = None,
        limit: int = 50,
    ) -> list[Notification]:
        stmt = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            stmt = stmt.where(Notification.read.is_(False))
        if category:
            stmt = stmt.where(Notification.category == category)
        if priority:
            stmt = stmt.where(Notification.priority == priority)
        stmt = stmt.order_by(Notification.created_at.desc()).limit(max(1, min(limit, 100)))
        return list(self.db.execute(stmt).scalars())

    def unread_count(self, user_id: str) -> int:
        stmt = select(func.count()).select_from(Notification).where(
            Notification.user_id == user_id, Notification.read.is_(False)
        )
        return int(self.db.execute(stmt).scalar_one())

    def mark_read(self, user_id: str, notification_id: str) -> Notification:
        stmt = select(Notification).where(
            Notification.id == notification_id, Notification.user_id == user_id
        )
        notification = self.db.execute(stmt).scalar_one_or_none()
        if notification is None:
            raise NotFoundLocal(f"Notification {notification_id} not found")
        notification.read = True
        self.db.commit()
        return notification

    def mark_all_read(self, user_id: str) -> int:
        result = self.db.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.read.is_(False))
            .values(read=True)
        )
        self.db.commit()
        return result.rowcount or 0

    def delete_notification(self, user_id: str, notification_id: str) -> None:
        result = self.db.execute(
            delete(Notification).where(
                Notification.id == notification_id, Notification.user_id == user_id
            )
        )
        if not result.rowcount:
            self.db.rollback()
            raise NotFoundLocal(f"Notification {notification_id} not found")
        self.db.commit()

    def clear_read(self, user_id: str) -> int:
        result = self.db.execute(
            delete(Notification).where(
                Notification.user_id == user_id, Notification.read.is_(True)
            )
        )
        self.db.commit()
        return result.rowcount or 0

    def update_preferences(self, user_id: str, updates: dict[str, Any]) -> NotificationPreference:
        """Create or update the user's preference row.

        Raises:
            ClientInputError: Unknown field or invalid minimum priority
        """
        unknown = set(updates) - PREFERENCE_FIELDS
        if unknown:
            raise ClientInputError(f"Unknown preference fields: {sorted(unknown)}")
        level = updates.get("min_priority_level")
        if level is not None and level not in PRIORITY_LEVELS:
            raise ClientInputError(
                f"min_priority_level must be one of {sorted(PRIORITY_LEVELS, key=PRIORITY_LEVELS.get)}"
            )

        prefs = self.get_preferences(user_id)
        if prefs is None:
            prefs = NotificationPreference(user_id=user_id)
            self.db.add(prefs)
        for key, value in updates.items():
            if value is not None:
                setattr(prefs, key, value)
        self.db.commit()
        return prefs
