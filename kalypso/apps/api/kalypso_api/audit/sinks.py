"""Audit sink implementations.

Every Bridge API attempt and every webhook received/failed ends up as one
append-only ``audit_logs`` row. Sinks are synchronous; callers that must not
block (the Bridge client) schedule writes through ``BestEffortRunner``, and
callers inside a request use ``write_audit`` which never raises.

Sink selection (get_default_audit_sink):
  KALYPSO_AUDIT_SINK=log → LoggingAuditSink (local dev without a database)
  otherwise              → DatabaseAuditSink (own session per record)

Test helpers:
  FailingAuditSink → always raises RuntimeError
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from kalypso_api.utils.sanitize import json_safe, sanitize_obj

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditRecord:
    """One audit log entry."""

    event_type: str
    description: str
    data: dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    bridge_event_id: Optional[str] = None
    bridge_event_type: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@runtime_checkable
class AuditSink(Protocol):
    """Minimal interface for all audit sinks."""

    def write(self, record: AuditRecord) -> None:
        """Persist one record. May raise; callers isolate failures."""
        ...


class DatabaseAuditSink:
    """Writes to ``audit_logs`` using a fresh session per record.

    The dedicated session keeps the audit write outside whatever business
    transaction triggered it.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def write(self, record: AuditRecord) -> None:
        from kalypso_api.db.models import AuditLog

        db = self._session_factory()
        try:
            db.add(
                AuditLog(
                    user_id=record.user_id,
                    event_type=record.event_type,
                    event_description=record.description,
                    event_data=json_safe(sanitize_obj(record.data)),
                    bridge_event_id=record.bridge_event_id,
                    bridge_event_type=record.bridge_event_type,
                    ip_address=record.ip_address,
                    user_agent=record.user_agent,
                )
            )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()


class LoggingAuditSink:
    """Emits audit records as structured log lines (no database)."""

    def write(self, record: AuditRecord) -> None:
        logger.info(
            "AUDIT_RECORD",
            extra={
                "audit_event_type": record.event_type,
                "audit_description": record.description,
                "audit_data": json_safe(record.data),
                "audit_user_id": record.user_id,
                "bridge_event_id": record.bridge_event_id,
            },
        )


class FailingAuditSink:
    """Always raises on write. Used to prove audit failures stay isolated."""

    def write(self, record: AuditRecord) -> None:
        raise RuntimeError(f"audit sink unavailable ({record.event_type})")


def write_audit(sink: Optional[AuditSink], record: AuditRecord) -> bool:
    """Write ``record`` synchronously; log and swallow any sink failure.

    Returns:
        True if the sink accepted the record
    """
    if sink is None:
        return False
    try:
        sink.write(record)
        return True
    except Exception as exc:
        logger.error(
            "AUDIT_WRITE_FAILED",
            extra={
                "audit_event_type": record.event_type,
                "error_type": type(exc).__name__,
                "error_msg": str(exc),
            },
        )
        return False


def get_default_audit_sink() -> AuditSink:
    """Select the audit sink for the running app."""
    if os.getenv("KALYPSO_AUDIT_SINK", "").strip().lower() == "log":
        return LoggingAuditSink()

    from kalypso_api.db.session import SessionLocal

    return DatabaseAuditSink(SessionLocal)
