"""Received → Routed → Handled | Handler-Failed.

``process_event`` never raises for a handler failure: the failure is logged,
audited with the raw event for manual replay, and reported in the outcome so
the HTTP layer can still acknowledge the delivery.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from kalypso_api.audit.sinks import AuditRecord, write_audit
from kalypso_api.context import webhook_event_id_var
from kalypso_api.utils.sanitize import sanitize_str
from kalypso_api.webhooks.dedup import mark_dedup_done, mark_dedup_failed, try_acquire_dedup
from kalypso_api.webhooks.events import BridgeEvent, WebhookEventType
from kalypso_api.webhooks.handlers import HANDLERS, WebhookContext

logger = logging.getLogger(__name__)


@dataclass
class WebhookOutcome:
    event_type: Optional[str] = None
    handled: bool = False
    duplicate: bool = False
    error: Optional[str] = None

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {"received": True}
        if self.duplicate:
            body["duplicate"] = True
        if self.error is not None:
            body["error"] = self.error
        return body


async def process_event(
    ctx: WebhookContext,
    event: BridgeEvent,
    raw: Optional[dict[str, Any]] = None,
    *,
    payload_hash: Optional[str] = None,
) -> WebhookOutcome:
    """Route one parsed event to its handler with failure isolation."""
    token = webhook_event_id_var.set(event.id or "")
    try:
        if raw is None:
            raw = {"id": event.id, "type": event.type, "data": event.data}
        return await _process(ctx, event, raw, payload_hash)
    finally:
        webhook_event_id_var.reset(token)


async def _process(
    ctx: WebhookContext,
    event: BridgeEvent,
    raw: dict[str, Any],
    payload_hash: Optional[str],
) -> WebhookOutcome:
    outcome = WebhookOutcome(event_type=event.type)

    # ── Received ─────────────────────────────────────────────────────────────
    logger.info("WEBHOOK_RECEIVED", extra={"event_type": event.type, "payload_hash": payload_hash})
    write_audit(
        ctx.audit,
        AuditRecord(
            event_type="bridge_webhook_received",
            description=f"Bridge webhook: {event.type}",
            data=raw,
            bridge_event_id=event.id,
            bridge_event_type=event.type,
        ),
    )

    # ── Routed ───────────────────────────────────────────────────────────────
    handler = HANDLERS.get(event.kind)
    if event.kind is WebhookEventType.UNKNOWN or handler is None:
        logger.info("WEBHOOK_EVENT_UNHANDLED", extra={"event_type": event.type})
        return outcome

    # Deliveries without an event id cannot be deduplicated; handlers are idempotent anyway
    if event.id and not try_acquire_dedup(
        ctx.db, event.id, event_type=event.type, request_hash=payload_hash
    ):
        outcome.duplicate = True
        return outcome

    # ── Handled | Handler-Failed ─────────────────────────────────────────────
    try:
        await handler(ctx, event)
    except Exception as exc:
        ctx.db.rollback()
        if event.id:
            mark_dedup_failed(ctx.db, event.id)
        message = sanitize_str(str(exc)) or type(exc).__name__
        outcome.error = message
        logger.error(
            "WEBHOOK_HANDLER_FAILED",
            extra={
                "event_type": event.type,
                "error_type": type(exc).__name__,
                "error_msg": message,
            },
            exc_info=True,
        )
        write_audit(
            ctx.audit,
            AuditRecord(
                event_type="bridge_webhook_error",
                description=f"Failed to process Bridge webhook: {message}",
                data={"error": message, "error_type": type(exc).__name__, "event": raw},
                bridge_event_id=event.id,
                bridge_event_type=event.type,
            ),
        )
        return outcome

    if event.id:
        mark_dedup_done(ctx.db, event.id)
    outcome.handled = True
    logger.info("WEBHOOK_HANDLED", extra={"event_type": event.type})
    return outcome
