"""Bridge webhook endpoint.

Response policy:
  (A) Signature configured and missing/invalid → 401 (body never enters the pipeline)
  (B) Everything else → 200 {"received": true}, plus "error" when processing
      failed and "duplicate" when the event was already handled

Bridge redelivers on any non-2xx, so parse errors and handler failures are
acknowledged and left in the audit log for manual replay instead.
"""

import hashlib
import hmac
import json as _json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from kalypso_api.audit.sinks import AuditRecord, write_audit
from kalypso_api.config.env import get_bridge_webhook_secret
from kalypso_api.context import request_id_var
from kalypso_api.db.session import get_db
from kalypso_api.errors import ClientInputError
from kalypso_api.utils.sanitize import payload_hash_bytes, sanitize_str
from kalypso_api.webhooks.events import parse_event
from kalypso_api.webhooks.handlers import WebhookContext
from kalypso_api.webhooks.pipeline import process_event

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"


def verify_signature(secret: str, raw_body: bytes, signature: Optional[str]) -> bool:
    """Constant-time check of a hex HMAC-SHA256 of the raw body."""
    if not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    candidate = signature.strip()
    if candidate.startswith("sha256="):
        candidate = candidate[len("sha256="):]
    return hmac.compare_digest(expected, candidate.lower())


def _signature_problem(request: Request, payload_hash: str) -> JSONResponse:
    request_id = request_id_var.get(None)
    logger.warning(
        "WEBHOOK_SIGNATURE_INVALID",
        extra={"provider": "bridge", "payload_hash": payload_hash},
    )
    return JSONResponse(
        status_code=401,
        content={
            "type": "urn:kalypso:webhook:webhook_signature_invalid",
            "title": "Webhook signature verification failed",
            "status": 401,
            "provider": "bridge",
            "error_code": "WEBHOOK_SIGNATURE_INVALID",
            "payload_hash": payload_hash,
            "instance": request_id or str(request.url.path),
        },
        headers={"Content-Type": "application/problem+json"},
    )


def _ack(body: dict) -> JSONResponse:
    return JSONResponse(status_code=200, content=body)


@router.post("/bridge")
async def bridge_webhook(
    request: Request,
    x_webhook_signature: Optional[str] = Header(None, alias=SIGNATURE_HEADER),
    db: Session = Depends(get_db),
):
    # ── Step 0: Raw body ingestion ───────────────────────────────────────────
    raw_body: bytes = await request.body()
    payload_hash = payload_hash_bytes(raw_body)
    request.state.payload_hash = payload_hash

    # ── Step 1: Signature (only when a secret is configured) ────────────────
    secret = get_bridge_webhook_secret()
    if secret and not verify_signature(secret, raw_body, x_webhook_signature):
        return _signature_problem(request, payload_hash)

    audit = getattr(request.app.state, "audit_sink", None)

    # ── Step 2: JSON + envelope parsing (acknowledged, audited) ─────────────
    try:
        body = _json.loads(raw_body)
        event = parse_event(body)
    except (ValueError, ClientInputError) as exc:
        message = exc.message if isinstance(exc, ClientInputError) else "Request body is not valid JSON"
        logger.warning(
            "WEBHOOK_INVALID_PAYLOAD",
            extra={"provider": "bridge", "payload_hash": payload_hash, "error_msg": message},
        )
        write_audit(
            audit,
            AuditRecord(
                event_type="bridge_webhook_error",
                description=f"Failed to process Bridge webhook: {message}",
                data={"error": message, "payload_hash": payload_hash, "raw": sanitize_str(raw_body.decode("utf-8", "replace"))},
            ),
        )
        return _ack({"received": True, "error": message})

    # ── Step 3: Dedup gate + dispatch ───────────────────────────────────────
    try:
        ctx = WebhookContext(client=request.app.state.bridge_client, db=db, audit=audit)
        outcome = await process_event(ctx, event, body, payload_hash=payload_hash)
        return _ack(outcome.to_response())
    except Exception as exc:
        db.rollback()
        message = sanitize_str(str(exc)) or type(exc).__name__
        logger.error(
            "WEBHOOK_INTERNAL_ERROR",
            extra={
                "provider": "bridge",
                "payload_hash": payload_hash,
                "error_type": type(exc).__name__,
                "error_msg": message,
            },
            exc_info=True,
        )
        return _ack({"received": True, "error": message})
