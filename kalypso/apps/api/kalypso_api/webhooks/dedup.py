"""Webhook dedup gate: atomic INSERT ON CONFLICT on (provider, event id).

1. INSERT ... ON CONFLICT (provider, dedup_key) DO NOTHING RETURNING id
     row returned : first delivery → process
     no row       : seen before → step 2
2. UPDATE ... WHERE status = 'failed' RETURNING id
     row returned : earlier attempt failed → reclaim and reprocess
3. UPDATE ... WHERE status = 'processing' AND claimed before the lease RETURNING id
     row returned : earlier worker died mid-flight → reclaim and reprocess
     no row       : 'done' or concurrently 'processing' → duplicate, skip

The UNIQUE constraint on (provider, dedup_key) guarantees exactly one INSERT
wins under concurrent redelivery.
"""

import logging
import uuid
from datetime import timedelta
from typing import Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from kalypso_api.config import env
from kalypso_api.utils.time import utc_now

logger = logging.getLogger(__name__)

PROVIDER = "bridge"


def try_acquire_dedup(
    db: Session,
    dedup_key: str,
    *,
    event_type: Optional[str] = None,
    request_hash: Optional[str] = None,
    provider: str = PROVIDER,
    lease_seconds: Optional[int] = None,
) -> bool:
    """Claim processing rights for an event.

    A row left in 'processing' for longer than ``lease_seconds`` (default
    BRIDGE_WEBHOOK_PROCESSING_LEASE_SECONDS) belongs to a worker that never
    finished, and is reclaimed.

    Returns:
        True when this delivery should be processed, False for a duplicate
    """
    now = utc_now()

    inserted = db.execute(
        text("""
            INSERT INTO webhook_events
                (id, provider, dedup_key, event_type, status, request_hash, first_seen_at)
            VALUES
                (:id, :provider, :dedup_key, :event_type, 'processing', :request_hash, :now)
            ON CONFLICT (provider, dedup_key) DO NOTHING
            RETURNING id
        """),
        {
            "id": str(uuid.uuid4()),
            "provider": provider,
            "dedup_key": dedup_key,
            "event_type": event_type,
            "request_hash": request_hash,
            "now": now,
        },
    ).fetchone()
    if inserted is not None:
        db.commit()
        logger.debug("WEBHOOK_DEDUP_ACQUIRED", extra={"dedup_key": dedup_key})
        return True

    reclaimed = db.execute(
        text("""
            UPDATE webhook_events
            SET status = 'processing', last_seen_at = :now
            WHERE provider = :provider AND dedup_key = :dedup_key AND status = 'failed'
            RETURNING id
        """),
        {"provider": provider, "dedup_key": dedup_key, "now": now},
    ).fetchone()
    if reclaimed is not None:
        db.commit()
        logger.info("WEBHOOK_DEDUP_RECLAIMED", extra={"dedup_key": dedup_key})
        return True

    lease = lease_seconds if lease_seconds is not None else env.get_webhook_processing_lease_seconds()
    stale = db.execute(
        text("""
            UPDATE webhook_events
            SET status = 'processing', last_seen_at = :now
            WHERE provider = :provider AND dedup_key = :dedup_key AND status = 'processing'
              AND COALESCE(last_seen_at, first_seen_at) < :stale_before
            RETURNING id
        """),
        {
            "provider": provider,
            "dedup_key": dedup_key,
            "now": now,
            "stale_before": now - timedelta(seconds=lease),
        },
    ).fetchone()
    db.commit()
    if stale is not None:
        logger.warning(
            "WEBHOOK_DEDUP_STALE_RECLAIMED",
            extra={"dedup_key": dedup_key, "lease_seconds": lease},
        )
        return True

    logger.info("WEBHOOK_DEDUP_DUPLICATE", extra={"dedup_key": dedup_key})
    return False


def _mark(db: Session, dedup_key: str, status: str, provider: str) -> None:
    db.execute(
        text("""
            UPDATE webhook_events
            SET status = :status, last_seen_at = :now
            WHERE provider = :provider AND dedup_key = :dedup_key
        """),
        {"status": status, "provider": provider, "dedup_key": dedup_key, "now": utc_now()},
    )
    db.commit()


def mark_dedup_done(db: Session, dedup_key: str, *, provider: str = PROVIDER) -> None:
    _mark(db, dedup_key, "done", provider)


def mark_dedup_failed(db: Session, dedup_key: str, *, provider: str = PROVIDER) -> None:
    """Leave the event reclaimable by a later redelivery."""
    _mark(db, dedup_key, "failed", provider)
