"""Database engine builder.

The mirror lives in Supabase Postgres and is reached over the Supabase pooler
with the service-role connection string (row-level security is bypassed for
backend writes; end users never connect directly through this engine).

- Default pool: NullPool (the Supabase transaction pooler does the pooling)
- Supabase host → sslmode=require unless the URL already pins a mode
- ENV: KALYPSO_DB_POOL=nullpool|queuepool (default: nullpool)
"""

import logging
import os
import re
from typing import Any
from urllib.parse import parse_qs, urlparse

from sqlalchemy import Engine, NullPool, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


def is_supabase_host(url: str) -> bool:
    """Return True if the URL points to a Supabase-managed host."""
    return ".supabase.co" in url or ".pooler.supabase.com" in url


def _mask_password(url: str) -> str:
    """Mask password in database URL for safe logging."""
    return re.sub(r"://([^:]+):([^@]+)@", r"://\1:***@", url)


def _url_sslmode(url: str) -> str | None:
    modes = parse_qs(urlparse(url).query).get("sslmode", [])
    return modes[0] if modes else None


def build_engine(database_url: str | None = None) -> Engine:
    """Build SQLAlchemy engine for the mirror.

    Args:
        database_url: Database URL. If None, reads from env DATABASE_URL.

    Returns:
        SQLAlchemy Engine instance.

    Raises:
        ValueError: If no URL is available or KALYPSO_DB_POOL is invalid.

    Environment Variables:
        DATABASE_URL: Runtime connection string (required if not passed as arg)
        KALYPSO_DB_POOL: Pool mode - "nullpool" (default) | "queuepool"
        KALYPSO_DB_POOL_SIZE: QueuePool size (default: 5, only for queuepool)
        KALYPSO_DB_MAX_OVERFLOW: QueuePool overflow (default: 10, only for queuepool)
    """
    url = database_url or os.getenv("DATABASE_URL")
    if not url:
        raise ValueError(
            "DATABASE_URL is required. "
            "Pass as argument or set DATABASE_URL environment variable."
        )

    if url.startswith("sqlite"):
        # Local/test only: single shared connection for in-memory databases
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    connect_args: dict[str, Any] = {}
    if is_supabase_host(url) and _url_sslmode(url) is None:
        connect_args["sslmode"] = "require"
    connect_args["application_name"] = os.getenv("KALYPSO_DB_APPLICATION_NAME", "kalypso-api")

    pool_mode = os.getenv("KALYPSO_DB_POOL", "nullpool").lower()

    if pool_mode == "nullpool":
        engine = create_engine(
            url,
            poolclass=NullPool,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
    elif pool_mode == "queuepool":
        engine = create_engine(
            url,
            pool_pre_ping=True,
            pool_size=int(os.getenv("KALYPSO_DB_POOL_SIZE", "5")),
            max_overflow=int(os.getenv("KALYPSO_DB_MAX_OVERFLOW", "10")),
            connect_args=connect_args,
        )
    else:
        raise ValueError(
            f"Invalid KALYPSO_DB_POOL value: {pool_mode}. "
            "Must be 'nullpool' or 'queuepool'."
        )

    logger.debug(
        "Database engine created: pool=%s, url=%s",
        engine.pool.__class__.__name__,
        _mask_password(url),
    )
    return engine


def build_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    """Build SQLAlchemy sessionmaker (autocommit=False, autoflush=False)."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
