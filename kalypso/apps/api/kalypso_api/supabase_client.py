"""Supabase client for bearer-token verification.

The API only asks Supabase Auth who a token belongs to; it never signs users
up or in. The publishable key is enough for ``auth.get_user``.

KEY NAMING:
- Supabase UI 2024+: SB_PUBLISHABLE_KEY
- Legacy: SUPABASE_ANON_KEY (used when the new name is not set)
"""

import logging
import os
from functools import lru_cache

from supabase import Client, create_client

logger = logging.getLogger(__name__)


def get_supabase_url() -> str:
    """Supabase project URL.

    Raises:
        RuntimeError: If SUPABASE_URL is not set
    """
    url = os.getenv("SUPABASE_URL")
    if not url:
        raise RuntimeError("SUPABASE_URL environment variable not set. Required for bearer-token verification.")
    return url


def get_supabase_api_key() -> str:
    """Supabase publishable key (SB_PUBLISHABLE_KEY, then legacy SUPABASE_ANON_KEY).

    Raises:
        RuntimeError: If neither key is set
    """
    key = os.getenv("SB_PUBLISHABLE_KEY")
    if key:
        return key

    key = os.getenv("SUPABASE_ANON_KEY")
    if key:
        logger.info("Using legacy SUPABASE_ANON_KEY (consider migrating to SB_PUBLISHABLE_KEY)")
        return key

    raise RuntimeError(
        "Neither SB_PUBLISHABLE_KEY nor SUPABASE_ANON_KEY environment variable is set. "
        "Set SB_PUBLISHABLE_KEY (recommended) or SUPABASE_ANON_KEY (legacy)."
    )


@lru_cache(maxsize=1)
def get_supabase_client() -> Client:
    """Process-wide Supabase client (respects RLS)."""
    url = get_supabase_url()
    api_key = get_supabase_api_key()

    logger.info("SUPABASE_CLIENT_INITIALIZED", extra={"supabase_url": url, "key_type": "publishable"})
    return create_client(url, api_key)
