"""Environment variable resolution utilities.

Canonical env names + fail-fast validation. Bridge settings are resolved once
at app startup and handed to the client; nothing below caches across calls so
tests can monkeypatch the environment freely.
"""

import os
from typing import Optional

BRIDGE_DEFAULT_BASE_URL = "https://api.bridge.xyz/v0"
_VALID_BRIDGE_ENVIRONMENTS = frozenset({"sandbox", "production"})


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def get_kalypso_env() -> str:
    """Return the deployment environment name (lower-cased, may be empty)."""
    return os.getenv("KALYPSO_ENV", "").strip().lower()


def is_production() -> bool:
    return get_kalypso_env() in {"prod", "production"}


def get_bridge_api_key() -> str:
    """Get Bridge API key from environment.

    Required: BRIDGE_API_KEY

    Raises:
        ValueError: If BRIDGE_API_KEY is not set
    """
    api_key = os.getenv("BRIDGE_API_KEY")
    if not api_key:
        raise ValueError(
            "BRIDGE_API_KEY is required. "
            "Set BRIDGE_API_KEY to the sandbox or production key from the Bridge dashboard."
        )
    return api_key


def get_bridge_environment() -> str:
    """Get Bridge environment (sandbox | production).

    Raises:
        ValueError: If BRIDGE_ENVIRONMENT holds any other value
    """
    environment = os.getenv("BRIDGE_ENVIRONMENT", "sandbox").strip().lower()
    if environment not in _VALID_BRIDGE_ENVIRONMENTS:
        raise ValueError(
            f"BRIDGE_ENVIRONMENT={environment!r} is not valid. "
            f"Allowed values: {sorted(_VALID_BRIDGE_ENVIRONMENTS)}."
        )
    return environment


def get_bridge_base_url() -> str:
    """Get Bridge API base URL (BRIDGE_BASE_URL, defaults to the public v0 API)."""
    return os.getenv("BRIDGE_BASE_URL", BRIDGE_DEFAULT_BASE_URL).rstrip("/")


def get_bridge_timeout_seconds() -> float:
    return _get_float("BRIDGE_TIMEOUT_SECONDS", 30.0)


def get_bridge_retry_attempts() -> int:
    """Maximum number of retries after the first attempt (BRIDGE_RETRY_ATTEMPTS)."""
    attempts = _get_int("BRIDGE_RETRY_ATTEMPTS", 3)
    if attempts < 0:
        raise ValueError(f"BRIDGE_RETRY_ATTEMPTS must be >= 0, got {attempts}")
    return attempts


def get_bridge_retry_delay_seconds() -> float:
    delay = _get_float("BRIDGE_RETRY_DELAY_SECONDS", 1.0)
    if delay < 0:
        raise ValueError(f"BRIDGE_RETRY_DELAY_SECONDS must be >= 0, got {delay}")
    return delay


def get_wallet_history_limit() -> int:
    """History page size used when recomputing wallet balances."""
    limit = _get_int("BRIDGE_WALLET_HISTORY_LIMIT", 100)
    if limit <= 0:
        raise ValueError(f"BRIDGE_WALLET_HISTORY_LIMIT must be positive, got {limit}")
    return limit


def get_bridge_webhook_secret() -> Optional[str]:
    """Shared secret for webhook signature checks (None disables verification)."""
    secret = os.getenv("BRIDGE_WEBHOOK_SECRET")
    return secret or None


def get_webhook_processing_lease_seconds() -> int:
    """Age after which a webhook stuck in 'processing' may be reclaimed."""
    lease = _get_int("BRIDGE_WEBHOOK_PROCESSING_LEASE_SECONDS", 300)
    if lease <= 0:
        raise ValueError(f"BRIDGE_WEBHOOK_PROCESSING_LEASE_SECONDS must be positive, got {lease}")
    return lease


def get_cors_allowed_origins() -> list[str]:
    """CORS allowlist (comma-separated CORS_ALLOWED_ORIGINS, localhost fallback)."""
    raw = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if raw:
        return [origin.strip() for origin in raw.split(",") if origin.strip()]
    return [
        "http://localhost:3000",
        "http://localhost:8000",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:8000",
    ]
