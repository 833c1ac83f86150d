"""PII / secret / stack-trace sanitizer.

Three-tier string processing:
 1. > MAX_STR_LOG   → truncate + sha256, never run regex
 2. > MAX_STR_FOR_REGEX → prefix check only (Bearer/Basic)
 3. ≤ MAX_STR_FOR_REGEX → full regex replacement

Bridge payloads carry bank account numbers, routing numbers, SSNs and card
data; all of it is redacted by key before a log line or audit record is built.
"""

import hashlib
import re
import traceback
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

# ── Size thresholds ───────────────────────────────────────────────────────────
MAX_STR_LOG: int = 2048   # Truncate whole string; skip regex
MAX_STR_FOR_REGEX: int = 512   # Run prefix check only; skip regex
MAX_DEPTH: int = 6         # Recursive object traversal limit

# ── Sensitive dict keys (lower-cased for comparison) ─────────────────────────
_SENSITIVE_KEYS: frozenset[str] = frozenset({
    "authorization", "token", "access_token", "refresh_token",
    "api_key", "api-key", "secret", "signature", "password",
    "account_number", "routing_number", "ssn", "tax_identification_number",
    "card_number", "pan", "cvv", "cvc", "pin",
})

_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"Bearer \S+"),
    re.compile(r"Basic \S+"),
    re.compile(r"api_key=\S+"),
    re.compile(r"Api-Key: ?\S+", re.IGNORECASE),
    re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
]

_BEARER_PREFIX = "Bearer "
_BASIC_PREFIX = "Basic "


def payload_hash_bytes(raw: bytes) -> str:
    """Return sha256 hex digest of raw bytes."""
    return hashlib.sha256(raw).hexdigest()


def mask_account_number(value: str | None) -> str | None:
    """Keep only the last four digits of a bank or card number."""
    if not value:
        return value
    return f"****{value[-4:]}"


def sanitize_str(s: str) -> str:
    """Sanitize a string value according to three-tier size gate.

    Returns a redacted / truncated string; never the original sensitive value.
    """
    if not isinstance(s, str):
        return s  # type: ignore[return-value]

    n = len(s)

    if n > MAX_STR_LOG:
        digest = hashlib.sha256(s.encode("utf-8", errors="replace")).hexdigest()[:16]
        return f"[TRUNCATED len={n} sha256={digest}]"

    if n > MAX_STR_FOR_REGEX:
        if s.startswith(_BEARER_PREFIX) or s.startswith(_BASIC_PREFIX):
            return "[REDACTED]"
        return s

    result = s
    for pattern in _PATTERNS:
        result = pattern.sub("[REDACTED]", result)
    return result


def sanitize_obj(obj: Any, depth: int = 0) -> Any:
    """Recursively sanitize a log extra value.

    - dict: redact sensitive keys, recurse others
    - list/tuple: recurse each element
    - str: run sanitize_str()
    - other: return as-is

    Depth is capped at MAX_DEPTH to prevent stack overflow on pathological inputs.
    """
    if depth >= MAX_DEPTH:
        return "[DEPTH_LIMIT]"

    if isinstance(obj, dict):
        result: dict[str, Any] = {}
        for key, value in obj.items():
            if isinstance(key, str) and key.lower() in _SENSITIVE_KEYS:
                result[key] = "[REDACTED]"
            else:
                result[key] = sanitize_obj(value, depth + 1)
        return result

    if isinstance(obj, (list, tuple)):
        return [sanitize_obj(item, depth + 1) for item in obj]

    if isinstance(obj, str):
        return sanitize_str(obj)

    return obj


def json_safe(obj: Any) -> Any:
    """Convert Decimal / datetime / UUID values so ``obj`` fits a JSON column."""
    if isinstance(obj, dict):
        return {str(k): json_safe(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [json_safe(item) for item in obj]
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    return obj


def sanitize_exc(exc_info: tuple) -> str:
    """Format an exc_info tuple into a sanitized traceback string.

    Uses capture_locals=False to avoid leaking local variable values
    (which may contain secrets or PII) into log output.
    """
    _type, value, _tb = exc_info
    if value is None:
        return ""
    try:
        te = traceback.TracebackException.from_exception(value, capture_locals=False)
        # Line by line: a whole traceback is usually past the regex size gate
        lines = "".join(te.format()).splitlines()
        return "\n".join(sanitize_str(line) for line in lines)
    except Exception:
        return "[TRACEBACK_FORMAT_ERROR]"
