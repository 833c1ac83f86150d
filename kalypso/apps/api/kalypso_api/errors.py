"""Error taxonomy for Bridge-backed operations.

Every error carries a human-readable ``message`` and the HTTP status the API
layer should answer with. Provider errors additionally carry the Bridge status
code, the raw Bridge error body and the correlation ID of the failing call.
"""

from typing import Any, Optional


class KalypsoError(Exception):
    """Base application error."""

    http_status: int = 500
    title: str = "Internal Server Error"

    def __init__(self, message: str, *, http_status: Optional[int] = None) -> None:
        self.message = message
        if http_status is not None:
            self.http_status = http_status
        super().__init__(message)


class ClientInputError(KalypsoError):
    """Missing or invalid request fields. Never retried."""

    http_status = 400
    title = "Invalid Request"


class PreconditionFailed(KalypsoError):
    """Operation not allowed yet, e.g. KYC not complete."""

    http_status = 412
    title = "Precondition Failed"


class NotFoundLocal(KalypsoError):
    """Referenced entity is absent from the local mirror."""

    http_status = 404
    title = "Not Found"


class PersistenceError(KalypsoError):
    """Write to the mirror failed."""

    http_status = 500
    title = "Persistence Failure"


class ProviderError(KalypsoError):
    """Normalized failure of a Bridge API call.

    Attributes:
        status: HTTP status returned by Bridge (None on network failure)
        provider_error: Parsed Bridge error body, if any
        correlation_id: X-Correlation-ID sent with the failing request
        code: Bridge error code (``code`` field of the body) if present
    """

    http_status = 502
    title = "Bridge API Error"

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        provider_error: Any = None,
        correlation_id: Optional[str] = None,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.provider_error = provider_error
        self.correlation_id = correlation_id
        self.code = code

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "status": self.status,
            "code": self.code,
            "bridge_error": self.provider_error,
            "correlation_id": self.correlation_id,
        }


class ProviderTransientError(ProviderError):
    """Retryable failure (network, timeout, 429, 5xx gateway) after retries ran out."""

    http_status = 503
    title = "Service Temporarily Unavailable"


class ProviderTerminalError(ProviderError):
    """Non-retryable Bridge response (validation error, auth failure, 501, ...)."""
