"""Bridge API client.

Bridge API Reference: https://apidocs.bridge.xyz/

Every request carries:
- Api-Key: account API key
- X-Correlation-ID: fresh UUID per attempt; attempts of one logical call
  share a ``call_id`` in the audit trail
- Idempotency-Key: on POST/PUT/PATCH; caller-supplied or a fresh UUID per
  logical call, and always the same value for every retry of that call

Each attempt is bounded by ``BridgeSettings.timeout`` seconds of wall-clock
time. Retries follow ``RetryPolicy``: network failures (timeouts included) and
429/500/502/503/504 are retried with exponential backoff, anything else fails
immediately. Each attempt is written to the audit trail in the background.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import httpx

from kalypso_api.audit.sinks import AuditRecord, AuditSink
from kalypso_api.bridge.retry import RetryPolicy
from kalypso_api.config import env
from kalypso_api.context import bridge_correlation_id_var, user_id_var
from kalypso_api.errors import ProviderError, ProviderTerminalError, ProviderTransientError
from kalypso_api.utils.background import BestEffortRunner

logger = logging.getLogger(__name__)

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH"})


@dataclass(frozen=True)
class BridgeSettings:
    """Connection settings for one Bridge account."""

    api_key: str
    base_url: str = env.BRIDGE_DEFAULT_BASE_URL
    environment: str = "sandbox"
    timeout: float = 30.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    @classmethod
    def from_env(cls) -> "BridgeSettings":
        """Build settings from BRIDGE_* environment variables.

        Raises:
            ValueError: If BRIDGE_API_KEY is missing or a value is malformed
        """
        return cls(
            api_key=env.get_bridge_api_key(),
            base_url=env.get_bridge_base_url(),
            environment=env.get_bridge_environment(),
            timeout=env.get_bridge_timeout_seconds(),
            retry=RetryPolicy(
                max_retries=env.get_bridge_retry_attempts(),
                base_delay=env.get_bridge_retry_delay_seconds(),
            ),
        )


class BridgeClient:
    """Async Bridge API client with correlation IDs, idempotency keys and retries.

    One instance is created at app startup and shared by every request; all
    per-call state lives on the stack of ``request``.
    """

    def __init__(
        self,
        settings: BridgeSettings,
        *,
        audit_sink: Optional[AuditSink] = None,
        runner: Optional[BestEffortRunner] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings
        self.audit_sink = audit_sink
        self.runner = runner or BestEffortRunner()
        self._sleep = sleep
        self._http = httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=settings.timeout,
            transport=transport,
            headers={
                "Api-Key": settings.api_key,
                "Content-Type": "application/json",
            },
        )

    async def __aenter__(self) -> "BridgeClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Flush pending audit writes and close the connection pool."""
        await self.runner.drain()
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Verbs
    # ------------------------------------------------------------------

    async def get(self, path: str, *, params: Optional[dict] = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(
        self, path: str, json: Optional[dict] = None, *, idempotency_key: Optional[str] = None
    ) -> Any:
        return await self.request("POST", path, json=json, idempotency_key=idempotency_key)

    async def put(
        self, path: str, json: Optional[dict] = None, *, idempotency_key: Optional[str] = None
    ) -> Any:
        return await self.request("PUT", path, json=json, idempotency_key=idempotency_key)

    async def patch(
        self, path: str, json: Optional[dict] = None, *, idempotency_key: Optional[str] = None
    ) -> Any:
        return await self.request("PATCH", path, json=json, idempotency_key=idempotency_key)

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)

    # ------------------------------------------------------------------
    # Dispatch loop
    # ------------------------------------------------------------------

    def build_headers(self, method: str, idempotency_key: Optional[str] = None) -> dict[str, str]:
        """Per-call headers: idempotency key on mutations (correlation ID is per attempt)."""
        headers: dict[str, str] = {}
        if method.upper() in MUTATING_METHODS:
            headers["Idempotency-Key"] = idempotency_key or str(uuid.uuid4())
        return headers

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        """Send one logical request, retrying per the configured policy.

        Args:
            method: HTTP method
            path: Path relative to the base URL (e.g. "/customers")
            json: JSON body
            params: Query parameters (None values are dropped)
            idempotency_key: Stable key for a logical mutation; generated if absent

        Returns:
            Parsed JSON body (``{}`` for empty responses)

        Raises:
            ProviderTransientError: Retryable failure persisted through every retry
            ProviderTerminalError: Non-retryable Bridge response
        """
        method = method.upper()
        headers = self.build_headers(method, idempotency_key)
        call_id = str(uuid.uuid4())
        query = {k: v for k, v in (params or {}).items() if v is not None} or None
        policy = self.settings.retry

        token = bridge_correlation_id_var.set("")
        try:
            retries = 0
            while True:
                attempt = retries + 1
                correlation_id = str(uuid.uuid4())
                bridge_correlation_id_var.set(correlation_id)
                started = time.perf_counter()
                status: Optional[int] = None
                body: Any = None
                try:
                    # Same Idempotency-Key on every retry, new correlation ID per attempt
                    response = await asyncio.wait_for(
                        self._http.request(
                            method,
                            path,
                            json=json,
                            params=query,
                            headers={**headers, "X-Correlation-ID": correlation_id},
                        ),
                        timeout=self.settings.timeout,
                    )
                except asyncio.TimeoutError:
                    message = f"Network error calling Bridge: no response within {self.settings.timeout}s"
                except httpx.TransportError as exc:
                    message = f"Network error calling Bridge: {type(exc).__name__}"
                    if str(exc):
                        message = f"{message}: {exc}"
                else:
                    status = response.status_code
                    if response.is_success:
                        result = self._parse_success(response, correlation_id)
                        self._record_attempt(
                            method, path, call_id, correlation_id, attempt, started, status=status
                        )
                        return result
                    body = self._parse_error_body(response)
                    message = self._error_message(body, status)

                self._record_attempt(
                    method, path, call_id, correlation_id, attempt, started,
                    status=status, error=message, bridge_error=body,
                )

                if not policy.should_retry(retries, status):
                    raise self._build_error(message, status, body, correlation_id, policy)

                retries += 1
                delay = policy.delay_for(retries)
                logger.warning(
                    "BRIDGE_REQUEST_RETRY",
                    extra={
                        "method": method,
                        "path": path,
                        "call_id": call_id,
                        "status_code": status,
                        "retry": retries,
                        "max_retries": policy.max_retries,
                        "delay_seconds": delay,
                    },
                )
                await self._sleep(delay)
        finally:
            bridge_correlation_id_var.reset(token)

    # ------------------------------------------------------------------
    # Response normalization
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_success(response: httpx.Response, correlation_id: str) -> Any:
        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderTerminalError(
                "Bridge returned a non-JSON response",
                status=response.status_code,
                provider_error=response.text[:500],
                correlation_id=correlation_id,
            ) from exc

    @staticmethod
    def _parse_error_body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text[:500]

    @staticmethod
    def _error_message(body: Any, status: int) -> str:
        if isinstance(body, dict):
            for key in ("message", "error", "detail"):
                value = body.get(key)
                if isinstance(value, str) and value:
                    return value
        return f"Bridge API request failed with status {status}"

    @staticmethod
    def _build_error(
        message: str,
        status: Optional[int],
        body: Any,
        correlation_id: str,
        policy: RetryPolicy,
    ) -> ProviderError:
        code = body.get("code") if isinstance(body, dict) else None
        error_cls = ProviderTransientError if policy.is_retryable(status) else ProviderTerminalError
        logger.error(
            "BRIDGE_REQUEST_FAILED",
            extra={
                "status_code": status,
                "bridge_code": code,
                "error_class": error_cls.__name__,
                "error_msg": message,
            },
        )
        return error_cls(
            message,
            status=status,
            provider_error=body,
            correlation_id=correlation_id,
            code=code,
        )

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def _record_attempt(
        self,
        method: str,
        path: str,
        call_id: str,
        correlation_id: str,
        attempt: int,
        started: float,
        *,
        status: Optional[int],
        error: Optional[str] = None,
        bridge_error: Any = None,
    ) -> None:
        if self.audit_sink is None:
            return

        data: dict[str, Any] = {
            "method": method,
            "path": path,
            "status": status,
            "attempt": attempt,
            "call_id": call_id,
            "correlation_id": correlation_id,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
        }
        if error is None:
            event_type = "bridge_api_success"
            description = f"Bridge API {method} {path} succeeded"
        else:
            event_type = "bridge_api_error"
            description = f"Bridge API {method} {path} failed"
            data["error"] = error
            if bridge_error is not None:
                data["bridge_error"] = bridge_error

        record = AuditRecord(
            event_type=event_type,
            description=description,
            data=data,
            user_id=user_id_var.get() or None,
        )
        self.runner.submit(self.audit_sink.write, record, label=f"audit:{event_type}")
