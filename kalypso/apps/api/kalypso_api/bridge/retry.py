"""Retry policy for Bridge API calls."""

from dataclasses import dataclass, field
from typing import Optional

DEFAULT_RETRYABLE_STATUSES: frozenset[int] = frozenset({429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry schedule consulted by the client's dispatch loop.

    ``max_retries`` counts retries after the first attempt, so the default
    allows up to four requests with waits of 1s, 2s and 4s between them.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    retryable_statuses: frozenset[int] = field(default=DEFAULT_RETRYABLE_STATUSES)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")

    def is_retryable(self, status: Optional[int]) -> bool:
        """Return True for a network failure (``None``) or a retryable status."""
        return status is None or status in self.retryable_statuses

    def delay_for(self, retry_number: int) -> float:
        """Backoff before retry ``retry_number`` (1-based): base * 2^(n-1)."""
        if retry_number < 1:
            raise ValueError("retry_number is 1-based")
        return self.base_delay * (2 ** (retry_number - 1))

    def should_retry(self, retries_done: int, status: Optional[int]) -> bool:
        return retries_done < self.max_retries and self.is_retryable(status)

    def schedule(self) -> list[float]:
        """Full list of waits this policy can produce, in order."""
        return [self.delay_for(n) for n in range(1, self.max_retries + 1)]
