from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from escrow_engine.core.config import settings


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    retry_count: int
    next_attempt_at: datetime | None


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with a hard attempt cap.

    retry_count counts failed attempts so far. After the n-th failure the next
    attempt waits base_delay_s * 2**n; once n exceeds max_retries the work is
    terminal.
    """

    max_retries: int = 3
    base_delay_s: float = 1.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(max_retries=settings.OUTBOX_MAX_RETRIES, base_delay_s=settings.OUTBOX_BACKOFF_BASE_S)

    def delay_for(self, retry_count: int) -> timedelta:
        return timedelta(seconds=self.base_delay_s * (2**retry_count))

    def on_failure(self, *, retry_count: int, now: datetime) -> RetryDecision:
        n = retry_count + 1
        if n <= self.max_retries:
            return RetryDecision(retry=True, retry_count=n, next_attempt_at=now + self.delay_for(n))
        return RetryDecision(retry=False, retry_count=n, next_attempt_at=None)
