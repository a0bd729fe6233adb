"""Exponential backoff for transaction resubmission.

The delay before retry ``n`` (1-based, the value of ``retry_count``
after the failure) is ``initial_delay * 2 ** n`` seconds, capped at
``max_delay``. No jitter: ``next_retry_at`` must grow strictly across
consecutive failures of the same transaction.

Usage:
    policy = BackoffPolicy.from_settings()
    txn.next_retry_at = policy.next_retry_at(txn.retry_count)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from app.config import get_settings
from core.utils import utc_now_naive


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry limits and delays for one transaction."""

    max_retries: int = 5
    initial_delay: float = 120.0
    max_delay: float = 3600.0

    @classmethod
    def from_settings(cls, initial_delay: Optional[float] = None) -> "BackoffPolicy":
        """Policy from application settings, optionally overriding the base delay."""
        settings = get_settings()
        return cls(
            max_retries=settings.TXN_DEFAULT_MAX_RETRIES,
            initial_delay=(
                initial_delay if initial_delay is not None
                else settings.TXN_RETRY_INITIAL_DELAY_SECONDS
            ),
            max_delay=settings.TXN_RETRY_MAX_DELAY_SECONDS,
        )

    @classmethod
    def from_retry_config(cls, config: Optional[dict]) -> "BackoffPolicy":
        """Policy from a step's ``retryConfig`` (``maxRetries``, ``initialBackoffMs``)."""
        base = cls.from_settings()
        if not config:
            return base
        initial_ms = config.get("initialBackoffMs")
        return cls(
            max_retries=int(config.get("maxRetries", base.max_retries)),
            initial_delay=initial_ms / 1000.0 if initial_ms is not None else base.initial_delay,
            max_delay=base.max_delay,
        )

    def compute_delay(self, retry_count: int) -> float:
        """Seconds to wait after the ``retry_count``-th failure."""
        if retry_count < 0:
            raise ValueError("retry_count must be >= 0")
        return float(min(self.initial_delay * (2 ** retry_count), self.max_delay))

    def next_retry_at(self, retry_count: int, now: Optional[datetime] = None) -> datetime:
        """Naive-UTC time at which the transaction becomes due again."""
        now = now or utc_now_naive()
        return now + timedelta(seconds=self.compute_delay(retry_count))

    def is_exhausted(self, retry_count: int) -> bool:
        """True once no further retry is allowed."""
        return retry_count >= self.max_retries
