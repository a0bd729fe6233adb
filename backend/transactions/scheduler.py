"""Retry scheduler for FAILED transactions.

One periodic scan selects due transactions (``status = FAILED``,
``next_retry_at <= now``, ``retry_count < max_retries``) and resubmits
each through ``TransactionStateMachine.submit`` on its own session. Rows
left PROCESSING by an interrupted submission (last attempt older than the
ledger timeout plus a grace period) are re-driven with ``resume_stale``.
A semaphore bounds concurrent submissions. The scheduler holds no retry
state of its own: everything lives on the transaction rows.

It runs either in-process (``run_forever`` started from the FastAPI
lifespan) or once per Celery Beat tick (``scan_once`` from
``worker.tasks.transactions``).
"""

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import get_settings
from core.constants import TransactionStatus
from core.utils import utc_now_naive
from transactions.ledger import LedgerAdapter
from transactions.state_machine import TransactionStateMachine

logger = structlog.get_logger(__name__)


@dataclass
class ScanSummary:
    """What one scan did."""

    found: int = 0
    dispatched: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    recovered: int = 0
    errors: int = 0
    transaction_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class RetryScheduler:
    """Periodic scan dispatching resubmissions to a bounded worker pool."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger_factory: Callable[[], LedgerAdapter],
        interval_seconds: Optional[float] = None,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        stale_after_seconds: Optional[float] = None,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.ledger_factory = ledger_factory
        self.interval_seconds = interval_seconds or settings.RETRY_SCHEDULER_INTERVAL_SECONDS
        self.batch_size = batch_size or settings.RETRY_SCHEDULER_BATCH_SIZE
        self.concurrency = concurrency or settings.RETRY_WORKER_CONCURRENCY
        self.stale_after_seconds = (
            stale_after_seconds
            if stale_after_seconds is not None
            else settings.LEDGER_TIMEOUT_SECONDS + settings.RETRY_STALE_PROCESSING_GRACE_SECONDS
        )
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def scan_once(self) -> ScanSummary:
        """Find due and stale transactions and resubmit them."""
        summary = ScanSummary()
        now = utc_now_naive()
        stale_before = now - timedelta(seconds=self.stale_after_seconds)

        async with self.session_factory() as session:
            machine = TransactionStateMachine(session, self.ledger_factory())
            due = await machine.retryable(limit=self.batch_size, due_before=now)
            stale = await machine.stale_processing(stale_before, limit=self.batch_size)
            due_ids = [txn.id for txn in due]
            stale_ids = [txn.id for txn in stale]

        summary.found = len(due_ids) + len(stale_ids)
        if not summary.found:
            logger.debug("retry_scan_idle")
            return summary

        logger.info("retry_scan_found", due=len(due_ids), stale=len(stale_ids))
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _resubmit(transaction_id: str, stale: bool = False) -> None:
            async with semaphore:
                try:
                    async with self.session_factory() as session:
                        machine = TransactionStateMachine(session, self.ledger_factory())
                        if stale:
                            outcome = await machine.resume_stale(transaction_id, stale_before)
                        else:
                            outcome = await machine.submit(transaction_id)
                except Exception as exc:
                    summary.errors += 1
                    logger.error("retry_submit_error", transaction_id=transaction_id, error=str(exc), exc_info=True)
                    return

                txn = outcome.transaction
                status = txn.status if txn is not None else None
                if status in (TransactionStatus.PROCESSING.value, None) or outcome.error_code in (
                    "CONFLICT",
                    "TERMINAL_STATE",
                ):
                    summary.skipped += 1
                    return
                summary.dispatched += 1
                summary.transaction_ids.append(transaction_id)
                if stale:
                    summary.recovered += 1
                if status == TransactionStatus.COMPLETED.value:
                    summary.completed += 1
                else:
                    summary.failed += 1

        await asyncio.gather(
            *(_resubmit(txn_id) for txn_id in due_ids),
            *(_resubmit(txn_id, stale=True) for txn_id in stale_ids),
        )
        logger.info("retry_scan_done", **{k: v for k, v in summary.to_dict().items() if k != "transaction_ids"})
        return summary

    async def run_forever(self) -> None:
        """Scan every ``interval_seconds`` until ``stop()``."""
        logger.info("retry_scheduler_started", interval_seconds=self.interval_seconds)
        while not self._stop_event.is_set():
            try:
                await self.scan_once()
            except Exception as exc:
                logger.error("retry_scan_failed", error=str(exc), exc_info=True)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("retry_scheduler_stopped")

    def start(self) -> asyncio.Task:
        """Run the loop as a background task on the current event loop."""
        if self._task is None or self._task.done():
            self._stop_event.clear()
            self._task = asyncio.create_task(self.run_forever(), name="retry-scheduler")
        return self._task

    async def stop(self) -> None:
        """Signal the loop to exit and wait for the current scan to finish."""
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
