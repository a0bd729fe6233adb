"""Celery tasks for the transaction retry scheduler."""

import asyncio
import logging

from worker.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(
    name="worker.tasks.transactions.process_retryable_transactions",
    queue="transactions",
)
def process_retryable_transactions() -> dict:
    """Resubmit every FAILED transaction whose next retry is due."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(_scan())
    finally:
        loop.close()


async def _scan() -> dict:
    from db.worker_session import worker_session_factory
    from transactions.ledger import HttpLedgerAdapter
    from transactions.scheduler import RetryScheduler

    async with worker_session_factory() as factory:
        scheduler = RetryScheduler(factory, HttpLedgerAdapter.from_settings)
        summary = await scheduler.scan_once()

    if summary.found:
        logger.info(
            f"Retry scan: {summary.found} due, {summary.completed} completed, "
            f"{summary.failed} failed, {summary.skipped} skipped"
        )
    return summary.to_dict()
