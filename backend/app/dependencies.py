"""FastAPI dependency injection functions."""

import logging

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import AsyncSessionLocal
from services.workflow_service import WorkflowService
from transactions.ledger import HttpLedgerAdapter, LedgerAdapter
from transactions.state_machine import TransactionStateMachine
from workflow.adapters import HttpServiceAdapter, ServiceAdapter
from workflow.engine import WorkflowEngine

logger = logging.getLogger(__name__)


async def get_db() -> AsyncSession:
    """
    Provide a database session for API endpoints.

    Yields an async SQLAlchemy session that is automatically
    committed on success or rolled back on error.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.error(f"Database error: {str(e)}")
            await session.rollback()
            raise
        finally:
            await session.close()


def get_service_adapter() -> ServiceAdapter:
    """Adapter for validation/API-call/OTP endpoints."""
    return HttpServiceAdapter.from_settings()


def get_ledger_adapter() -> LedgerAdapter:
    """Core banking ledger client."""
    return HttpLedgerAdapter.from_settings()


def get_workflow_engine(
    db: AsyncSession = Depends(get_db),
    service_adapter: ServiceAdapter = Depends(get_service_adapter),
    ledger: LedgerAdapter = Depends(get_ledger_adapter),
) -> WorkflowEngine:
    return WorkflowEngine(db, service_adapter, ledger)


def get_state_machine(
    db: AsyncSession = Depends(get_db),
    ledger: LedgerAdapter = Depends(get_ledger_adapter),
) -> TransactionStateMachine:
    return TransactionStateMachine(db, ledger)


def get_workflow_service(db: AsyncSession = Depends(get_db)) -> WorkflowService:
    return WorkflowService(db)
