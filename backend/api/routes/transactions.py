"""Transaction endpoints: create, retry, reverse, lookup, history, retry stats."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
import logging

from api.schemas.common import PaginationParams
from api.schemas.transaction import (
    ReverseRequest,
    RetryStatsResponse,
    StatusHistoryResponse,
    TransactionCreate,
    TransactionListResponse,
    TransactionOperationResponse,
    TransactionResponse,
)
from app.dependencies import get_state_machine
from core.constants import TransactionStatus
from core.exceptions import NotFoundError
from core.utils import calculate_offset
from transactions.state_machine import TransactionFilter, TransactionOutcome, TransactionStateMachine

logger = logging.getLogger(__name__)

router = APIRouter(tags=["transactions"])


def _operation_response(outcome: TransactionOutcome) -> TransactionOperationResponse:
    return TransactionOperationResponse(
        success=outcome.success,
        transaction=TransactionResponse.model_validate(outcome.transaction) if outcome.transaction else None,
        message=outcome.message,
        errors=outcome.errors,
        error_code=outcome.error_code,
    )


@router.post("/", response_model=TransactionOperationResponse, status_code=status.HTTP_201_CREATED)
async def create_transaction(
    request: TransactionCreate,
    machine: TransactionStateMachine = Depends(get_state_machine),
) -> TransactionOperationResponse:
    """
    Create a transaction and, unless ``submit`` is false, post it to the ledger.

    Re-posting an existing ``reference`` returns the stored transaction.
    """
    data = request.model_dump(exclude={"submit"})
    outcome = await machine.create(data)
    if (
        outcome.success
        and request.submit
        and outcome.transaction is not None
        and outcome.transaction.status == TransactionStatus.PENDING.value
    ):
        outcome = await machine.submit(outcome.transaction.id)
    return _operation_response(outcome)


@router.get("/", response_model=TransactionListResponse)
async def list_transactions(
    pagination: PaginationParams = Depends(),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    type_filter: Optional[str] = Query(default=None, alias="type"),
    source: Optional[str] = None,
    date_from: Optional[datetime] = Query(default=None, alias="dateFrom"),
    date_to: Optional[datetime] = Query(default=None, alias="dateTo"),
    min_amount: Optional[Decimal] = Query(default=None, alias="minAmount"),
    max_amount: Optional[Decimal] = Query(default=None, alias="maxAmount"),
    account: Optional[str] = None,
    search: Optional[str] = None,
    is_reversal: Optional[bool] = Query(default=None, alias="isReversal"),
    initiated_by: Optional[str] = Query(default=None, alias="initiatedBy"),
    machine: TransactionStateMachine = Depends(get_state_machine),
) -> TransactionListResponse:
    """
    List transactions with filters, newest first.
    """
    filters = TransactionFilter(
        status=status_filter,
        type=type_filter,
        source=source,
        date_from=date_from,
        date_to=date_to,
        min_amount=min_amount,
        max_amount=max_amount,
        account=account,
        search=search,
        is_reversal=is_reversal,
        initiated_by=initiated_by,
    )
    items, total = await machine.list_transactions(
        filters,
        offset=calculate_offset(pagination.page, pagination.per_page),
        limit=pagination.per_page,
    )
    return TransactionListResponse(
        transactions=[TransactionResponse.model_validate(txn) for txn in items],
        total=total,
        page=pagination.page,
        per_page=pagination.per_page,
    )


@router.get("/retryable", response_model=list[TransactionResponse])
async def list_retryable(
    limit: int = Query(default=50, ge=1, le=500),
    machine: TransactionStateMachine = Depends(get_state_machine),
) -> list[TransactionResponse]:
    """
    FAILED transactions whose next retry is due.
    """
    return [TransactionResponse.model_validate(txn) for txn in await machine.retryable(limit=limit)]


@router.get("/retry-stats", response_model=RetryStatsResponse)
async def retry_stats(
    machine: TransactionStateMachine = Depends(get_state_machine),
) -> RetryStatsResponse:
    return RetryStatsResponse.model_validate(await machine.retry_stats())


@router.get("/by-reference/{reference}", response_model=TransactionResponse)
async def get_by_reference(
    reference: str,
    machine: TransactionStateMachine = Depends(get_state_machine),
) -> TransactionResponse:
    txn = await machine.get_by_reference(reference)
    if txn is None:
        raise NotFoundError(f"Transaction {reference} not found")
    return TransactionResponse.model_validate(txn)


@router.get("/{transaction_id}", response_model=TransactionResponse)
async def get_transaction(
    transaction_id: str,
    machine: TransactionStateMachine = Depends(get_state_machine),
) -> TransactionResponse:
    return TransactionResponse.model_validate(await machine.get_or_404(transaction_id))


@router.get("/{transaction_id}/history", response_model=list[StatusHistoryResponse])
async def get_history(
    transaction_id: str,
    machine: TransactionStateMachine = Depends(get_state_machine),
) -> list[StatusHistoryResponse]:
    """
    Status transitions of a transaction, oldest first.
    """
    return [StatusHistoryResponse.model_validate(row) for row in await machine.history(transaction_id)]


@router.post("/{transaction_id}/retry", response_model=TransactionOperationResponse)
async def retry_transaction(
    transaction_id: str,
    machine: TransactionStateMachine = Depends(get_state_machine),
) -> TransactionOperationResponse:
    """
    Manually resubmit a FAILED transaction.
    """
    outcome = await machine.retry(transaction_id)
    logger.info(f"Manual retry of {transaction_id}: success={outcome.success}")
    return _operation_response(outcome)


@router.post("/{transaction_id}/reverse", response_model=TransactionOperationResponse)
async def reverse_transaction(
    transaction_id: str,
    request: ReverseRequest,
    machine: TransactionStateMachine = Depends(get_state_machine),
) -> TransactionOperationResponse:
    """
    Post the opposite of a COMPLETED transaction.
    """
    outcome = await machine.reverse(transaction_id, request.reason, request.initiated_by)
    return _operation_response(outcome)
