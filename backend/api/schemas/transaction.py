"""Transaction schemas."""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import Field

from api.schemas.common import CamelModel
from core.constants import TransactionSource, TransactionType


class TransactionCreate(CamelModel):
    """Request to create (and optionally submit) a transaction."""

    type: TransactionType
    amount: Decimal = Field(description="Amount in major units")
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    source: TransactionSource = Field(default=TransactionSource.API)
    description: Optional[str] = None
    reference: Optional[str] = Field(default=None, description="Idempotency key; generated when absent")
    from_account_number: Optional[str] = None
    to_account_number: Optional[str] = None
    from_wallet_number: Optional[str] = None
    to_wallet_number: Optional[str] = None
    initiated_by: Optional[str] = None
    max_retries: Optional[int] = Field(default=None, ge=0)
    submit: bool = Field(default=True, description="Post to the ledger immediately")


class ReverseRequest(CamelModel):
    reason: str = Field(min_length=1)
    initiated_by: Optional[str] = None


class TransactionResponse(CamelModel):
    """Transaction record."""

    id: str
    reference: str
    type: str
    source: str
    status: str
    amount: Decimal
    currency: str
    description: Optional[str] = None
    from_account_number: Optional[str] = None
    to_account_number: Optional[str] = None
    from_wallet_number: Optional[str] = None
    to_wallet_number: Optional[str] = None
    ledger_reference: Optional[str] = None
    retry_count: int
    max_retries: int
    next_retry_at: Optional[datetime] = None
    last_retry_at: Optional[datetime] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    is_reversal: bool
    original_transaction_id: Optional[str] = None
    reversal_reason: Optional[str] = None
    initiated_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class TransactionOperationResponse(CamelModel):
    """Result of create/retry/reverse."""

    success: bool
    transaction: Optional[TransactionResponse] = None
    message: str
    errors: List[str] = Field(default_factory=list)
    error_code: Optional[str] = None


class TransactionListResponse(CamelModel):
    transactions: List[TransactionResponse]
    total: int
    page: int
    per_page: int


class StatusHistoryResponse(CamelModel):
    id: str
    sequence: int
    from_status: Optional[str] = None
    to_status: str
    reason: Optional[str] = None
    retry_number: int
    created_at: datetime


class RetryStatsResponse(CamelModel):
    total_retryable: int
    total_failed: int
    total_pending: int
    next_retry_time: Optional[datetime] = None
