"""Transaction and status history models."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import JSON, ForeignKey, Numeric, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import (
    TransactionSource,
    TransactionStatus,
    TERMINAL_TRANSACTION_STATUSES,
)
from db.base import BaseModel


class Transaction(BaseModel):
    """A money movement instruction posted to the core banking ledger.

    The status column is only changed by the transaction state machine,
    and every settled change appends a ``TransactionStatusHistory`` row.

    Attributes:
        reference: Unique idempotency key sent to the ledger
        type: DEBIT, CREDIT, TRANSFER, WALLET_TRANSFER, ...
        source: MOBILE_BANKING, WALLET, ADMIN or API
        status: PENDING, PROCESSING, COMPLETED, FAILED, FAILED_PERMANENT or REVERSED
        amount / currency: Value being moved
        from_* / to_*: Account or wallet numbers of the parties
        ledger_reference / ledger_response: What the ledger answered
        retry_count / max_retries / next_retry_at: Retry bookkeeping
        retry_initial_delay_seconds: Per-transaction backoff base (None = settings default)
        is_reversal / original_transaction_id / reversal_reason: Reversal link
        initiated_by: User that created the transaction
    """

    __tablename__ = "transactions"

    reference: Mapped[str] = mapped_column(nullable=False, unique=True, index=True)
    type: Mapped[str] = mapped_column(nullable=False, index=True)
    source: Mapped[str] = mapped_column(
        default=TransactionSource.MOBILE_BANKING.value, index=True
    )
    status: Mapped[str] = mapped_column(
        default=TransactionStatus.PENDING.value, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(nullable=False)
    description: Mapped[Optional[str]] = mapped_column(nullable=True)

    from_account_number: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    to_account_number: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    from_wallet_number: Mapped[Optional[str]] = mapped_column(nullable=True)
    to_wallet_number: Mapped[Optional[str]] = mapped_column(nullable=True)

    ledger_reference: Mapped[Optional[str]] = mapped_column(nullable=True)
    ledger_response: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    retry_count: Mapped[int] = mapped_column(default=0)
    max_retries: Mapped[int] = mapped_column(default=5)
    retry_initial_delay_seconds: Mapped[Optional[int]] = mapped_column(nullable=True)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(nullable=True, index=True)
    last_retry_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(nullable=True)

    is_reversal: Mapped[bool] = mapped_column(default=False)
    original_transaction_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    reversal_reason: Mapped[Optional[str]] = mapped_column(nullable=True)

    initiated_by: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TRANSACTION_STATUSES

    @property
    def parties(self) -> dict[str, Optional[str]]:
        return {
            "from_account_number": self.from_account_number,
            "to_account_number": self.to_account_number,
            "from_wallet_number": self.from_wallet_number,
            "to_wallet_number": self.to_wallet_number,
        }


class TransactionStatusHistory(BaseModel):
    """Append-only log of transaction status changes.

    ``sequence`` orders rows of one transaction; timestamps alone are too
    coarse on SQLite.
    """

    __tablename__ = "transaction_status_history"
    __table_args__ = (
        UniqueConstraint("transaction_id", "sequence", name="uq_txn_history_sequence"),
    )

    transaction_id: Mapped[str] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence: Mapped[int] = mapped_column(nullable=False)
    from_status: Mapped[Optional[str]] = mapped_column(nullable=True)
    to_status: Mapped[str] = mapped_column(nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(nullable=True)
    retry_number: Mapped[int] = mapped_column(default=0)
