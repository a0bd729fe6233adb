"""Transaction state machine.

Lifecycle::

    PENDING -> PROCESSING -> COMPLETED
                          -> FAILED -> PROCESSING (retry) ...
                          -> FAILED_PERMANENT
    COMPLETED -> REVERSED   (once a reversal transaction completes)

Only one submission per transaction reference may be in flight. Two
mechanisms enforce it:

- an in-process ``asyncio.Lock`` per reference serializes callers that
  share this process (manual retry, workflow step, scheduler);
- the PROCESSING claim is a conditional
  ``UPDATE ... WHERE status IN ('PENDING', 'FAILED')`` committed before
  the ledger is called, so exactly one claimant wins across processes.

History rows record settled transitions: the creation row, then one row
per ledger attempt (``PROCESSING -> outcome``) with ``retry_number`` set
to the retry count after that attempt. Public operations return a
``TransactionOutcome``; only an unknown transaction id raises.
"""

import asyncio
import dataclasses
import weakref
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Sequence

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from core.constants import (
    REQUIRED_TRANSACTION_PARTIES,
    REVERSAL_TRANSACTION_TYPES,
    SUBMITTABLE_TRANSACTION_STATUSES,
    TransactionSource,
    TransactionStatus,
)
from core.exceptions import ConflictError, EngineError, TerminalStateViolation
from core.utils import generate_reference, utc_now_naive
from db.models.transaction import Transaction, TransactionStatusHistory
from services.base import BaseService
from transactions.backoff import BackoffPolicy
from transactions.ledger import LedgerAdapter, LedgerResult, user_message

logger = structlog.get_logger(__name__)

PARTY_FIELDS = ("from_account_number", "to_account_number", "from_wallet_number", "to_wallet_number")

_reference_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def reference_lock(reference: str) -> asyncio.Lock:
    """The process-wide lock serializing submissions of ``reference``."""
    lock = _reference_locks.get(reference)
    if lock is None:
        lock = asyncio.Lock()
        _reference_locks[reference] = lock
    return lock


@dataclass
class TransactionOutcome:
    """Structured result of a state machine operation."""

    success: bool
    transaction: Optional[Transaction]
    message: str
    errors: list[str] = field(default_factory=list)
    error_code: Optional[str] = None

    @classmethod
    def from_error(cls, exc: EngineError, transaction: Optional[Transaction] = None) -> "TransactionOutcome":
        return cls(
            success=False,
            transaction=transaction,
            message=exc.message,
            errors=[exc.message],
            error_code=exc.code,
        )


@dataclass
class TransactionFilter:
    """Filters for transaction listings."""

    status: Optional[str] = None
    type: Optional[str] = None
    source: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    account: Optional[str] = None
    search: Optional[str] = None
    is_reversal: Optional[bool] = None
    initiated_by: Optional[str] = None


@dataclass
class RetryStats:
    """Aggregate retry counters, computed on demand."""

    total_retryable: int
    total_failed: int
    total_pending: int
    next_retry_time: Optional[datetime]


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return str(value)


class TransactionStateMachine(BaseService[Transaction]):
    """Owns transaction records, their transitions and their history."""

    def __init__(
        self,
        db: AsyncSession,
        ledger: LedgerAdapter,
        backoff: Optional[BackoffPolicy] = None,
        ledger_timeout: Optional[float] = None,
    ):
        super().__init__(Transaction, db)
        settings = get_settings()
        self.ledger = ledger
        self.backoff = backoff or BackoffPolicy.from_settings()
        self.ledger_timeout = ledger_timeout or settings.LEDGER_TIMEOUT_SECONDS
        self.default_currency = settings.DEFAULT_CURRENCY

    # ─── Create ────────────────────────────────────────────

    def validate_draft(self, data: dict[str, Any]) -> list[str]:
        """Check amount, currency and the parties required by the type."""
        errors = []
        txn_type = str(getattr(data.get("type"), "value", data.get("type") or ""))
        if txn_type not in REQUIRED_TRANSACTION_PARTIES:
            errors.append(f"Invalid transaction type '{txn_type}'")

        try:
            amount = Decimal(str(data.get("amount")))
            if not amount.is_finite() or amount <= 0:
                errors.append("Amount must be greater than zero")
        except (InvalidOperation, ValueError):
            errors.append("Amount must be a number")

        currency = data.get("currency") or self.default_currency
        if not currency or len(str(currency).strip()) != 3:
            errors.append("Currency must be a 3-letter code")

        source = data.get("source")
        if source is not None:
            try:
                TransactionSource(getattr(source, "value", source))
            except ValueError:
                errors.append(f"Invalid transaction source '{source}'")

        for party in REQUIRED_TRANSACTION_PARTIES.get(txn_type, ()):
            if not data.get(party):
                errors.append(f"{party} is required for {txn_type} transactions")
        return errors

    async def create(self, data: dict[str, Any]) -> TransactionOutcome:
        """Validate and insert a PENDING transaction with its first history row.

        Args:
            data: type, amount, currency, source, description, party numbers,
                initiated_by, optional reference, max_retries and
                retry_initial_delay_seconds

        Returns:
            TransactionOutcome with the created transaction
        """
        errors = self.validate_draft(data)
        if errors:
            return TransactionOutcome(False, None, "Transaction validation failed", errors, "VALIDATION_ERROR")

        reference = data.get("reference")
        if reference:
            existing = await self.get_by_reference(reference)
            if existing is not None:
                return TransactionOutcome(True, existing, "Transaction already exists for this reference")

        txn = await self._insert(
            {
                "reference": reference or generate_reference("TXN"),
                "type": str(getattr(data["type"], "value", data["type"])),
                "source": str(getattr(data.get("source"), "value", data.get("source") or TransactionSource.MOBILE_BANKING.value)),
                "amount": Decimal(str(data["amount"])),
                "currency": str(data.get("currency") or self.default_currency).upper(),
                "description": data.get("description"),
                "initiated_by": data.get("initiated_by"),
                "max_retries": int(data.get("max_retries") or self.backoff.max_retries),
                "retry_initial_delay_seconds": data.get("retry_initial_delay_seconds"),
                **{party: data.get(party) for party in PARTY_FIELDS},
            },
            reason="Transaction created",
        )
        return TransactionOutcome(True, txn, "Transaction created successfully")

    async def _insert(self, values: dict[str, Any], reason: str) -> Transaction:
        values.setdefault("status", TransactionStatus.PENDING.value)
        txn = Transaction(**values)
        self.db.add(txn)
        await self.db.flush()
        await self._append_history(txn, None, txn.status, reason)
        await self.db.commit()
        logger.info(
            "transaction_created",
            transaction_id=txn.id,
            reference=txn.reference,
            type=txn.type,
            amount=str(txn.amount),
            currency=txn.currency,
            is_reversal=txn.is_reversal,
        )
        return txn

    # ─── Submit ────────────────────────────────────────────

    async def submit(self, transaction_id: str, timeout: Optional[float] = None) -> TransactionOutcome:
        """Claim, post to the ledger and settle one attempt.

        Args:
            transaction_id: Transaction to submit (PENDING or FAILED)
            timeout: Ledger call timeout in seconds (defaults to settings)
        """
        txn = await self.get_or_404(transaction_id)
        observed = (txn.status, txn.retry_count)
        async with reference_lock(txn.reference):
            await self.db.refresh(txn)
            if (txn.status, txn.retry_count) != observed and txn.status == TransactionStatus.FAILED.value:
                # another submission settled while this one waited; its retry is scheduled
                logger.info("transaction_submit_superseded", transaction_id=txn.id, retry_count=txn.retry_count)
                return self._settled_outcome(txn)
            if txn.status not in SUBMITTABLE_TRANSACTION_STATUSES or not await self._claim(txn):
                return self._not_claimable(txn)

            logger.info(
                "transaction_submitting",
                transaction_id=txn.id,
                reference=txn.reference,
                attempt=txn.retry_count + 1,
            )
            result = await self._call_ledger(txn, timeout)
            return await self._settle(txn, result)

    async def resume_stale(self, transaction_id: str, stale_before: datetime) -> TransactionOutcome:
        """Re-drive a transaction left PROCESSING by an interrupted submission.

        Only claims the row while its last attempt started before
        ``stale_before``; the ledger deduplicates by reference, so posting
        again settles the original attempt.
        """
        txn = await self.get_or_404(transaction_id)
        async with reference_lock(txn.reference):
            stmt = (
                update(Transaction)
                .where(
                    Transaction.id == txn.id,
                    Transaction.status == TransactionStatus.PROCESSING.value,
                    or_(Transaction.last_retry_at.is_(None), Transaction.last_retry_at <= stale_before),
                )
                .values(last_retry_at=utc_now_naive())
                .execution_options(synchronize_session=False)
            )
            claimed = await self.db.execute(stmt)
            await self.db.commit()
            await self.db.refresh(txn)
            if claimed.rowcount != 1:
                return self._not_claimable(txn)

            logger.warning(
                "transaction_resuming_stale",
                transaction_id=txn.id,
                reference=txn.reference,
                attempt=txn.retry_count + 1,
            )
            ledger_result = await self._call_ledger(txn, None)
            return await self._settle(txn, ledger_result)

    async def _claim(self, txn: Transaction) -> bool:
        """PENDING/FAILED -> PROCESSING; True for exactly one claimant."""
        stmt = (
            update(Transaction)
            .where(
                Transaction.id == txn.id,
                Transaction.status.in_(SUBMITTABLE_TRANSACTION_STATUSES),
            )
            .values(status=TransactionStatus.PROCESSING.value, last_retry_at=utc_now_naive())
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        await self.db.refresh(txn)
        return result.rowcount == 1

    def _not_claimable(self, txn: Transaction) -> TransactionOutcome:
        if txn.status == TransactionStatus.PROCESSING.value:
            exc: EngineError = ConflictError("Transaction submission already in progress")
        else:
            exc = TerminalStateViolation(f"Transaction is already finalized ({txn.status})")
        logger.info("transaction_claim_rejected", transaction_id=txn.id, status=txn.status)
        return TransactionOutcome.from_error(exc, txn)

    async def _call_ledger(self, txn: Transaction, timeout: Optional[float]) -> LedgerResult:
        timeout = timeout or self.ledger_timeout
        try:
            return await asyncio.wait_for(
                self.ledger.submit_transaction(
                    reference=txn.reference,
                    type=txn.type,
                    amount=txn.amount,
                    currency=txn.currency,
                    parties=txn.parties,
                    description=txn.description,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            return LedgerResult.failure(f"Ledger call timed out after {timeout}s", retryable=True, error_code="TIMEOUT")
        except Exception as exc:
            logger.warning("ledger_call_failed", transaction_id=txn.id, error=str(exc), exc_info=True)
            return LedgerResult.failure(
                str(exc) or type(exc).__name__, retryable=True, error_code="LEDGER_API_ERROR"
            )

    def _policy_for(self, txn: Transaction) -> BackoffPolicy:
        policy = dataclasses.replace(self.backoff, max_retries=txn.max_retries)
        if txn.retry_initial_delay_seconds is not None:
            policy = dataclasses.replace(policy, initial_delay=float(txn.retry_initial_delay_seconds))
        return policy

    async def _settle(self, txn: Transaction, result: LedgerResult) -> TransactionOutcome:
        now = utc_now_naive()
        txn.ledger_response = _jsonable(result.raw_response)

        if result.accepted:
            txn.status = TransactionStatus.COMPLETED.value
            txn.ledger_reference = result.external_reference
            txn.completed_at = now
            txn.next_retry_at = None
            txn.error_message = None
            txn.error_code = None
            reason = "Transaction completed successfully"
        else:
            txn.error_message = result.error_message or user_message(result.error_code)
            txn.error_code = result.error_code
            policy = self._policy_for(txn)
            if result.retryable:
                txn.retry_count += 1
            if result.retryable and not policy.is_exhausted(txn.retry_count):
                txn.status = TransactionStatus.FAILED.value
                txn.next_retry_at = policy.next_retry_at(txn.retry_count, now)
                reason = txn.error_message
            else:
                txn.status = TransactionStatus.FAILED_PERMANENT.value
                txn.next_retry_at = None
                reason = (
                    f"Retries exhausted: {txn.error_message}" if result.retryable else txn.error_message
                )

        await self._append_history(txn, TransactionStatus.PROCESSING.value, txn.status, reason)
        if txn.status == TransactionStatus.COMPLETED.value and txn.is_reversal:
            await self._mark_original_reversed(txn)
        await self.db.commit()

        logger.info(
            "transaction_settled",
            transaction_id=txn.id,
            reference=txn.reference,
            status=txn.status,
            retry_count=txn.retry_count,
            next_retry_at=txn.next_retry_at.isoformat() if txn.next_retry_at else None,
            error_code=txn.error_code,
        )
        return self._settled_outcome(txn)

    @staticmethod
    def _settled_outcome(txn: Transaction) -> TransactionOutcome:
        if txn.status == TransactionStatus.COMPLETED.value:
            return TransactionOutcome(True, txn, "Transaction completed successfully")
        if txn.status == TransactionStatus.FAILED.value:
            return TransactionOutcome(
                False,
                txn,
                "Transaction is processing and will be retried automatically",
                [txn.error_message] if txn.error_message else [],
                "PROCESSING",
            )
        return TransactionOutcome(
            False,
            txn,
            txn.error_message or "Transaction failed",
            [txn.error_message] if txn.error_message else [],
            txn.error_code or TransactionStatus.FAILED_PERMANENT.value,
        )

    async def _append_history(
        self,
        txn: Transaction,
        from_status: Optional[str],
        to_status: str,
        reason: Optional[str],
    ) -> TransactionStatusHistory:
        count = await self.db.execute(
            select(func.count())
            .select_from(TransactionStatusHistory)
            .where(TransactionStatusHistory.transaction_id == txn.id)
        )
        row = TransactionStatusHistory(
            transaction_id=txn.id,
            sequence=(count.scalar() or 0) + 1,
            from_status=from_status,
            to_status=to_status,
            reason=reason,
            retry_number=txn.retry_count,
        )
        self.db.add(row)
        await self.db.flush()
        return row

    # ─── Retry / Reverse ───────────────────────────────────

    async def retry(self, transaction_id: str) -> TransactionOutcome:
        """Manual retry; only legal while FAILED."""
        txn = await self.get_or_404(transaction_id)
        if txn.status != TransactionStatus.FAILED.value:
            if txn.is_terminal:
                exc: EngineError = TerminalStateViolation(
                    f"Transaction {txn.reference} is {txn.status} and cannot be retried"
                )
            else:
                exc = ConflictError(f"Only FAILED transactions can be retried (status: {txn.status})")
            return TransactionOutcome.from_error(exc, txn)
        return await self.submit(txn.id)

    async def reverse(
        self,
        transaction_id: str,
        reason: str,
        initiated_by: Optional[str] = None,
    ) -> TransactionOutcome:
        """Create and submit the opposite transaction of a COMPLETED one.

        The original becomes REVERSED when the reversal completes, now or
        through later retries.
        """
        original = await self.get_or_404(transaction_id)
        try:
            await self._check_reversible(original)
        except EngineError as exc:
            return TransactionOutcome.from_error(exc, original)

        reversal = await self._insert(
            {
                "reference": generate_reference("REV"),
                "type": REVERSAL_TRANSACTION_TYPES.get(original.type, original.type),
                "source": original.source,
                "amount": original.amount,
                "currency": original.currency,
                "description": f"Reversal of {original.reference}: {reason}",
                "initiated_by": initiated_by,
                "max_retries": original.max_retries,
                "retry_initial_delay_seconds": original.retry_initial_delay_seconds,
                "from_account_number": original.to_account_number,
                "to_account_number": original.from_account_number,
                "from_wallet_number": original.to_wallet_number,
                "to_wallet_number": original.from_wallet_number,
                "is_reversal": True,
                "original_transaction_id": original.id,
                "reversal_reason": reason,
            },
            reason=f"Reversal created for {original.reference}",
        )
        outcome = await self.submit(reversal.id)
        if outcome.success:
            outcome.message = "Transaction reversed successfully"
        return outcome

    async def _check_reversible(self, original: Transaction) -> None:
        if original.is_reversal:
            raise TerminalStateViolation("Cannot reverse a reversal")
        if original.status != TransactionStatus.COMPLETED.value:
            raise TerminalStateViolation(
                f"Only COMPLETED transactions can be reversed (status: {original.status})"
            )
        open_reversal = await self.db.execute(
            select(func.count())
            .select_from(Transaction)
            .where(
                Transaction.original_transaction_id == original.id,
                Transaction.is_reversal == True,  # noqa: E712
                Transaction.status != TransactionStatus.FAILED_PERMANENT.value,
            )
        )
        if (open_reversal.scalar() or 0) > 0:
            raise ConflictError(f"A reversal of {original.reference} already exists")

    async def _mark_original_reversed(self, reversal: Transaction) -> None:
        original = await self.get_by_id(reversal.original_transaction_id)
        if original is None or original.status != TransactionStatus.COMPLETED.value:
            return
        original.status = TransactionStatus.REVERSED.value
        await self._append_history(
            original,
            TransactionStatus.COMPLETED.value,
            TransactionStatus.REVERSED.value,
            f"Reversed by {reversal.reference}: {reversal.reversal_reason or ''}".rstrip(": "),
        )
        logger.info("transaction_reversed", transaction_id=original.id, reversal_id=reversal.id)

    # ─── Read ──────────────────────────────────────────────

    async def get_by_reference(self, reference: str) -> Optional[Transaction]:
        result = await self.db.execute(select(Transaction).where(Transaction.reference == reference))
        return result.scalar_one_or_none()

    async def list_transactions(
        self,
        filters: Optional[TransactionFilter] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[Sequence[Transaction], int]:
        """Paged listing, newest first."""
        f = filters or TransactionFilter()
        query = self.apply_filters(
            select(Transaction),
            {
                "status": f.status,
                "type": f.type,
                "source": f.source,
                "is_reversal": f.is_reversal,
                "initiated_by": f.initiated_by,
            },
        )
        if f.date_from:
            query = query.where(Transaction.created_at >= f.date_from)
        if f.date_to:
            query = query.where(Transaction.created_at <= f.date_to)
        if f.min_amount is not None:
            query = query.where(Transaction.amount >= f.min_amount)
        if f.max_amount is not None:
            query = query.where(Transaction.amount <= f.max_amount)
        if f.account:
            query = query.where(
                or_(*(getattr(Transaction, party) == f.account for party in PARTY_FIELDS))
            )
        if f.search:
            pattern = f"%{f.search}%"
            query = query.where(
                or_(
                    Transaction.reference.ilike(pattern),
                    Transaction.description.ilike(pattern),
                    Transaction.ledger_reference.ilike(pattern),
                    *(getattr(Transaction, party).ilike(pattern) for party in PARTY_FIELDS),
                )
            )
        return await self.paginate_query(query, offset, limit)

    async def history(self, transaction_id: str) -> Sequence[TransactionStatusHistory]:
        await self.get_or_404(transaction_id)
        result = await self.db.execute(
            select(TransactionStatusHistory)
            .where(TransactionStatusHistory.transaction_id == transaction_id)
            .order_by(TransactionStatusHistory.sequence)
        )
        return result.scalars().all()

    def _retryable_query(self):
        return select(Transaction).where(
            Transaction.status == TransactionStatus.FAILED.value,
            Transaction.retry_count < Transaction.max_retries,
        )

    async def retryable(self, limit: int = 50, due_before: Optional[datetime] = None) -> Sequence[Transaction]:
        """FAILED transactions whose ``next_retry_at`` has passed, soonest first."""
        now = due_before or utc_now_naive()
        result = await self.db.execute(
            self._retryable_query()
            .where(Transaction.next_retry_at.is_not(None), Transaction.next_retry_at <= now)
            .order_by(Transaction.next_retry_at.asc())
            .limit(limit)
        )
        return result.scalars().all()

    async def stale_processing(self, stale_before: datetime, limit: int = 50) -> Sequence[Transaction]:
        """PROCESSING transactions whose last attempt started before ``stale_before``."""
        result = await self.db.execute(
            select(Transaction)
            .where(
                Transaction.status == TransactionStatus.PROCESSING.value,
                or_(Transaction.last_retry_at.is_(None), Transaction.last_retry_at <= stale_before),
            )
            .order_by(Transaction.last_retry_at.asc())
            .limit(limit)
        )
        return result.scalars().all()

    async def retry_stats(self) -> RetryStats:
        async def _count(*conditions) -> int:
            result = await self.db.execute(select(func.count()).select_from(Transaction).where(*conditions))
            return result.scalar() or 0

        next_retry = await self.db.execute(
            select(func.min(Transaction.next_retry_at)).where(
                Transaction.status == TransactionStatus.FAILED.value,
                Transaction.retry_count < Transaction.max_retries,
            )
        )
        return RetryStats(
            total_retryable=await _count(
                Transaction.status == TransactionStatus.FAILED.value,
                Transaction.retry_count < Transaction.max_retries,
            ),
            total_failed=await _count(Transaction.status == TransactionStatus.FAILED_PERMANENT.value),
            total_pending=await _count(Transaction.status == TransactionStatus.PENDING.value),
            next_retry_time=next_retry.scalar(),
        )

