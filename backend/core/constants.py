"""Constants and enums for the banking workflow engine."""

from enum import Enum


class StepType(str, Enum):
    """Kind of screen/step inside a workflow."""

    FORM = "FORM"
    API_CALL = "API_CALL"
    VALIDATION = "VALIDATION"
    CONFIRMATION = "CONFIRMATION"
    DISPLAY = "DISPLAY"
    REDIRECT = "REDIRECT"
    OTP = "OTP"
    POST_TRANSACTION = "POST_TRANSACTION"


class ExecutionMode(str, Enum):
    """Where a step runs."""

    CLIENT_ONLY = "CLIENT_ONLY"
    SERVER_SYNC = "SERVER_SYNC"
    SERVER_ASYNC = "SERVER_ASYNC"
    SERVER_VALIDATION = "SERVER_VALIDATION"


class TriggerTiming(str, Enum):
    """When the server call of a step happens relative to user input."""

    BEFORE_STEP = "BEFORE_STEP"
    AFTER_STEP = "AFTER_STEP"
    BOTH = "BOTH"


class ExecutionStatus(str, Enum):
    """Workflow execution status."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_EXECUTION_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED.value, ExecutionStatus.FAILED.value, ExecutionStatus.CANCELLED.value}
)


class WorkflowStatus(str, Enum):
    """Workflow definition status."""

    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class DeclineAction(str, Enum):
    """What happens when the user declines a confirmation step."""

    CANCEL = "CANCEL"
    PREVIOUS_STEP = "PREVIOUS_STEP"


class TransactionType(str, Enum):
    """Money movement type."""

    DEBIT = "DEBIT"
    CREDIT = "CREDIT"
    TRANSFER = "TRANSFER"
    WALLET_TRANSFER = "WALLET_TRANSFER"
    WALLET_DEBIT = "WALLET_DEBIT"
    WALLET_CREDIT = "WALLET_CREDIT"
    ACCOUNT_TO_WALLET = "ACCOUNT_TO_WALLET"
    WALLET_TO_ACCOUNT = "WALLET_TO_ACCOUNT"


class TransactionStatus(str, Enum):
    """Transaction lifecycle status."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    FAILED_PERMANENT = "FAILED_PERMANENT"
    REVERSED = "REVERSED"


TERMINAL_TRANSACTION_STATUSES = frozenset(
    {
        TransactionStatus.COMPLETED.value,
        TransactionStatus.FAILED_PERMANENT.value,
        TransactionStatus.REVERSED.value,
    }
)

# Statuses from which a submission may claim the transaction
SUBMITTABLE_TRANSACTION_STATUSES = (
    TransactionStatus.PENDING.value,
    TransactionStatus.FAILED.value,
)


class TransactionSource(str, Enum):
    """Channel a transaction originated from."""

    MOBILE_BANKING = "MOBILE_BANKING"
    WALLET = "WALLET"
    ADMIN = "ADMIN"
    API = "API"


# Account/wallet fields each transaction type must carry
REQUIRED_TRANSACTION_PARTIES: dict[str, tuple[str, ...]] = {
    TransactionType.DEBIT.value: ("from_account_number",),
    TransactionType.CREDIT.value: ("to_account_number",),
    TransactionType.TRANSFER.value: ("from_account_number", "to_account_number"),
    TransactionType.WALLET_TRANSFER.value: ("from_wallet_number", "to_wallet_number"),
    TransactionType.WALLET_DEBIT.value: ("from_wallet_number",),
    TransactionType.WALLET_CREDIT.value: ("to_wallet_number",),
    TransactionType.ACCOUNT_TO_WALLET.value: ("from_account_number", "to_wallet_number"),
    TransactionType.WALLET_TO_ACCOUNT.value: ("from_wallet_number", "to_account_number"),
}

# Type used for the reversal of a transaction of the given type
REVERSAL_TRANSACTION_TYPES: dict[str, str] = {
    TransactionType.DEBIT.value: TransactionType.CREDIT.value,
    TransactionType.CREDIT.value: TransactionType.DEBIT.value,
    TransactionType.TRANSFER.value: TransactionType.TRANSFER.value,
    TransactionType.WALLET_TRANSFER.value: TransactionType.WALLET_TRANSFER.value,
    TransactionType.WALLET_DEBIT.value: TransactionType.WALLET_CREDIT.value,
    TransactionType.WALLET_CREDIT.value: TransactionType.WALLET_DEBIT.value,
    TransactionType.ACCOUNT_TO_WALLET.value: TransactionType.WALLET_TO_ACCOUNT.value,
    TransactionType.WALLET_TO_ACCOUNT.value: TransactionType.ACCOUNT_TO_WALLET.value,
}


# User-facing messages for well-known ledger error codes
LEDGER_ERROR_MESSAGES: dict[str, str] = {
    "INSUFFICIENT_FUNDS": "Insufficient funds in the source account",
    "ACCOUNT_BLOCKED": "The account is blocked. Please contact support",
    "DAILY_LIMIT_EXCEEDED": "Daily transaction limit exceeded",
    "INVALID_ACCOUNT": "Invalid account number",
    "ACCOUNT_NOT_FOUND": "Account not found",
    "INVALID_AMOUNT": "Invalid transaction amount",
    "LEDGER_API_ERROR": "Core banking service error. Please try again later",
    "DUPLICATE_REFERENCE": "Duplicate transaction reference",
    "INVALID_CURRENCY": "Invalid or unsupported currency",
    "SYSTEM_ERROR": "A system error occurred. Please try again later",
}
