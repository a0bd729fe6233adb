"""Core banking ledger client contract and HTTP implementation.

The ledger is idempotent by transaction reference: resubmitting a
reference it already applied returns the original outcome instead of
moving money twice. The reference is sent as ``Idempotency-Key``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

import httpx
import structlog

from app.config import get_settings
from core.constants import LEDGER_ERROR_MESSAGES

logger = structlog.get_logger(__name__)

# Error codes that describe a transient ledger condition
RETRYABLE_ERROR_CODES = frozenset({"LEDGER_API_ERROR", "SYSTEM_ERROR", "TIMEOUT"})


@dataclass
class LedgerResult:
    """Outcome of one ledger submission."""

    accepted: bool
    retryable: bool = False
    external_reference: Optional[str] = None
    raw_response: Any = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def success(cls, external_reference: Optional[str], raw_response: Any = None) -> "LedgerResult":
        return cls(accepted=True, external_reference=external_reference, raw_response=raw_response)

    @classmethod
    def failure(
        cls,
        message: str,
        retryable: bool,
        error_code: Optional[str] = None,
        raw_response: Any = None,
    ) -> "LedgerResult":
        return cls(
            accepted=False,
            retryable=retryable,
            error_message=message,
            error_code=error_code,
            raw_response=raw_response,
        )


def user_message(error_code: Optional[str], fallback: Optional[str] = None) -> str:
    """User-facing text for a ledger error code."""
    if error_code and error_code in LEDGER_ERROR_MESSAGES:
        return LEDGER_ERROR_MESSAGES[error_code]
    return fallback or LEDGER_ERROR_MESSAGES["SYSTEM_ERROR"]


class LedgerAdapter(ABC):
    """Contract used by the transaction state machine."""

    @abstractmethod
    async def submit_transaction(
        self,
        reference: str,
        type: str,
        amount: Decimal,
        currency: str,
        parties: dict[str, Optional[str]],
        description: Optional[str] = None,
    ) -> LedgerResult:
        """Post a transaction; must be idempotent by ``reference``."""


@dataclass
class HttpLedgerAdapter(LedgerAdapter):
    """Ledger client over HTTP (``POST {base_url}/transactions``).

    Response mapping:
    - 2xx with ``status`` other than ``FAILED``: accepted
    - 409 ``DUPLICATE_REFERENCE`` carrying a ledger reference: already
      applied, treated as accepted
    - 408, 429 and 5xx, network errors and timeouts: retryable
    - other 4xx: rejected, not retryable
    """

    base_url: str
    api_key: str = ""
    timeout: float = 30.0
    transport: Optional[httpx.AsyncBaseTransport] = field(default=None, repr=False)

    @classmethod
    def from_settings(cls) -> "HttpLedgerAdapter":
        settings = get_settings()
        return cls(
            base_url=settings.LEDGER_BASE_URL,
            api_key=settings.LEDGER_API_KEY,
            timeout=settings.LEDGER_TIMEOUT_SECONDS,
        )

    async def submit_transaction(
        self,
        reference: str,
        type: str,
        amount: Decimal,
        currency: str,
        parties: dict[str, Optional[str]],
        description: Optional[str] = None,
    ) -> LedgerResult:
        payload = {
            "reference": reference,
            "type": type,
            "amount": str(amount),
            "currency": currency,
            "description": description,
            **{key: value for key, value in parties.items() if value},
        }
        headers = {"Idempotency-Key": reference}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.post("/transactions", json=payload, headers=headers)
        except httpx.TimeoutException:
            logger.warning("ledger_timeout", reference=reference, timeout=self.timeout)
            return LedgerResult.failure(
                f"Ledger request timed out after {self.timeout}s", retryable=True, error_code="TIMEOUT"
            )
        except httpx.TransportError as exc:
            logger.warning("ledger_unreachable", reference=reference, error=str(exc))
            return LedgerResult.failure(
                f"Ledger connection failed: {exc}", retryable=True, error_code="LEDGER_API_ERROR"
            )

        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text}
        if not isinstance(body, dict):
            body = {"data": body}

        return self._interpret(reference, response.status_code, body)

    @staticmethod
    def _interpret(reference: str, status_code: int, body: dict) -> LedgerResult:
        ledger_ref = body.get("ledgerReference") or body.get("reference_id") or body.get("id")
        error_code = body.get("errorCode")
        message = body.get("message") or body.get("error")

        if 200 <= status_code < 300 and str(body.get("status", "")).upper() != "FAILED":
            return LedgerResult.success(ledger_ref, body)

        if status_code == 409 and error_code == "DUPLICATE_REFERENCE" and ledger_ref:
            logger.info("ledger_duplicate_reference_accepted", reference=reference, ledger_reference=ledger_ref)
            return LedgerResult.success(ledger_ref, body)

        retryable = (
            status_code in (408, 429)
            or status_code >= 500
            or (error_code in RETRYABLE_ERROR_CODES)
        )
        return LedgerResult.failure(
            user_message(error_code, message),
            retryable=retryable,
            error_code=error_code or ("LEDGER_API_ERROR" if status_code >= 500 else None),
            raw_response=body,
        )
