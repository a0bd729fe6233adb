"""External-service adapters used by workflow steps.

``ServiceAdapter`` covers API_CALL, VALIDATION and OTP endpoints.
``TransactionStepAdapter`` bridges POST_TRANSACTION steps onto the
transaction state machine.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
import structlog

from app.config import get_settings
from core.constants import TransactionStatus
from core.exceptions import AdapterError, AdapterTimeout
from transactions.state_machine import PARTY_FIELDS, TransactionOutcome, TransactionStateMachine
from workflow.step_config import PostTransactionConfig

logger = structlog.get_logger(__name__)

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


@dataclass
class AdapterResult:
    """Outcome of an external call made on behalf of a step."""

    success: bool
    result: Any = None
    error: Optional[str] = None


class ServiceAdapter(ABC):
    """Contract for validation/API-call/OTP endpoints."""

    @abstractmethod
    async def invoke(
        self,
        endpoint_id: str,
        parameters: dict[str, Any],
        timeout_ms: int,
        headers: Optional[dict[str, str]] = None,
    ) -> AdapterResult:
        """Call ``endpoint_id`` with resolved parameters.

        Raises:
            AdapterTimeout: The endpoint did not answer within ``timeout_ms``
            AdapterError: The endpoint could not be reached
        """


@dataclass
class HttpServiceAdapter(ServiceAdapter):
    """Calls endpoints on the service gateway with ``POST {base_url}/{endpoint_id}``.

    An absolute ``http(s)://`` endpoint id is called as-is. A JSON body
    with ``success: false`` is a failed call even on HTTP 200.
    """

    base_url: str
    api_key: str = ""
    transport: Optional[httpx.AsyncBaseTransport] = field(default=None, repr=False)

    @classmethod
    def from_settings(cls) -> "HttpServiceAdapter":
        settings = get_settings()
        return cls(base_url=settings.SERVICE_GATEWAY_URL, api_key=settings.SERVICE_GATEWAY_API_KEY)

    def _url(self, endpoint_id: str) -> str:
        if endpoint_id.startswith(("http://", "https://")):
            return endpoint_id
        return f"{self.base_url.rstrip('/')}/{endpoint_id.lstrip('/')}"

    async def invoke(
        self,
        endpoint_id: str,
        parameters: dict[str, Any],
        timeout_ms: int,
        headers: Optional[dict[str, str]] = None,
    ) -> AdapterResult:
        request_headers = {k: v for k, v in (headers or {}).items() if v}
        if self.api_key:
            request_headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with httpx.AsyncClient(timeout=timeout_ms / 1000, transport=self.transport) as client:
                response = await client.post(self._url(endpoint_id), json=parameters, headers=request_headers)
        except httpx.TimeoutException as exc:
            raise AdapterTimeout(f"Endpoint {endpoint_id} timed out after {timeout_ms}ms") from exc
        except httpx.TransportError as exc:
            raise AdapterError(f"Endpoint {endpoint_id} unreachable: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = response.text

        if response.is_success:
            if isinstance(body, dict) and body.get("success") is False:
                return AdapterResult(False, body, body.get("message") or body.get("error") or "Request rejected")
            return AdapterResult(True, body.get("data", body) if isinstance(body, dict) else body)

        message = None
        if isinstance(body, dict):
            message = body.get("message") or body.get("error") or body.get("detail")
        return AdapterResult(False, body, message or f"Endpoint {endpoint_id} returned HTTP {response.status_code}")


def _snake(key: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", key).lower()


class TransactionStepAdapter:
    """Creates, submits or re-drives the transaction of a POST_TRANSACTION step.

    The first execution of the step creates a transaction. Later
    executions of the same step reuse it, found by the recorded id or by
    the reference derived from the execution and step: a FAILED
    transaction is retried, a COMPLETED one is reported again, so the
    step never posts a duplicate.
    """

    def __init__(self, machine: TransactionStateMachine):
        self.machine = machine

    async def execute(
        self,
        config: PostTransactionConfig,
        parameters: dict[str, Any],
        timeout_ms: int,
        existing_transaction_id: Optional[str] = None,
        reference: Optional[str] = None,
        initiated_by: Optional[str] = None,
        retry_config: Optional[dict] = None,
        description: Optional[str] = None,
    ) -> AdapterResult:
        if existing_transaction_id:
            existing = await self.machine.get_by_id(existing_transaction_id)
            if existing is not None:
                return await self._redrive(existing, timeout_ms)

        params = {_snake(key): value for key, value in parameters.items()}
        draft = {
            "type": params.get("type") or config.transaction_type.value,
            "source": params.get("source") or config.source.value,
            "amount": params.get("amount"),
            "currency": params.get("currency") or config.currency,
            "description": params.get("description") or description,
            "reference": params.get("reference") or reference,
            "initiated_by": initiated_by,
            **{party: params.get(party) for party in PARTY_FIELDS},
        }
        if retry_config:
            draft["max_retries"] = retry_config.get("maxRetries")
            if retry_config.get("initialBackoffMs") is not None:
                draft["retry_initial_delay_seconds"] = max(1, int(retry_config["initialBackoffMs"]) // 1000)

        created = await self.machine.create(draft)
        if not created.success or created.transaction is None:
            return AdapterResult(
                False,
                {"errors": created.errors},
                "; ".join(created.errors) or created.message,
            )
        if created.transaction.status != TransactionStatus.PENDING.value:
            # the reference was already posted by an earlier call
            return await self._redrive(created.transaction, timeout_ms)

        outcome = await self.machine.submit(created.transaction.id, timeout=timeout_ms / 1000)
        return self._to_result(outcome)

    async def _redrive(self, txn, timeout_ms: int) -> AdapterResult:
        status = txn.status
        if status == TransactionStatus.COMPLETED.value:
            return self._to_result(TransactionOutcome(True, txn, "Transaction completed successfully"))
        if status == TransactionStatus.FAILED.value:
            return self._to_result(await self.machine.retry(txn.id))
        if status == TransactionStatus.PENDING.value:
            return self._to_result(await self.machine.submit(txn.id, timeout=timeout_ms / 1000))
        if status == TransactionStatus.PROCESSING.value:
            return self._to_result(
                TransactionOutcome(False, txn, "Transaction is processing", error_code="PROCESSING")
            )
        return self._to_result(
            TransactionOutcome(False, txn, txn.error_message or f"Transaction {status.lower()}", error_code=status)
        )

    @staticmethod
    def _to_result(outcome: TransactionOutcome) -> AdapterResult:
        txn = outcome.transaction
        result = {"message": outcome.message}
        if txn is not None:
            result.update(
                transactionId=txn.id,
                reference=txn.reference,
                status=txn.status,
                ledgerReference=txn.ledger_reference,
                retryCount=txn.retry_count,
                amount=str(txn.amount),
                currency=txn.currency,
            )
        if outcome.success:
            return AdapterResult(True, result)
        if txn is not None and txn.status == TransactionStatus.FAILED.value:
            error = outcome.message
        else:
            error = outcome.errors[0] if outcome.errors else outcome.message
        return AdapterResult(False, result, error)
