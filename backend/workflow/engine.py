"""Workflow execution engine: a per-session step sequencer.

An execution walks the active steps of a workflow in ``order``. The
client renders each step and calls the engine:

- ``BEFORE_STEP`` before showing input (e.g. send an OTP). Never advances.
- ``AFTER_STEP`` once input is collected. Validates server-side (unless
  the step is CLIENT_ONLY), calls the step's adapter, records the result
  under the step id and advances to the next active step on success.

Steps with trigger timing ``BOTH`` need a successful BEFORE_STEP before
AFTER_STEP is accepted. CLIENT_ONLY steps never call an adapter.

Context layout (``WorkflowExecution.context``, keyed by step id)::

    {
        "<step id>": {
            "stepId": "...", "key": "amountForm", "order": 0, "type": "FORM",
            "input": {...}, "result": {...} | None,
            "success": true, "error": None, "recordedAt": "..."
        },
        ...
    }

Templates address a step by id or by the aliases computed at start
(``step_<order>``, ``config.dataKey``, label).

Public operations return ``StepOutcome`` / ``CompletionOutcome`` /
``CancelOutcome`` and never raise, except ``NotFoundError`` for an
unknown execution or workflow id.
"""

import asyncio
import weakref
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from core.constants import (
    DeclineAction,
    ExecutionMode,
    ExecutionStatus,
    StepType,
    TriggerTiming,
    WorkflowStatus,
)
from core.exceptions import (
    AdapterError,
    EngineError,
    NotFoundError,
    OutOfSequence,
    TerminalStateViolation,
    ValidationError,
)
from core.utils import utc_now_naive
from db.models.workflow import Workflow
from db.models.workflow_execution import WorkflowExecution
from db.models.workflow_step import WorkflowStep
from services.base import BaseService
from transactions.ledger import LedgerAdapter
from transactions.state_machine import TransactionStateMachine
from workflow.adapters import AdapterResult, ServiceAdapter, TransactionStepAdapter
from workflow.step_config import BaseStepConfig, FormConfig, parse_step_config
from workflow.templates import TemplateContext, TemplateResolver, step_view
from workflow.validation import parse_rules, validate

logger = structlog.get_logger(__name__)

DECLINE_REASON = "User declined confirmation"
SUPERSEDED_REASON = "Superseded by a new execution for the same session"

# Fire-and-forget triggers; referenced here so they are not garbage collected
_background_tasks: set[asyncio.Task] = set()

_execution_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

# Step types whose outcome gates the next step; never fired in the background
_SYNCHRONOUS_STEP_TYPES = (StepType.OTP.value, StepType.VALIDATION.value, StepType.POST_TRANSACTION.value)


# ─── Outcomes ─────────────────────────────────────────────────

@dataclass
class StepOutcome:
    """Result of ``execute_step``."""

    success: bool
    should_proceed: bool
    result: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    field_errors: dict[str, str] = field(default_factory=dict)
    current_step_id: Optional[str] = None
    execution_status: Optional[str] = None


@dataclass
class CompletionOutcome:
    """Result of ``complete``."""

    success: bool
    execution_id: str
    result: Optional[dict] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    status: Optional[str] = None


@dataclass
class CancelOutcome:
    """Result of ``cancel``."""

    success: bool
    execution: WorkflowExecution
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class ExecutionStart:
    """A started execution and the active steps it will walk."""

    execution: WorkflowExecution
    steps: list[WorkflowStep]


# ─── Helpers ──────────────────────────────────────────────────

def execution_lock(execution_id: str) -> asyncio.Lock:
    """The process-wide lock serializing step calls on one execution."""
    lock = _execution_locks.get(execution_id)
    if lock is None:
        lock = asyncio.Lock()
        _execution_locks[execution_id] = lock
    return lock


def transaction_reference(execution_id: str, step_id: str) -> str:
    """Ledger reference of the transaction posted by a step of an execution.

    Derived, not random: a repeated call for the same step finds the
    existing transaction instead of posting a second one.
    """
    return f"TXN-{execution_id}-{step_id}"


def step_key(step: WorkflowStep) -> str:
    """Primary alias of a step: its dataKey, else ``step_<order>``."""
    return step.data_key or f"step_{step.order}"


def build_aliases(steps: Sequence[WorkflowStep]) -> dict[str, str]:
    """alias -> step id for ``step_<order>``, dataKey and label.

    Order and dataKey aliases are unique by construction (authoring
    rejects duplicates). A label that is shared or collides with another
    alias is skipped.
    """
    aliases: dict[str, str] = {}
    for step in steps:
        aliases[f"step_{step.order}"] = step.id
        if step.data_key:
            aliases[step.data_key] = step.id

    label_counts: dict[str, int] = {}
    for step in steps:
        if step.label:
            label_counts[step.label] = label_counts.get(step.label, 0) + 1
    for step in steps:
        if not step.label:
            continue
        if label_counts[step.label] > 1 or aliases.get(step.label, step.id) != step.id:
            logger.warning("step_label_alias_skipped", step_id=step.id, label=step.label)
            continue
        aliases[step.label] = step.id
    return aliases


def _is_decline(step_input: dict) -> bool:
    confirmed = step_input.get("confirmed")
    if isinstance(confirmed, str):
        confirmed = confirmed.strip().lower() not in ("false", "0", "no", "")
    return confirmed is False or step_input.get("declined") is True


def _with(mapping: Optional[dict], key: str, value: Any) -> dict:
    """Copy of ``mapping`` with ``key`` set (JSON columns are replaced, not mutated)."""
    updated = dict(mapping or {})
    updated[key] = value
    return updated


# ─── Engine ───────────────────────────────────────────────────

class WorkflowEngine:
    """Runs workflow executions for one database session."""

    def __init__(
        self,
        db: AsyncSession,
        service_adapter: ServiceAdapter,
        ledger: LedgerAdapter,
    ):
        self.db = db
        self.settings = get_settings()
        self.service_adapter = service_adapter
        self.executions = BaseService(WorkflowExecution, db)
        self.transactions = TransactionStateMachine(db, ledger)
        self.transaction_adapter = TransactionStepAdapter(self.transactions)

    # ─── Start ────────────────────────────────────────────

    async def start(
        self,
        workflow_id: str,
        page_id: Optional[str] = None,
        initial_context: Optional[dict] = None,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> ExecutionStart:
        """Create an IN_PROGRESS execution bound to the first active step.

        Any execution still active for ``session_id`` is cancelled first.

        Raises:
            NotFoundError: Unknown or inactive workflow
            TerminalStateViolation: Workflow is not published
        """
        result = await self.db.execute(select(Workflow).where(Workflow.id == workflow_id))
        workflow = result.scalar_one_or_none()
        if workflow is None or not workflow.is_active:
            raise NotFoundError(f"Workflow {workflow_id} not found or inactive")
        if workflow.status != WorkflowStatus.PUBLISHED.value:
            raise TerminalStateViolation(f"Workflow {workflow_id} is {workflow.status}; only published workflows can run")

        if session_id:
            await self._supersede(session_id)

        steps = workflow.active_steps
        execution = WorkflowExecution(
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            page_id=page_id,
            user_id=user_id,
            session_id=session_id,
            status=ExecutionStatus.PENDING.value,
            variables=dict(initial_context or {}),
            context={},
            step_aliases=build_aliases(steps),
            step_state={},
        )
        execution.workflow = workflow
        self.db.add(execution)
        await self.db.flush()

        execution.status = ExecutionStatus.IN_PROGRESS.value
        execution.current_step_id = steps[0].id if steps else None
        execution.started_at = utc_now_naive()
        await self.db.flush()
        await self.db.refresh(execution)

        logger.info(
            "workflow_execution_started",
            execution_id=execution.id,
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            user_id=user_id,
            session_id=session_id,
            step_count=len(steps),
        )
        return ExecutionStart(execution=execution, steps=steps)

    async def _supersede(self, session_id: str) -> None:
        result = await self.db.execute(
            select(WorkflowExecution).where(
                WorkflowExecution.session_id == session_id,
                WorkflowExecution.status.in_(
                    [ExecutionStatus.PENDING.value, ExecutionStatus.IN_PROGRESS.value]
                ),
            )
        )
        for previous in result.scalars().all():
            self._mark_cancelled(previous, SUPERSEDED_REASON)
            logger.info("workflow_execution_superseded", execution_id=previous.id, session_id=session_id)

    # ─── Read ─────────────────────────────────────────────

    async def get(self, execution_id: str) -> WorkflowExecution:
        """Load an execution or raise ``NotFoundError``."""
        return await self.executions.get_or_404(execution_id)

    async def list_for_user(
        self,
        user_id: str,
        status: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[Sequence[WorkflowExecution], int]:
        return await self.executions.list(
            offset=offset,
            limit=limit,
            filters={"user_id": user_id, "status": status},
        )

    def active_steps(self, execution: WorkflowExecution) -> list[WorkflowStep]:
        return execution.workflow.active_steps

    async def render_step(self, execution_id: str, step_id: str) -> dict:
        """Preview the template fields of a step against the current context.

        Side-effect free; unresolved fields are reported, not raised.
        """
        execution = await self.get(execution_id)
        step = self._find_step(execution, step_id)
        config = parse_step_config(step.type, step.config)
        rendered, errors = config.preview(self._resolver(execution, {}))
        return {"stepId": step.id, "rendered": rendered, "errors": errors}

    # ─── Execute step ─────────────────────────────────────

    async def execute_step(
        self,
        execution_id: str,
        step_id: str,
        step_input: Optional[dict] = None,
        timing: TriggerTiming | str = TriggerTiming.AFTER_STEP,
    ) -> StepOutcome:
        """Run the server side of the current step.

        Rejections (terminal execution, wrong step, invalid input,
        unresolved template, broken step config) come back as an
        unsuccessful outcome. Calls on one execution run one at a time.
        """
        async with execution_lock(execution_id):
            execution = await self.get(execution_id)
            await self.db.refresh(execution)
            try:
                return await self._execute_step(execution, step_id, dict(step_input or {}), self._timing(timing))
            except EngineError as exc:
                return self._rejected(execution, step_id, timing, exc)

    def _rejected(
        self,
        execution: WorkflowExecution,
        step_id: str,
        timing: TriggerTiming | str,
        exc: EngineError,
    ) -> StepOutcome:
        logger.warning(
            "workflow_step_rejected",
            execution_id=execution.id,
            step_id=step_id,
            timing=str(timing),
            code=exc.code,
            error=exc.message,
        )
        return StepOutcome(
            success=False,
            should_proceed=False,
            error=exc.message,
            error_code=exc.code,
            field_errors=getattr(exc, "field_errors", {}) or {},
            current_step_id=execution.current_step_id,
            execution_status=execution.status,
        )

    def _timing(self, timing: TriggerTiming | str) -> TriggerTiming:
        try:
            return TriggerTiming(getattr(timing, "value", timing))
        except ValueError:
            raise ValidationError(f"Unknown trigger timing '{timing}'") from None

    def _config_for(self, step: WorkflowStep) -> BaseStepConfig:
        """Parse the step config and its field rules; errors become ``ValidationError``."""
        config = parse_step_config(step.type, step.config)
        try:
            parse_rules(self._rules_for(step, config))
        except ValueError as exc:
            raise ValidationError(f"Invalid field rules on step {step.id}: {exc}") from exc
        return config

    async def _execute_step(
        self,
        execution: WorkflowExecution,
        step_id: str,
        step_input: dict,
        timing: TriggerTiming,
    ) -> StepOutcome:
        self._require_in_progress(execution)
        if timing == TriggerTiming.BOTH:
            raise OutOfSequence("Step calls must use BEFORE_STEP or AFTER_STEP timing")
        if step_id != execution.current_step_id:
            raise OutOfSequence(
                f"Step {step_id} is not the current step (current: {execution.current_step_id})"
            )

        step = self._find_step(execution, step_id)
        if self._step_state(execution, step).get("passed"):
            raise OutOfSequence("Every step has been executed; complete the execution")
        config = self._config_for(step)

        if timing == TriggerTiming.BEFORE_STEP:
            return await self._before_step(execution, step, config, step_input)

        if step.type == StepType.CONFIRMATION.value and _is_decline(step_input):
            return await self._decline(execution, step, config)
        return await self._after_step(execution, step, config, step_input)

    async def _before_step(
        self,
        execution: WorkflowExecution,
        step: WorkflowStep,
        config: BaseStepConfig,
        step_input: dict,
    ) -> StepOutcome:
        if not self._calls_adapter(step, TriggerTiming.BEFORE_STEP):
            return self._outcome(execution, True, True)

        adapter_result = await self._invoke(execution, step, config, step_input, TriggerTiming.BEFORE_STEP)
        self._set_step_state(
            execution,
            step,
            before={
                "success": adapter_result.success,
                "result": adapter_result.result,
                "error": adapter_result.error,
            },
            beforeOk=adapter_result.success,
        )
        await self.db.flush()

        logger.info(
            "workflow_before_step",
            execution_id=execution.id,
            step_id=step.id,
            success=adapter_result.success,
        )
        return self._outcome(
            execution,
            adapter_result.success,
            adapter_result.success,
            result=adapter_result.result,
            error=adapter_result.error,
        )

    async def _after_step(
        self,
        execution: WorkflowExecution,
        step: WorkflowStep,
        config: BaseStepConfig,
        step_input: dict,
    ) -> StepOutcome:
        mode = ExecutionMode(step.execution_mode)

        if mode != ExecutionMode.CLIENT_ONLY:
            if step.trigger_timing == TriggerTiming.BOTH.value and not self._step_state(execution, step).get("beforeOk"):
                raise OutOfSequence("BEFORE_STEP must succeed before AFTER_STEP for this step")
            field_errors = validate(self._rules_for(step, config), step_input)
            if field_errors:
                raise ValidationError("Input validation failed", field_errors)

        if not self._calls_adapter(step, TriggerTiming.AFTER_STEP):
            self._record(execution, step, step_input, None, True)
            self._advance(execution, step)
            await self.db.flush()
            return self._outcome(execution, True, True)

        if mode == ExecutionMode.SERVER_ASYNC and step.type not in _SYNCHRONOUS_STEP_TYPES:
            parameters = config.build_parameters(self._resolver(execution, step_input), step_input)
            self._fire_and_forget(execution, step, parameters)
            result = {"message": "Async trigger initiated"}
            self._record(execution, step, step_input, result, True)
            self._advance(execution, step)
            await self.db.flush()
            return self._outcome(execution, True, True, result=result)

        adapter_result = await self._invoke(execution, step, config, step_input, TriggerTiming.AFTER_STEP)
        self._record(execution, step, step_input, adapter_result.result, adapter_result.success, adapter_result.error)
        if adapter_result.success:
            self._advance(execution, step)
        await self.db.flush()

        logger.info(
            "workflow_after_step",
            execution_id=execution.id,
            step_id=step.id,
            step_type=step.type,
            success=adapter_result.success,
            next_step_id=execution.current_step_id,
        )
        return self._outcome(
            execution,
            adapter_result.success,
            adapter_result.success,
            result=adapter_result.result,
            error=adapter_result.error,
        )

    async def _decline(
        self,
        execution: WorkflowExecution,
        step: WorkflowStep,
        config: BaseStepConfig,
    ) -> StepOutcome:
        action = getattr(config, "decline_action", DeclineAction.CANCEL)

        if action == DeclineAction.PREVIOUS_STEP:
            steps = self.active_steps(execution)
            index = next(i for i, s in enumerate(steps) if s.id == step.id)
            if index == 0:
                raise OutOfSequence("There is no previous step to return to")
            previous = steps[index - 1]
            execution.current_step_id = previous.id
            # the previous step must run its BEFORE_STEP again
            self._set_step_state(execution, previous, beforeOk=False, passed=False)
            await self.db.flush()
            logger.info("workflow_confirmation_declined", execution_id=execution.id, action=action.value)
            return self._outcome(
                execution,
                True,
                False,
                result={"declined": True, "action": action.value, "currentStepId": previous.id},
            )

        self._mark_cancelled(execution, DECLINE_REASON)
        await self.db.flush()
        logger.info("workflow_confirmation_declined", execution_id=execution.id, action=DeclineAction.CANCEL.value)
        return self._outcome(
            execution,
            True,
            False,
            result={"declined": True, "action": DeclineAction.CANCEL.value},
        )

    # ─── Adapter invocation ───────────────────────────────

    def _calls_adapter(self, step: WorkflowStep, timing: TriggerTiming) -> bool:
        if step.execution_mode == ExecutionMode.CLIENT_ONLY.value:
            return False
        if step.trigger_timing not in (timing.value, TriggerTiming.BOTH.value):
            return False
        return bool(step.trigger_endpoint) or step.type == StepType.POST_TRANSACTION.value

    def _timeout_ms(self, step: WorkflowStep) -> int:
        if step.timeout_ms:
            return step.timeout_ms
        if step.execution_mode == ExecutionMode.SERVER_VALIDATION.value:
            return self.settings.VALIDATION_STEP_TIMEOUT_MS
        return self.settings.DEFAULT_STEP_TIMEOUT_MS

    def _headers(self, execution: WorkflowExecution) -> dict[str, str]:
        return {
            "X-User-Id": execution.user_id or "",
            "X-Session-Id": execution.session_id or "",
            "X-Execution-Id": execution.id,
        }

    def _check_attempts(self, execution: WorkflowExecution, step: WorkflowStep, timing: TriggerTiming) -> None:
        """Bound OTP send/validate attempts per timing."""
        if step.type != StepType.OTP.value:
            return
        max_attempts = int((step.retry_config or {}).get("maxRetries") or self.settings.OTP_MAX_ATTEMPTS)
        attempts = dict(self._step_state(execution, step).get("attempts") or {})
        used = attempts.get(timing.value, 0)
        if used >= max_attempts:
            raise AdapterError(f"Maximum attempts ({max_attempts}) exhausted for this step", status_code=429)
        attempts[timing.value] = used + 1
        self._set_step_state(execution, step, attempts=attempts)

    async def _invoke(
        self,
        execution: WorkflowExecution,
        step: WorkflowStep,
        config: BaseStepConfig,
        step_input: dict,
        timing: TriggerTiming,
    ) -> AdapterResult:
        """Resolve parameters and call the adapter; failures become results."""
        resolver = self._resolver(execution, step_input)
        parameters = config.build_parameters(resolver, step_input)
        timeout_ms = self._timeout_ms(step)
        rendered = config.render(resolver) if step.type == StepType.POST_TRANSACTION.value else {}
        # counted only once the call is certain to go out
        self._check_attempts(execution, step, timing)

        try:
            if step.type == StepType.POST_TRANSACTION.value:
                adapter_result = await self.transaction_adapter.execute(
                    config,
                    parameters,
                    timeout_ms,
                    existing_transaction_id=self._step_state(execution, step).get("transactionId"),
                    reference=transaction_reference(execution.id, step.id),
                    initiated_by=execution.user_id,
                    retry_config=step.retry_config,
                    description=rendered.get("description"),
                )
                if isinstance(adapter_result.result, dict) and adapter_result.result.get("transactionId"):
                    self._set_step_state(execution, step, transactionId=adapter_result.result["transactionId"])
            else:
                adapter_result = await asyncio.wait_for(
                    self.service_adapter.invoke(
                        step.trigger_endpoint,
                        parameters,
                        timeout_ms,
                        headers=self._headers(execution),
                    ),
                    timeout=timeout_ms / 1000,
                )
        except asyncio.TimeoutError:
            adapter_result = AdapterResult(False, None, f"Step timed out after {timeout_ms}ms")
        except AdapterError as exc:
            adapter_result = AdapterResult(False, None, exc.message)
        except Exception as exc:
            logger.error(
                "workflow_adapter_exception",
                execution_id=execution.id,
                step_id=step.id,
                error=str(exc),
                exc_info=True,
            )
            adapter_result = AdapterResult(False, None, str(exc) or type(exc).__name__)

        if not adapter_result.success:
            logger.warning(
                "workflow_adapter_failed",
                execution_id=execution.id,
                step_id=step.id,
                endpoint=step.trigger_endpoint,
                timing=timing.value,
                error=adapter_result.error,
            )
        return adapter_result

    def _fire_and_forget(self, execution: WorkflowExecution, step: WorkflowStep, parameters: dict) -> None:
        timeout_ms = self._timeout_ms(step)
        log = logger.bind(execution_id=execution.id, step_id=step.id, endpoint=step.trigger_endpoint)

        async def _run() -> None:
            try:
                result = await asyncio.wait_for(
                    self.service_adapter.invoke(
                        step.trigger_endpoint, parameters, timeout_ms, headers=self._headers(execution)
                    ),
                    timeout=timeout_ms / 1000,
                )
                log.info("workflow_async_trigger_done", success=result.success, error=result.error)
            except Exception as exc:
                log.warning("workflow_async_trigger_failed", error=str(exc))

        task = asyncio.create_task(_run())
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)

    # ─── Complete / cancel ────────────────────────────────

    async def complete(self, execution_id: str) -> CompletionOutcome:
        """Finish the execution once every active step has passed.

        If the final step's recorded adapter result is a failure the
        execution becomes FAILED instead.
        """
        async with execution_lock(execution_id):
            execution = await self.get(execution_id)
            await self.db.refresh(execution)
            try:
                return await self._complete(execution)
            except EngineError as exc:
                logger.warning("workflow_complete_rejected", execution_id=execution.id, error=exc.message)
                return CompletionOutcome(
                    success=False,
                    execution_id=execution.id,
                    error=exc.message,
                    error_code=exc.code,
                    status=execution.status,
                )

    async def _complete(self, execution: WorkflowExecution) -> CompletionOutcome:
        self._require_in_progress(execution)
        steps = self.active_steps(execution)

        if steps:
            if execution.current_step_id != steps[-1].id:
                raise OutOfSequence("Workflow still has steps to execute")
            record = execution.context.get(execution.current_step_id)
            if record is None:
                raise OutOfSequence("The final step has not been executed")
            if not record.get("success"):
                error = record.get("error") or "Final step failed"
                snapshot = self._snapshot(execution)
                execution.status = ExecutionStatus.FAILED.value
                execution.error = error
                execution.final_result = snapshot
                execution.completed_at = utc_now_naive()
                await self.db.flush()
                logger.info("workflow_execution_failed", execution_id=execution.id, error=error)
                return CompletionOutcome(
                    success=False,
                    execution_id=execution.id,
                    result=snapshot,
                    error=error,
                    error_code="STEP_FAILED",
                    status=execution.status,
                )

        snapshot = self._snapshot(execution)
        execution.status = ExecutionStatus.COMPLETED.value
        execution.final_result = snapshot
        execution.completed_at = utc_now_naive()
        await self.db.flush()
        logger.info("workflow_execution_completed", execution_id=execution.id)
        return CompletionOutcome(
            success=True,
            execution_id=execution.id,
            result=snapshot,
            status=execution.status,
        )

    async def cancel(self, execution_id: str, reason: Optional[str] = None) -> CancelOutcome:
        """Cancel an IN_PROGRESS execution. Completed transactions stay as they are."""
        execution = await self.get(execution_id)
        try:
            self._require_in_progress(execution)
        except TerminalStateViolation as exc:
            return CancelOutcome(False, execution, exc.message, exc.code)
        self._mark_cancelled(execution, reason or "Cancelled by user")
        await self.db.flush()
        logger.info("workflow_execution_cancelled", execution_id=execution.id, reason=execution.error)
        return CancelOutcome(True, execution)

    # ─── Internals ────────────────────────────────────────

    def _require_in_progress(self, execution: WorkflowExecution) -> None:
        if execution.status != ExecutionStatus.IN_PROGRESS.value:
            raise TerminalStateViolation(
                f"Execution {execution.id} is {execution.status}, not IN_PROGRESS"
            )

    def _mark_cancelled(self, execution: WorkflowExecution, reason: str) -> None:
        execution.status = ExecutionStatus.CANCELLED.value
        execution.error = reason
        execution.completed_at = utc_now_naive()

    def _find_step(self, execution: WorkflowExecution, step_id: str) -> WorkflowStep:
        for step in execution.workflow.steps:
            if step.id == step_id:
                return step
        raise NotFoundError(f"Step {step_id} not found in workflow {execution.workflow_id}")

    def _rules_for(self, step: WorkflowStep, config: BaseStepConfig):
        if step.validation:
            return step.validation
        if isinstance(config, FormConfig):
            return config.form_fields
        return None

    def _resolver(self, execution: WorkflowExecution, step_input: dict) -> TemplateResolver:
        return TemplateResolver(
            TemplateContext.from_execution(
                execution.context,
                execution.step_aliases,
                execution.variables,
                step_input,
            )
        )

    def _step_state(self, execution: WorkflowExecution, step: WorkflowStep) -> dict:
        return dict((execution.step_state or {}).get(step.id) or {})

    def _set_step_state(self, execution: WorkflowExecution, step: WorkflowStep, **values: Any) -> None:
        state = self._step_state(execution, step)
        state.update(values)
        execution.step_state = _with(execution.step_state, step.id, state)

    def _record(
        self,
        execution: WorkflowExecution,
        step: WorkflowStep,
        step_input: dict,
        result: Any,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        record = {
            "stepId": step.id,
            "key": step_key(step),
            "order": step.order,
            "type": step.type,
            "label": step.label,
            "input": step_input,
            "result": result,
            "success": success,
            "error": error,
            "recordedAt": utc_now_naive().isoformat(),
        }
        before = self._step_state(execution, step).get("before")
        if before is not None:
            record["before"] = before
        execution.context = _with(execution.context, step.id, record)

    def _advance(self, execution: WorkflowExecution, step: WorkflowStep) -> None:
        steps = self.active_steps(execution)
        ids = [s.id for s in steps]
        index = ids.index(step.id)
        self._set_step_state(execution, step, passed=True)
        # the last step stays current until complete()
        if index + 1 < len(ids):
            execution.current_step_id = ids[index + 1]

    def _snapshot(self, execution: WorkflowExecution) -> dict:
        context = dict(execution.context or {})
        return {
            "context": context,
            "data": {record["key"]: {k: v for k, v in step_view(record).items() if k not in ("input", "result")}
                     for record in context.values()},
            "variables": dict(execution.variables or {}),
        }

    def _outcome(
        self,
        execution: WorkflowExecution,
        success: bool,
        should_proceed: bool,
        result: Any = None,
        error: Optional[str] = None,
    ) -> StepOutcome:
        return StepOutcome(
            success=success,
            should_proceed=should_proceed,
            result=result,
            error=error,
            current_step_id=execution.current_step_id,
            execution_status=execution.status,
        )
