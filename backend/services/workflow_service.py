"""Workflow service: authoring and publishing workflow definitions."""

from typing import Any, Optional, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import ExecutionMode, StepType, TriggerTiming, WorkflowStatus
from core.exceptions import TerminalStateViolation, ValidationError
from db.models.workflow import Workflow
from db.models.workflow_step import WorkflowStep
from services.base import BaseService
from workflow.step_config import FormConfig, parse_step_config
from workflow.validation import parse_rules

logger = structlog.get_logger(__name__)

# Modes a POST_TRANSACTION step may use; the outcome must be known before advancing
_TRANSACTION_MODES = (ExecutionMode.SERVER_SYNC.value, ExecutionMode.SERVER_VALIDATION.value)


def _value(raw: Any) -> Any:
    return getattr(raw, "value", raw)


def validate_steps(steps: Sequence[dict[str, Any]]) -> dict[str, str]:
    """Check a step list against the authoring invariants.

    Returns:
        ``{"steps[i].field": message}``; empty when the definition is valid
    """
    errors: dict[str, str] = {}
    data_keys: dict[str, int] = {}

    orders = [step.get("order") for step in steps]
    if any(not isinstance(order, int) for order in orders):
        errors["steps"] = "Every step needs an integer order"
    elif len(set(orders)) != len(orders):
        errors["steps"] = "Step order values must be unique"
    elif orders and max(orders) - min(orders) + 1 != len(orders):
        errors["steps"] = "Step order values must be dense (no gaps)"

    for index, step in enumerate(steps):
        prefix = f"steps[{index}]"
        step_type = _value(step.get("type"))
        mode = _value(step.get("execution_mode") or ExecutionMode.CLIENT_ONLY.value)
        timing = _value(step.get("trigger_timing"))

        if step_type not in StepType.__members__:
            errors[f"{prefix}.type"] = f"Unknown step type '{step_type}'"
            continue
        if mode not in ExecutionMode.__members__:
            errors[f"{prefix}.executionMode"] = f"Unknown execution mode '{mode}'"
            continue

        if mode == ExecutionMode.CLIENT_ONLY.value and timing:
            errors[f"{prefix}.triggerTiming"] = "Client-only steps cannot have a trigger timing"
        elif mode != ExecutionMode.CLIENT_ONLY.value and not timing:
            errors[f"{prefix}.triggerTiming"] = "Server steps need a trigger timing"
        elif timing and timing not in TriggerTiming.__members__:
            errors[f"{prefix}.triggerTiming"] = f"Unknown trigger timing '{timing}'"

        if step_type == StepType.POST_TRANSACTION.value and mode not in _TRANSACTION_MODES:
            errors[f"{prefix}.executionMode"] = "Transaction steps must run synchronously on the server"
        if step_type == StepType.OTP.value:
            # sent on BEFORE_STEP, verified on AFTER_STEP before the flow may advance
            if mode != ExecutionMode.SERVER_SYNC.value:
                errors[f"{prefix}.executionMode"] = "OTP steps must run synchronously on the server"
            if timing != TriggerTiming.BOTH.value:
                errors[f"{prefix}.triggerTiming"] = "OTP steps must send and verify (timing BOTH)"
        if (
            mode != ExecutionMode.CLIENT_ONLY.value
            and step_type != StepType.POST_TRANSACTION.value
            and not step.get("trigger_endpoint")
        ):
            errors[f"{prefix}.triggerEndpoint"] = "Server steps need a trigger endpoint"

        timeout_ms = step.get("timeout_ms")
        if timeout_ms is not None and (not isinstance(timeout_ms, int) or timeout_ms <= 0):
            errors[f"{prefix}.timeoutMs"] = "Timeout must be a positive number of milliseconds"

        try:
            config = parse_step_config(step_type, step.get("config"))
            parse_rules(step.get("validation"))
        except ValidationError as exc:
            errors[f"{prefix}.config"] = exc.message
            continue
        except ValueError as exc:
            errors[f"{prefix}.validation"] = str(exc)
            continue

        if isinstance(config, FormConfig):
            try:
                parse_rules(config.form_fields)
            except ValueError as exc:
                errors[f"{prefix}.config.fields"] = str(exc)

        if config.data_key:
            if config.data_key in data_keys:
                errors[f"{prefix}.config.dataKey"] = (
                    f"dataKey '{config.data_key}' is already used by steps[{data_keys[config.data_key]}]"
                )
            else:
                data_keys[config.data_key] = index
    return errors


class WorkflowService(BaseService[Workflow]):
    """Service for workflow definitions."""

    def __init__(self, db: AsyncSession):
        super().__init__(Workflow, db)

    async def create_workflow(
        self,
        name: str,
        steps: Sequence[dict[str, Any]],
        description: str = "",
        is_active: bool = True,
    ) -> Workflow:
        """Create a draft workflow with its steps.

        Raises:
            ValidationError: A step breaks an authoring invariant
        """
        errors = validate_steps(steps)
        if errors:
            raise ValidationError("Invalid workflow definition", errors)

        workflow = Workflow(
            name=name,
            description=description,
            is_active=is_active,
            status=WorkflowStatus.DRAFT.value,
            version=1,
            steps=[self._build_step(step) for step in steps],
        )
        self.db.add(workflow)
        await self.db.flush()
        logger.info("workflow_created", workflow_id=workflow.id, name=name, step_count=len(steps))
        return await self.get_workflow(workflow.id)

    async def replace_steps(self, workflow_id: str, steps: Sequence[dict[str, Any]]) -> Workflow:
        """Replace the step list of a draft workflow and bump its version."""
        workflow = await self.get_workflow(workflow_id)
        if workflow.status != WorkflowStatus.DRAFT.value:
            raise TerminalStateViolation(f"Workflow {workflow_id} is {workflow.status}; only drafts can be edited")

        errors = validate_steps(steps)
        if errors:
            raise ValidationError("Invalid workflow definition", errors)

        # orphaned rows go first so the (workflow_id, step_order) constraint holds
        workflow.steps = []
        await self.db.flush()
        workflow.steps = [self._build_step(step) for step in steps]
        workflow.version += 1
        await self.db.flush()
        logger.info("workflow_steps_replaced", workflow_id=workflow.id, version=workflow.version)
        return await self.get_workflow(workflow.id)

    async def publish(self, workflow_id: str) -> Workflow:
        """Publish a draft; published workflows are immutable."""
        workflow = await self.get_workflow(workflow_id)
        if workflow.status == WorkflowStatus.PUBLISHED.value:
            return workflow
        if workflow.status == WorkflowStatus.ARCHIVED.value:
            raise TerminalStateViolation(f"Workflow {workflow_id} is archived")

        workflow.status = WorkflowStatus.PUBLISHED.value
        workflow.is_active = True
        await self.db.flush()
        logger.info("workflow_published", workflow_id=workflow.id, version=workflow.version)
        return workflow

    async def archive(self, workflow_id: str) -> Workflow:
        """Archive a workflow; no new executions may start."""
        workflow = await self.get_workflow(workflow_id)
        workflow.status = WorkflowStatus.ARCHIVED.value
        workflow.is_active = False
        await self.db.flush()
        logger.info("workflow_archived", workflow_id=workflow.id)
        return workflow

    async def get_workflow(self, workflow_id: str) -> Workflow:
        """Load a workflow with its steps (fresh from the database)."""
        result = await self.db.execute(
            select(Workflow)
            .where(Workflow.id == workflow_id)
            .execution_options(populate_existing=True)
        )
        workflow = result.scalar_one_or_none()
        if workflow is None:
            return await self.get_or_404(workflow_id)
        return workflow

    async def list_workflows(
        self,
        status: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[Sequence[Workflow], int]:
        return await self.list(offset=offset, limit=limit, filters={"status": status})

    @staticmethod
    def _build_step(data: dict[str, Any]) -> WorkflowStep:
        mode = _value(data.get("execution_mode") or ExecutionMode.CLIENT_ONLY.value)
        return WorkflowStep(
            type=_value(data["type"]),
            order=data["order"],
            label=data.get("label") or "",
            is_active=data.get("is_active", True),
            config=dict(data.get("config") or {}),
            validation=data.get("validation"),
            execution_mode=mode,
            trigger_timing=_value(data.get("trigger_timing")),
            trigger_endpoint=data.get("trigger_endpoint"),
            timeout_ms=data.get("timeout_ms"),
            retry_config=data.get("retry_config"),
        )
