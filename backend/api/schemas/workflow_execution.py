"""Workflow execution schemas."""

from datetime import datetime
from typing import Any, List, Optional

from pydantic import Field

from api.schemas.common import CamelModel
from api.schemas.workflow import WorkflowStepResponse
from core.constants import TriggerTiming


class ExecutionStartRequest(CamelModel):
    """Start a workflow for a user session."""

    workflow_id: str = Field(min_length=1)
    page_id: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    initial_context: dict[str, Any] = Field(default_factory=dict)


class StepExecuteRequest(CamelModel):
    """Input collected for the current step."""

    input: dict[str, Any] = Field(default_factory=dict)
    timing: TriggerTiming = Field(default=TriggerTiming.AFTER_STEP)


class CancelRequest(CamelModel):
    reason: Optional[str] = None


class ExecutionResponse(CamelModel):
    """Workflow execution state."""

    id: str
    workflow_id: str
    workflow_version: int
    page_id: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    current_step_id: Optional[str] = None
    status: str
    variables: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    step_aliases: dict[str, str] = Field(default_factory=dict)
    final_result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ExecutionStartResponse(ExecutionResponse):
    """Started execution including the ordered active steps."""

    steps: List[WorkflowStepResponse] = Field(default_factory=list)


class ExecutionListResponse(CamelModel):
    executions: List[ExecutionResponse]
    total: int
    page: int
    per_page: int


class StepExecuteResponse(CamelModel):
    """Outcome of a step call."""

    success: bool
    should_proceed: bool
    result: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    field_errors: dict[str, str] = Field(default_factory=dict)
    current_step_id: Optional[str] = None
    execution_status: Optional[str] = None


class CompleteResponse(CamelModel):
    success: bool
    execution_id: str
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    status: Optional[str] = None


class CancelResponse(CamelModel):
    success: bool
    execution: ExecutionResponse
    error: Optional[str] = None
    error_code: Optional[str] = None


class StepPreviewResponse(CamelModel):
    """Template fields of a step rendered against the current context."""

    step_id: str
    rendered: dict[str, Any] = Field(default_factory=dict)
    errors: dict[str, str] = Field(default_factory=dict)
