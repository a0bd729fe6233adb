"""Workflow definition schemas."""

from datetime import datetime
from typing import Any, List, Optional

from pydantic import Field

from api.schemas.common import CamelModel
from core.constants import ExecutionMode, StepType, TriggerTiming


class RetryConfig(CamelModel):
    """Per-step retry policy."""

    max_retries: Optional[int] = Field(default=None, ge=0, description="Maximum attempts")
    initial_backoff_ms: Optional[int] = Field(default=None, ge=0, description="First retry delay")


class WorkflowStepCreate(CamelModel):
    """Request to create a workflow step."""

    type: StepType = Field(description="Step type")
    order: int = Field(ge=0, description="Step execution order")
    label: str = Field(default="", description="Display label")
    is_active: bool = Field(default=True, description="Inactive steps are skipped")
    config: dict[str, Any] = Field(default_factory=dict, description="Type-specific configuration")
    validation: Optional[List[dict[str, Any]]] = Field(default=None, description="Field rules")
    execution_mode: ExecutionMode = Field(default=ExecutionMode.CLIENT_ONLY)
    trigger_timing: Optional[TriggerTiming] = Field(default=None)
    trigger_endpoint: Optional[str] = Field(default=None, description="Logical endpoint id")
    timeout_ms: Optional[int] = Field(default=None, ge=1, description="Adapter call timeout")
    retry_config: Optional[RetryConfig] = Field(default=None)

    def to_service(self) -> dict[str, Any]:
        data = self.model_dump()
        if self.retry_config is not None:
            data["retry_config"] = self.retry_config.model_dump(by_alias=True, exclude_none=True)
        return data


class WorkflowCreate(CamelModel):
    """Request to create a workflow with its steps."""

    name: str = Field(min_length=1, description="Workflow name")
    description: str = Field(default="", description="Workflow description")
    is_active: bool = Field(default=True)
    steps: List[WorkflowStepCreate] = Field(default_factory=list)


class WorkflowStepResponse(CamelModel):
    """Workflow step as seen by clients."""

    id: str
    type: str
    order: int
    label: str
    is_active: bool
    config: dict[str, Any]
    validation: Optional[List[dict[str, Any]]] = None
    execution_mode: str
    trigger_timing: Optional[str] = None
    trigger_endpoint: Optional[str] = None
    timeout_ms: Optional[int] = None
    retry_config: Optional[dict[str, Any]] = None


class WorkflowResponse(CamelModel):
    """Workflow information response."""

    id: str = Field(description="Workflow ID")
    name: str = Field(description="Workflow name")
    description: str = Field(description="Workflow description")
    version: int = Field(description="Workflow version number")
    is_active: bool = Field(description="Whether new executions may start")
    status: str = Field(description="Current workflow status (draft, published, archived)")
    steps: List[WorkflowStepResponse] = Field(default_factory=list)
    created_at: datetime = Field(description="Creation timestamp")
    updated_at: datetime = Field(description="Last update timestamp")
