"""WorkflowStep model for the banking workflow engine."""

from typing import Optional

from sqlalchemy import JSON, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import ExecutionMode
from db.base import BaseModel


class WorkflowStep(BaseModel):
    """A single step (screen or server call) of a workflow.

    Attributes:
        id: Unique identifier (UUID string), the canonical context key
        workflow_id: Owning workflow
        type: FORM, API_CALL, VALIDATION, CONFIRMATION, DISPLAY, REDIRECT, OTP or POST_TRANSACTION
        order: Position inside the workflow (unique, dense)
        label: Display label
        is_active: Inactive steps are skipped when selecting the next step
        config: Type-specific JSON document, may hold ``{{path}}`` templates
        validation: Optional list of field rules
        execution_mode: CLIENT_ONLY, SERVER_SYNC, SERVER_ASYNC or SERVER_VALIDATION
        trigger_timing: BEFORE_STEP, AFTER_STEP, BOTH, or None for client-only steps
        trigger_endpoint: Logical id of the external call
        timeout_ms: Adapter call timeout
        retry_config: ``{"maxRetries": int, "initialBackoffMs": int}``
    """

    __tablename__ = "workflow_steps"
    __table_args__ = (
        UniqueConstraint("workflow_id", "step_order", name="uq_workflow_steps_order"),
    )

    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type: Mapped[str] = mapped_column(nullable=False, index=True)
    order: Mapped[int] = mapped_column("step_order", nullable=False)
    label: Mapped[str] = mapped_column(nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(default=True)
    config: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    validation: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    execution_mode: Mapped[str] = mapped_column(
        nullable=False, default=ExecutionMode.CLIENT_ONLY.value
    )
    trigger_timing: Mapped[Optional[str]] = mapped_column(nullable=True)
    trigger_endpoint: Mapped[Optional[str]] = mapped_column(nullable=True)
    timeout_ms: Mapped[Optional[int]] = mapped_column(nullable=True)
    retry_config: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Relationships
    workflow: Mapped["Workflow"] = relationship(
        "Workflow", back_populates="steps", lazy="noload"
    )

    @property
    def data_key(self) -> Optional[str]:
        """Alias under which later templates may address this step."""
        return (self.config or {}).get("dataKey")
