"""WorkflowExecution model for the banking workflow engine."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import ExecutionStatus, TERMINAL_EXECUTION_STATUSES
from db.base import BaseModel


class WorkflowExecution(BaseModel):
    """One user's live traversal of a workflow.

    JSON columns are replaced, never mutated in place, so SQLAlchemy
    picks up every change.

    Attributes:
        workflow_id: Workflow being executed
        workflow_version: Workflow version at start time
        page_id: Page the user entered the workflow from
        user_id: End user
        session_id: Client session; at most one IN_PROGRESS execution per session
        current_step_id: Step the client is on; the last step stays current once passed (None only for a workflow without active steps)
        status: PENDING, IN_PROGRESS, COMPLETED, FAILED or CANCELLED
        variables: Initial context supplied at start
        context: step id -> recorded step result, in execution order
        step_aliases: alias (``step_<order>``, dataKey, label) -> step id
        step_state: step id -> bookkeeping (BEFORE_STEP acknowledgement, attempts, transaction id)
        final_result: Snapshot produced by complete()
        error: Failure or cancellation reason
    """

    __tablename__ = "workflow_executions"

    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    workflow_version: Mapped[int] = mapped_column(default=1)
    page_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    session_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    current_step_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(
        default=ExecutionStatus.PENDING.value, index=True
    )
    variables: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    context: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    step_aliases: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    step_state: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    final_result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    # Relationships
    workflow: Mapped["Workflow"] = relationship("Workflow", lazy="selectin")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES
