"""Workflow model for the banking workflow engine."""

from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import WorkflowStatus
from db.base import BaseModel


class Workflow(BaseModel):
    """A screen flow definition made of ordered steps.

    Attributes:
        id: Unique identifier (UUID string)
        name: Workflow name
        description: Free text description
        version: Incremented every time the definition is edited
        is_active: Whether new executions may be started
        status: draft, published or archived
        steps: Ordered steps (by ``order``)
    """

    __tablename__ = "workflows"

    name: Mapped[str] = mapped_column(nullable=False, index=True)
    description: Mapped[str] = mapped_column(nullable=False, default="")
    version: Mapped[int] = mapped_column(default=1)
    is_active: Mapped[bool] = mapped_column(default=True, index=True)
    status: Mapped[str] = mapped_column(
        default=WorkflowStatus.DRAFT.value, index=True
    )

    # Relationships
    steps: Mapped[list["WorkflowStep"]] = relationship(
        "WorkflowStep",
        back_populates="workflow",
        cascade="all, delete-orphan",
        order_by="WorkflowStep.order",
        lazy="selectin",
    )

    @property
    def active_steps(self) -> list["WorkflowStep"]:
        """Steps with ``is_active`` set, in execution order."""
        return [step for step in self.steps if step.is_active]
