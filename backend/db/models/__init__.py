"""Database models for the banking workflow engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.workflow import Workflow
from db.models.workflow_step import WorkflowStep
from db.models.workflow_execution import WorkflowExecution
from db.models.transaction import Transaction, TransactionStatusHistory

__all__ = [
    "Workflow",
    "WorkflowStep",
    "WorkflowExecution",
    "Transaction",
    "TransactionStatusHistory",
]
