"""Workflow execution endpoints: start, execute step, complete, cancel, inspect."""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
import logging

from api.schemas.common import PaginationParams
from api.schemas.workflow import WorkflowStepResponse
from api.schemas.workflow_execution import (
    CancelRequest,
    CancelResponse,
    CompleteResponse,
    ExecutionListResponse,
    ExecutionResponse,
    ExecutionStartRequest,
    ExecutionStartResponse,
    StepExecuteRequest,
    StepExecuteResponse,
    StepPreviewResponse,
)
from app.dependencies import get_workflow_engine
from core.utils import calculate_offset
from workflow.engine import WorkflowEngine

logger = logging.getLogger(__name__)

router = APIRouter(tags=["workflow-executions"])


@router.post("/", response_model=ExecutionStartResponse, status_code=status.HTTP_201_CREATED)
async def start_execution(
    request: ExecutionStartRequest,
    engine: WorkflowEngine = Depends(get_workflow_engine),
) -> ExecutionStartResponse:
    """
    Start a workflow for a user session.

    Returns the execution bound to the first active step, plus the
    ordered active steps the client will render.
    """
    started = await engine.start(
        workflow_id=request.workflow_id,
        page_id=request.page_id,
        initial_context=request.initial_context,
        user_id=request.user_id,
        session_id=request.session_id,
    )
    response = ExecutionStartResponse.model_validate(started.execution)
    response.steps = [WorkflowStepResponse.model_validate(step) for step in started.steps]
    return response


@router.get("/", response_model=ExecutionListResponse)
async def list_executions(
    user_id: str = Query(alias="userId"),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    pagination: PaginationParams = Depends(),
    engine: WorkflowEngine = Depends(get_workflow_engine),
) -> ExecutionListResponse:
    """
    List a user's executions, newest first.
    """
    executions, total = await engine.list_for_user(
        user_id,
        status=status_filter,
        offset=calculate_offset(pagination.page, pagination.per_page),
        limit=pagination.per_page,
    )
    return ExecutionListResponse(
        executions=[ExecutionResponse.model_validate(e) for e in executions],
        total=total,
        page=pagination.page,
        per_page=pagination.per_page,
    )


@router.get("/{execution_id}", response_model=ExecutionResponse)
async def get_execution(
    execution_id: str,
    engine: WorkflowEngine = Depends(get_workflow_engine),
) -> ExecutionResponse:
    return ExecutionResponse.model_validate(await engine.get(execution_id))


@router.post("/{execution_id}/steps/{step_id}", response_model=StepExecuteResponse)
async def execute_step(
    execution_id: str,
    step_id: str,
    request: StepExecuteRequest,
    engine: WorkflowEngine = Depends(get_workflow_engine),
) -> StepExecuteResponse:
    """
    Run the server side of the current step.

    Business failures (validation, sequencing, adapter errors) come back
    with ``success: false`` and HTTP 200.
    """
    outcome = await engine.execute_step(execution_id, step_id, request.input, request.timing)
    return StepExecuteResponse.model_validate(outcome)


@router.get("/{execution_id}/steps/{step_id}/preview", response_model=StepPreviewResponse)
async def preview_step(
    execution_id: str,
    step_id: str,
    engine: WorkflowEngine = Depends(get_workflow_engine),
) -> StepPreviewResponse:
    """
    Render a step's template fields against the current context.
    """
    return StepPreviewResponse.model_validate(await engine.render_step(execution_id, step_id))


@router.post("/{execution_id}/complete", response_model=CompleteResponse)
async def complete_execution(
    execution_id: str,
    engine: WorkflowEngine = Depends(get_workflow_engine),
) -> CompleteResponse:
    outcome = await engine.complete(execution_id)
    return CompleteResponse.model_validate(outcome)


@router.post("/{execution_id}/cancel", response_model=CancelResponse)
async def cancel_execution(
    execution_id: str,
    request: Optional[CancelRequest] = None,
    engine: WorkflowEngine = Depends(get_workflow_engine),
) -> CancelResponse:
    """
    Cancel an in-progress execution. Completed transactions are kept.
    """
    outcome = await engine.cancel(execution_id, request.reason if request else None)
    return CancelResponse(
        success=outcome.success,
        execution=ExecutionResponse.model_validate(outcome.execution),
        error=outcome.error,
        error_code=outcome.error_code,
    )
