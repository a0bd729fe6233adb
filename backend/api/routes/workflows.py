"""Workflow definition endpoints: create, get, list, publish, archive."""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
import logging

from api.schemas.common import PaginationParams
from api.schemas.workflow import WorkflowCreate, WorkflowResponse, WorkflowStepCreate
from app.dependencies import get_workflow_service
from core.utils import calculate_offset, paginate
from services.workflow_service import WorkflowService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["workflows"])


@router.post("/", response_model=WorkflowResponse, status_code=status.HTTP_201_CREATED)
async def create_workflow(
    request: WorkflowCreate,
    svc: WorkflowService = Depends(get_workflow_service),
) -> WorkflowResponse:
    """
    Create a draft workflow with its ordered steps.
    """
    wf = await svc.create_workflow(
        name=request.name,
        description=request.description,
        is_active=request.is_active,
        steps=[step.to_service() for step in request.steps],
    )
    logger.info(f"Workflow created: {wf.id}")
    return WorkflowResponse.model_validate(wf)


@router.get("/")
async def list_workflows(
    pagination: PaginationParams = Depends(),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    svc: WorkflowService = Depends(get_workflow_service),
) -> dict:
    """
    List workflow definitions (paginated).
    """
    workflows, total = await svc.list_workflows(
        status=status_filter,
        offset=calculate_offset(pagination.page, pagination.per_page),
        limit=pagination.per_page,
    )
    items = [WorkflowResponse.model_validate(wf).model_dump(by_alias=True, mode="json") for wf in workflows]
    return paginate(items, total, pagination.page, pagination.per_page)


@router.get("/{workflow_id}", response_model=WorkflowResponse)
async def get_workflow(
    workflow_id: str,
    svc: WorkflowService = Depends(get_workflow_service),
) -> WorkflowResponse:
    """
    Get a workflow with its steps.
    """
    return WorkflowResponse.model_validate(await svc.get_workflow(workflow_id))


@router.put("/{workflow_id}/steps", response_model=WorkflowResponse)
async def replace_steps(
    workflow_id: str,
    steps: list[WorkflowStepCreate],
    svc: WorkflowService = Depends(get_workflow_service),
) -> WorkflowResponse:
    """
    Replace the steps of a draft workflow (bumps the version).
    """
    wf = await svc.replace_steps(workflow_id, [step.to_service() for step in steps])
    return WorkflowResponse.model_validate(wf)


@router.post("/{workflow_id}/publish", response_model=WorkflowResponse)
async def publish_workflow(
    workflow_id: str,
    svc: WorkflowService = Depends(get_workflow_service),
) -> WorkflowResponse:
    """
    Publish a workflow (make it immutable and executable).
    """
    return WorkflowResponse.model_validate(await svc.publish(workflow_id))


@router.post("/{workflow_id}/archive", response_model=WorkflowResponse)
async def archive_workflow(
    workflow_id: str,
    svc: WorkflowService = Depends(get_workflow_service),
) -> WorkflowResponse:
    """
    Archive a workflow; running executions are not affected.
    """
    return WorkflowResponse.model_validate(await svc.archive(workflow_id))
