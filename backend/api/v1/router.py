"""API v1 aggregated router.

All v1 endpoints are registered here and mounted under /api/v1 in main.py.
This makes it trivial to add /api/v2 later without touching existing routes.
"""

from fastapi import APIRouter

from api.routes import health, transactions, workflow_executions, workflows

api_v1_router = APIRouter()

# Health
api_v1_router.include_router(
    health.router,
    tags=["Health"],
)

# Workflow definitions
api_v1_router.include_router(
    workflows.router,
    prefix="/workflows",
    tags=["Workflows"],
)

# Workflow executions
api_v1_router.include_router(
    workflow_executions.router,
    prefix="/workflow-executions",
    tags=["Workflow Executions"],
)

# Transactions
api_v1_router.include_router(
    transactions.router,
    prefix="/transactions",
    tags=["Transactions"],
)
