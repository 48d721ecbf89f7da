"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: Admin auth is applied at the include_router level using FastAPI's
dependencies parameter. Health and metrics stay open so load balancers
and Prometheus can reach them.
"""

from fastapi import APIRouter, Depends

from jobrelay.api.admin import router as admin_router
from jobrelay.api.dependencies import require_admin
from jobrelay.api.health import router as health_router
from jobrelay.api.metrics import router as metrics_router

api_router = APIRouter(prefix="/api/v1")

# Open routes — no auth required
api_router.include_router(health_router, tags=["health"])

# Operator routes — admin token when configured
api_router.include_router(
    admin_router, tags=["stats", "dead-letters", "publish"], dependencies=[Depends(require_admin)]
)

__all__ = ["api_router", "metrics_router"]
