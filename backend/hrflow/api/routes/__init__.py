"""API Routes module"""
from fastapi import APIRouter

from .definitions import router as definitions_router
from .instances import router as instances_router
from .steps import router as steps_router
from .dashboard import router as dashboard_router

# Main API router
api_router = APIRouter()

api_router.include_router(definitions_router, prefix="/definitions", tags=["Definitions"])
api_router.include_router(instances_router, prefix="/instances", tags=["Instances"])
api_router.include_router(steps_router, prefix="/steps", tags=["Steps"])
api_router.include_router(dashboard_router, prefix="/dashboard", tags=["Dashboard"])

__all__ = ["api_router"]
