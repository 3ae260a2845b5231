"""
Main API Router - Aggregates all route modules.
"""
from fastapi import APIRouter

from app.api.routes import (
    materials_router,
    providers_router,
    review_router,
    tasks_router,
)

api_router = APIRouter()

# Inputs
api_router.include_router(materials_router, prefix="/materials", tags=["Materials"])
api_router.include_router(providers_router, prefix="/providers", tags=["Providers"])

# Core Workflows
api_router.include_router(tasks_router, prefix="/tasks", tags=["Generation Tasks"])
api_router.include_router(review_router, prefix="/review", tags=["Review"])
