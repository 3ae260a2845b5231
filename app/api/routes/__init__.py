"""
API Routes Package.

Contains all route modules for the Exam Forge API.
"""
from app.api.routes.materials import router as materials_router
from app.api.routes.providers import router as providers_router
from app.api.routes.review import router as review_router
from app.api.routes.tasks import router as tasks_router

__all__ = [
    "materials_router",
    "providers_router",
    "review_router",
    "tasks_router",
]
