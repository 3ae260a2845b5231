"""
AI Services Package.

Contains the provider clients, response validator, question generator,
task orchestrator and review service.
"""
from app.services.llm_client import (
    ProviderClient,
    ProviderConfig,
    ProviderManager,
    get_provider_manager,
    register_provider,
)
from app.services.response_validator import Err, Ok, Repaired, validate_response
from app.services.review_service import ReviewService
from app.services.task_orchestrator import TaskOrchestrator, get_orchestrator

__all__ = [
    "ProviderClient",
    "ProviderConfig",
    "ProviderManager",
    "get_provider_manager",
    "register_provider",
    "Err",
    "Ok",
    "Repaired",
    "validate_response",
    "ReviewService",
    "TaskOrchestrator",
    "get_orchestrator",
]
