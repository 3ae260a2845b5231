"""
Shared route dependencies.
"""
import uuid
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status
from sqlmodel import Session

from app.core.db import get_session
from app.services.llm_client import ProviderManager, get_provider_manager
from app.services.review_service import ReviewService
from app.services.task_orchestrator import TaskOrchestrator, get_orchestrator


SessionDep = Annotated[Session, Depends(get_session)]


def get_actor_id(
    x_actor_id: Annotated[str | None, Header(description="Caller id set by the upstream auth layer")] = None,
) -> uuid.UUID | None:
    if not x_actor_id:
        return None
    try:
        return uuid.UUID(x_actor_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Actor-Id must be a UUID",
        ) from None


ActorId = Annotated[uuid.UUID | None, Depends(get_actor_id)]

OrchestratorDep = Annotated[TaskOrchestrator, Depends(get_orchestrator)]

ProviderManagerDep = Annotated[ProviderManager, Depends(get_provider_manager)]


def get_review_service(session: SessionDep) -> ReviewService:
    return ReviewService(session=session)


ReviewServiceDep = Annotated[ReviewService, Depends(get_review_service)]
