"""
Generation Task Routes.

Start a background generation task, poll it, cancel it, list its questions.
"""
import uuid

from fastapi import APIRouter, HTTPException, Query, Request, status

from app import crud
from app.api.deps import ActorId, OrchestratorDep, SessionDep
from app.core.config import settings
from app.core.rate_limit import limiter
from app.models import (
    GenerationTaskCreate,
    GenerationTaskCreated,
    GenerationTaskPublic,
    GenerationTasksPublic,
    GenerationTaskStatus,
    QuestionPublic,
    QuestionsPublic,
    QuestionStatus,
)

router = APIRouter()


@router.post("/", response_model=GenerationTaskCreated, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.RATE_LIMIT_GENERATION)
async def create_task(
    request: Request,
    body: GenerationTaskCreate,
    orchestrator: OrchestratorDep,
    actor_id: ActorId,
) -> GenerationTaskCreated:
    """
    Start generating questions from a stored material.

    - Returns immediately with the task id; generation runs in the background
    - The provider and model active now are used for the whole task
    - Poll `/tasks/{task_id}/status` for progress
    """
    if body.question_count > settings.GENERATION_MAX_QUESTIONS:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"At most {settings.GENERATION_MAX_QUESTIONS} questions per task",
        )

    task = await orchestrator.create_task(
        material_id=body.material_id,
        question_count=body.question_count,
        question_types=body.question_types,
        difficulty=body.difficulty,
        knowledge_points=body.knowledge_points,
        creator_id=actor_id,
    )
    return GenerationTaskCreated(task_id=task.id, status=task.status)


@router.get("/", response_model=GenerationTasksPublic)
async def list_tasks(
    session: SessionDep,
    actor_id: ActorId,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=20, ge=1, le=100),
) -> GenerationTasksPublic:
    """List tasks, newest first. Scoped to the caller when X-Actor-Id is set."""
    tasks, total = crud.get_tasks_by_creator(
        session=session, creator_id=actor_id, skip=skip, limit=limit
    )
    return GenerationTasksPublic(
        data=[GenerationTaskPublic.model_validate(t) for t in tasks],
        count=total,
    )


@router.get("/{task_id}/status", response_model=GenerationTaskStatus)
async def get_task_status(task_id: uuid.UUID, orchestrator: OrchestratorDep) -> GenerationTaskStatus:
    """Progress and, once finished, the result summary of a task."""
    task = await orchestrator.get_task_status(task_id)
    return GenerationTaskStatus.model_validate(task)


@router.post("/{task_id}/cancel", response_model=GenerationTaskStatus)
async def cancel_task(task_id: uuid.UUID, orchestrator: OrchestratorDep) -> GenerationTaskStatus:
    """
    Cancel a pending or running task.

    Questions already accepted are kept. A running task stops before its next
    provider call, so the returned status may still be `processing`.
    """
    task = await orchestrator.cancel_task(task_id)
    return GenerationTaskStatus.model_validate(task)


@router.get("/{task_id}/questions", response_model=QuestionsPublic)
async def list_task_questions(
    task_id: uuid.UUID,
    session: SessionDep,
    status_filter: QuestionStatus | None = Query(default=None, alias="status"),
) -> QuestionsPublic:
    """Questions accepted for a task, in acceptance order."""
    if crud.get_generation_task(session=session, task_id=task_id) is None:
        raise HTTPException(status_code=404, detail="Task not found")

    questions = crud.get_questions_by_task(session=session, task_id=task_id, status=status_filter)
    return QuestionsPublic(
        data=[QuestionPublic.model_validate(q) for q in questions],
        count=len(questions),
    )
