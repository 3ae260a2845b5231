"""
Review Routes.

Human review queue, approve/reject decisions, automated screening and
resubmission of screened-out questions.
"""
import uuid

from fastapi import APIRouter, Query, Request

from app.api.deps import ActorId, ReviewServiceDep
from app.core.config import settings
from app.core.rate_limit import limiter
from app.models import (
    Difficulty,
    QuestionPublic,
    QuestionsPublic,
    QuestionType,
    ReviewDecisionRequest,
    ReviewStats,
)

router = APIRouter()


@router.get("/queue", response_model=QuestionsPublic)
async def get_review_queue(
    review: ReviewServiceDep,
    actor_id: ActorId,
    question_type: QuestionType | None = Query(default=None),
    difficulty: Difficulty | None = Query(default=None),
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=20, ge=1, le=100),
) -> QuestionsPublic:
    """
    Questions awaiting a human decision.

    Only `pending` questions are listed; anything still in or rejected by
    automated screening never appears here.
    """
    questions, total = review.get_queue(
        creator_id=actor_id,
        question_type=question_type,
        difficulty=difficulty,
        skip=skip,
        limit=limit,
    )
    return QuestionsPublic(data=[QuestionPublic.model_validate(q) for q in questions], count=total)


@router.get("/stats", response_model=ReviewStats)
async def get_review_stats(review: ReviewServiceDep, actor_id: ActorId) -> ReviewStats:
    """Question counts by review status."""
    return review.stats(creator_id=actor_id)


@router.post("/{question_id}/decision", response_model=QuestionPublic)
@limiter.limit(settings.RATE_LIMIT_REVIEW)
async def review_question(
    request: Request,
    question_id: uuid.UUID,
    body: ReviewDecisionRequest,
    review: ReviewServiceDep,
    actor_id: ActorId,
) -> QuestionPublic:
    """Approve or reject a `pending` question. Both outcomes are final."""
    question = review.review_question(
        question_id, body.decision, comment=body.comment, reviewer_id=actor_id
    )
    return QuestionPublic.model_validate(question)


@router.post("/{question_id}/screen", response_model=QuestionPublic)
@limiter.limit(settings.RATE_LIMIT_REVIEW)
async def screen_question(
    request: Request, question_id: uuid.UUID, review: ReviewServiceDep
) -> QuestionPublic:
    """Run automated screening on one `ai_reviewing` question."""
    return QuestionPublic.model_validate(review.screen_question(question_id))


@router.post("/tasks/{task_id}/screen", response_model=QuestionsPublic)
@limiter.limit(settings.RATE_LIMIT_REVIEW)
async def screen_task(request: Request, task_id: uuid.UUID, review: ReviewServiceDep) -> QuestionsPublic:
    """Run automated screening on every `ai_reviewing` question of a task."""
    questions = review.screen_task(task_id)
    return QuestionsPublic(data=[QuestionPublic.model_validate(q) for q in questions], count=len(questions))


@router.post("/{question_id}/resubmit", response_model=QuestionPublic, status_code=201)
@limiter.limit(settings.RATE_LIMIT_REVIEW)
async def resubmit_question(
    request: Request, question_id: uuid.UUID, review: ReviewServiceDep
) -> QuestionPublic:
    """Copy an `ai_rejected` question into a new one awaiting screening."""
    return QuestionPublic.model_validate(review.resubmit(question_id))
