"""
CRUD operations for Exam Forge.
"""
import uuid
from typing import Any

from sqlmodel import Session, func, select

from app.models import (
    Difficulty,
    GenerationTask,
    Material,
    MaterialCreate,
    Question,
    QuestionStatus,
    TaskStatus,
    utcnow,
)


# =============================================================================
# Material CRUD
# =============================================================================


def create_material(*, session: Session, material_in: MaterialCreate) -> Material:
    db_obj = Material.model_validate(material_in)
    session.add(db_obj)
    session.commit()
    session.refresh(db_obj)
    return db_obj


def get_material(*, session: Session, material_id: uuid.UUID) -> Material | None:
    return session.get(Material, material_id)


def get_material_text(*, session: Session, material_id: uuid.UUID) -> str | None:
    material = session.get(Material, material_id)
    return material.content if material else None


# =============================================================================
# Generation Task CRUD
# =============================================================================


def create_generation_task(
    *,
    session: Session,
    material_id: uuid.UUID,
    requested_count: int,
    question_types: list[str],
    difficulty: str,
    knowledge_points: list[str],
    creator_id: uuid.UUID | None = None,
    provider_key: str | None = None,
    model_key: str | None = None,
) -> GenerationTask:
    db_obj = GenerationTask(
        material_id=material_id,
        requested_count=requested_count,
        question_types=[str(t.value if hasattr(t, "value") else t) for t in question_types],
        difficulty=Difficulty(difficulty),
        knowledge_points=list(knowledge_points),
        creator_id=creator_id,
        provider_key=provider_key,
        model_key=model_key,
    )
    session.add(db_obj)
    session.commit()
    session.refresh(db_obj)
    return db_obj


def get_generation_task(*, session: Session, task_id: uuid.UUID) -> GenerationTask | None:
    return session.get(GenerationTask, task_id)


def get_tasks_by_creator(
    *, session: Session, creator_id: uuid.UUID | None, skip: int = 0, limit: int = 100
) -> tuple[list[GenerationTask], int]:
    query = select(GenerationTask)
    if creator_id:
        query = query.where(GenerationTask.creator_id == creator_id)

    total = session.exec(select(func.count()).select_from(query.subquery())).one()
    statement = query.order_by(GenerationTask.created_at.desc()).offset(skip).limit(limit)
    return list(session.exec(statement).all()), total


def update_generation_task(
    *, session: Session, task_id: uuid.UUID, update_data: dict[str, Any]
) -> GenerationTask:
    db_task = session.get(GenerationTask, task_id)
    if db_task is None:
        raise LookupError(f"Generation task {task_id} not found")
    db_task.sqlmodel_update(update_data)
    session.add(db_task)
    session.commit()
    session.refresh(db_task)
    return db_task


def record_task_progress(
    *, session: Session, task_id: uuid.UUID, accepted_count: int, attempts_used: int
) -> GenerationTask:
    """Persist progress; the stored values never move backwards. Terminal tasks are left as they are."""
    db_task = session.get(GenerationTask, task_id)
    if db_task is None:
        raise LookupError(f"Generation task {task_id} not found")
    if TaskStatus(db_task.status).is_terminal:
        return db_task
    accepted = min(max(db_task.accepted_count, accepted_count), db_task.requested_count)
    db_task.accepted_count = accepted
    db_task.progress = max(db_task.progress, accepted * 100 // db_task.requested_count)
    db_task.attempts_used = max(db_task.attempts_used, attempts_used)
    session.add(db_task)
    session.commit()
    session.refresh(db_task)
    return db_task


def finish_generation_task(
    *,
    session: Session,
    task_id: uuid.UUID,
    status: TaskStatus,
    accepted_count: int,
    slot_retries: dict[int, int],
    shortfall_slots: list[int],
    attempts_used: int,
    error: str | None = None,
    is_simulated: bool = False,
) -> GenerationTask:
    """Record the terminal state. The first terminal status written wins."""
    db_task = session.get(GenerationTask, task_id)
    if db_task is None:
        raise LookupError(f"Generation task {task_id} not found")
    if TaskStatus(db_task.status).is_terminal:
        return db_task
    requested = db_task.requested_count
    accepted = min(max(db_task.accepted_count, accepted_count), requested)
    db_task.status = status
    db_task.accepted_count = accepted
    db_task.progress = max(db_task.progress, accepted * 100 // requested)
    db_task.generated_count = accepted
    db_task.success_rate = round(accepted / requested * 100, 2)
    db_task.slot_retries = {str(slot): count for slot, count in sorted(slot_retries.items())}
    db_task.shortfall_slots = sorted(shortfall_slots)
    db_task.attempts_used = attempts_used
    db_task.error = error
    db_task.is_simulated = is_simulated
    db_task.completed_at = utcnow()
    session.add(db_task)
    session.commit()
    session.refresh(db_task)
    return db_task


# =============================================================================
# Question CRUD
# =============================================================================


def create_question(*, session: Session, question: Question) -> Question:
    session.add(question)
    session.commit()
    session.refresh(question)
    return question


def create_questions_bulk(*, session: Session, questions: list[Question]) -> list[Question]:
    session.add_all(questions)
    session.commit()
    for obj in questions:
        session.refresh(obj)
    return questions


def get_question(*, session: Session, question_id: uuid.UUID) -> Question | None:
    return session.get(Question, question_id)


def get_questions_by_task(
    *, session: Session, task_id: uuid.UUID, status: QuestionStatus | None = None
) -> list[Question]:
    statement = select(Question).where(Question.task_id == task_id)
    if status:
        statement = statement.where(Question.status == status)
    statement = statement.order_by(Question.created_at)
    return list(session.exec(statement).all())


def get_review_queue(
    *,
    session: Session,
    creator_id: uuid.UUID | None = None,
    question_type: str | None = None,
    difficulty: str | None = None,
    skip: int = 0,
    limit: int = 20,
) -> tuple[list[Question], int]:
    """Questions awaiting a human decision. Only ``pending`` is ever returned."""
    query = select(Question).where(Question.status == QuestionStatus.PENDING)
    if creator_id:
        query = query.join(GenerationTask).where(GenerationTask.creator_id == creator_id)
    if question_type:
        query = query.where(Question.question_type == question_type)
    if difficulty:
        query = query.where(Question.difficulty == difficulty)

    total = session.exec(select(func.count()).select_from(query.subquery())).one()
    statement = query.order_by(Question.created_at.desc()).offset(skip).limit(limit)
    return list(session.exec(statement).all()), total


def count_questions_by_status(
    *, session: Session, creator_id: uuid.UUID | None = None
) -> dict[str, int]:
    statement = select(Question.status, func.count()).group_by(Question.status)
    if creator_id:
        statement = statement.join(GenerationTask).where(GenerationTask.creator_id == creator_id)
    counts = {status.value: 0 for status in QuestionStatus}
    for status, count in session.exec(statement).all():
        key = status.value if isinstance(status, QuestionStatus) else str(status)
        counts[key] = count
    return counts


def save_question(*, session: Session, question: Question) -> Question:
    question.updated_at = utcnow()
    session.add(question)
    session.commit()
    session.refresh(question)
    return question
