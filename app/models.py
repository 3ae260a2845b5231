"""
Database models and Pydantic schemas for Exam Forge.

Uses SQLModel for unified ORM and validation.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlmodel import JSON, Column, Field, Relationship, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================


class QuestionType(str, Enum):
    SINGLE_CHOICE = "single_choice"
    MULTI_CHOICE = "multi_choice"
    TRUE_FALSE = "true_false"


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class QuestionStatus(str, Enum):
    AI_REVIEWING = "ai_reviewing"
    AI_APPROVED = "ai_approved"
    AI_REJECTED = "ai_rejected"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ReviewDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


# =============================================================================
# Material Models
# =============================================================================


class MaterialBase(SQLModel):
    title: str = Field(max_length=255)
    content: str = Field(description="Extracted plain text of the material")


class Material(MaterialBase, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow)

    tasks: list["GenerationTask"] = Relationship(back_populates="material")


class MaterialCreate(MaterialBase):
    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "title": "Compensation management, chapter 3",
                    "content": "Broadband pay structures collapse many narrow salary grades into a few wide bands...",
                }
            ]
        }
    }


class MaterialPublic(MaterialBase):
    id: uuid.UUID
    created_at: datetime


# =============================================================================
# Generation Task Models
# =============================================================================


class GenerationTaskBase(SQLModel):
    """Parameters of a "generate N questions" request."""

    material_id: uuid.UUID = Field(foreign_key="material.id", ondelete="CASCADE")
    requested_count: int = Field(ge=1, description="Number of questions requested")
    question_types: list[QuestionType] = Field(
        sa_column=Column(JSON), description="Question types, assigned to slots round-robin"
    )
    difficulty: Difficulty = Field(default=Difficulty.MEDIUM)
    knowledge_points: list[str] = Field(
        default_factory=list, sa_column=Column(JSON), description="Knowledge points, assigned round-robin"
    )


class GenerationTask(GenerationTaskBase, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    status: TaskStatus = Field(default=TaskStatus.PENDING, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    # Progress
    accepted_count: int = Field(default=0)
    progress: int = Field(default=0, description="Accepted / requested, in percent")
    attempts_used: int = Field(default=0)

    # Result summary
    generated_count: int | None = None
    success_rate: float | None = Field(default=None, description="Accepted / requested, in percent")
    slot_retries: dict[str, int] = Field(default_factory=dict, sa_column=Column(JSON))
    shortfall_slots: list[int] = Field(default_factory=list, sa_column=Column(JSON))
    error: str | None = None
    is_simulated: bool = False

    # Provider snapshot taken at creation
    provider_key: str | None = None
    model_key: str | None = None

    creator_id: uuid.UUID | None = Field(default=None, index=True)

    material: Optional[Material] = Relationship(back_populates="tasks")
    questions: list["Question"] = Relationship(back_populates="task")


class GenerationTaskCreate(SQLModel):
    """Request to start a generation task."""

    material_id: uuid.UUID
    question_count: int = Field(ge=1, le=50, description="Number of questions to generate")
    question_types: list[QuestionType] = Field(min_length=1)
    difficulty: Difficulty = Difficulty.MEDIUM
    knowledge_points: list[str] = Field(default_factory=list)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "material_id": "a1b2c3d4-e5f6-7890-abcd-ef1234567890",
                    "question_count": 5,
                    "question_types": ["single_choice", "true_false"],
                    "difficulty": "medium",
                    "knowledge_points": ["Broadband pay structures"],
                }
            ]
        }
    }


class GenerationTaskCreated(SQLModel):
    task_id: uuid.UUID
    status: TaskStatus


class GenerationTaskStatus(SQLModel):
    """What ``getTaskStatus`` reports to callers."""

    id: uuid.UUID
    status: TaskStatus
    progress: int
    requested_count: int
    accepted_count: int
    generated_count: int | None = None
    success_rate: float | None = None
    slot_retries: dict[str, int] = {}
    shortfall_slots: list[int] = []
    error: str | None = None
    is_simulated: bool = False
    provider_key: str | None = None
    model_key: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


class GenerationTaskPublic(GenerationTaskBase):
    id: uuid.UUID
    status: TaskStatus
    progress: int
    accepted_count: int
    creator_id: uuid.UUID | None = None
    created_at: datetime


class GenerationTasksPublic(SQLModel):
    data: list[GenerationTaskPublic]
    count: int


# =============================================================================
# Question Models
# =============================================================================


class QuestionBase(SQLModel):
    question_type: QuestionType
    difficulty: Difficulty = Difficulty.MEDIUM
    stem: str = Field(description="The question stem")
    options: dict[str, str] = Field(
        sa_column=Column(JSON), description="Ordered label -> option text"
    )
    correct_answer: str = Field(description="One label, or concatenated labels for multi-choice")

    # Three-part analysis
    source_excerpt: str = Field(default="", description="Passage of the material the question rests on")
    reasoning: str = Field(default="", description="Why the answer is right and the distractors wrong")
    conclusion: str = Field(default="", description="Closing statement naming the answer")

    quality_score: float = Field(default=0.0, ge=0, le=100)
    knowledge_point: str | None = None


class Question(QuestionBase, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    status: QuestionStatus = Field(default=QuestionStatus.AI_REVIEWING, index=True)
    slot: int | None = None

    # Generation metadata
    repair_actions: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    requires_human_review: bool = False
    is_simulated: bool = False
    resubmitted_from_id: uuid.UUID | None = Field(default=None, foreign_key="question.id")

    # Review metadata
    review_issues: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    review_warnings: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    review_suggestions: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    reviewer_comment: str | None = None
    reviewer_id: uuid.UUID | None = None
    reviewed_at: datetime | None = None

    task_id: uuid.UUID = Field(foreign_key="generationtask.id", ondelete="CASCADE", index=True)
    task: Optional[GenerationTask] = Relationship(back_populates="questions")


class QuestionPublic(QuestionBase):
    id: uuid.UUID
    task_id: uuid.UUID
    status: QuestionStatus
    requires_human_review: bool = False
    is_simulated: bool = False
    repair_actions: list[dict[str, Any]] = []
    review_issues: list[dict[str, Any]] = []
    review_warnings: list[dict[str, Any]] = []
    review_suggestions: list[str] = []
    reviewer_comment: str | None = None
    resubmitted_from_id: uuid.UUID | None = None
    created_at: datetime

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "id": "b2c3d4e5-f6a7-8901-bcde-f12345678901",
                    "task_id": "a1b2c3d4-e5f6-7890-abcd-ef1234567890",
                    "question_type": "single_choice",
                    "difficulty": "medium",
                    "stem": "Which statement about broadband pay structures is correct.",
                    "options": {
                        "A": "They add more salary grades",
                        "B": "They merge narrow grades into wide bands",
                        "C": "They remove pay ranges entirely",
                        "D": "They apply only to executives",
                    },
                    "correct_answer": "B",
                    "source_excerpt": "Broadband pay structures collapse many narrow salary grades into a few wide bands.",
                    "reasoning": "B is correct because the material defines broadbanding as merging grades. A, C and D are wrong.",
                    "conclusion": "The answer is B.",
                    "quality_score": 88,
                    "status": "pending",
                    "requires_human_review": False,
                    "is_simulated": False,
                    "created_at": "2024-01-15T10:30:00Z",
                }
            ]
        }
    }


class QuestionsPublic(SQLModel):
    """Paginated list of questions."""

    data: list[QuestionPublic]
    count: int


# =============================================================================
# Review Models
# =============================================================================


class ReviewDecisionRequest(SQLModel):
    decision: ReviewDecision
    comment: str | None = Field(default=None, max_length=2000)


class ReviewStats(SQLModel):
    ai_reviewing: int = 0
    ai_approved: int = 0
    ai_rejected: int = 0
    pending: int = 0
    approved: int = 0
    rejected: int = 0
    total: int = 0


class Message(SQLModel):
    message: str
