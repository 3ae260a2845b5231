"""
Schemas for AI question output.

``RawQuestion`` is the loose shape a model is asked to return; the validator
decodes model text into it before checking the per-type grammar.
``QuestionCandidate`` is the normalised result handed to the orchestrator.
"""
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, field_validator

from app.models import QuestionType


class RawAnalysis(BaseModel):
    """Three-part analysis, accepting the older field names."""

    source_excerpt: str = Field(
        default="",
        validation_alias=AliasChoices("source_excerpt", "textbook"),
        description="Passage of the material the question rests on",
    )
    reasoning: str = Field(
        default="",
        validation_alias=AliasChoices("reasoning", "explanation"),
        description="Why the answer is right and the distractors wrong",
    )
    conclusion: str = Field(default="", description="Closing statement naming the answer")

    @field_validator("source_excerpt", "reasoning", "conclusion", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value).strip()


class RawQuestion(BaseModel):
    """A single question object as emitted by the model."""

    stem: str = Field(min_length=1, description="The question stem")
    options: list[Any] | dict[str, Any] = Field(
        description="List of option texts, or a label -> text mapping"
    )
    correct_answer: str | list[str] = Field(description="Answer label(s)")
    analysis: RawAnalysis = Field(default_factory=RawAnalysis)
    quality_score: float | None = Field(default=None, description="0-1 or 0-100")

    @field_validator("stem", mode="before")
    @classmethod
    def _strip_stem(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("correct_answer", mode="before")
    @classmethod
    def _coerce_answer(cls, value: Any) -> Any:
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float)):
            return str(value)
        return value


class QuestionCandidate(BaseModel):
    """A question that satisfies its type's option and answer grammar."""

    question_type: QuestionType
    stem: str
    options: dict[str, str]
    correct_answer: str
    source_excerpt: str = ""
    reasoning: str = ""
    conclusion: str = ""
    quality_score: float = Field(default=80.0, ge=0, le=100)

    def to_payload(self) -> dict[str, Any]:
        """Render back into the shape the model is asked to emit."""
        return {
            "stem": self.stem,
            "options": dict(self.options),
            "correct_answer": self.correct_answer,
            "analysis": {
                "source_excerpt": self.source_excerpt,
                "reasoning": self.reasoning,
                "conclusion": self.conclusion,
            },
            "quality_score": self.quality_score,
        }
