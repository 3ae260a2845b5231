"""
Review Service - Two-stage review of generated questions.

Stage one is rule-based screening of ``ai_reviewing`` questions. Questions
that pass move straight on to ``pending``, the human queue. Stage two is a
human approve/reject decision on ``pending`` questions.

    ai_reviewing -> ai_approved -> pending -> approved | rejected
                 -> ai_rejected   (terminal; resubmit creates a new question)
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from app import crud
from app.core.config import settings
from app.core.exceptions import (
    InvalidTransitionError,
    PersistenceError,
    QuestionNotFoundError,
    TaskNotFoundError,
)
from app.models import (
    Question,
    QuestionStatus,
    QuestionType,
    ReviewDecision,
    ReviewStats,
    utcnow,
)

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[QuestionStatus, frozenset[QuestionStatus]] = {
    QuestionStatus.AI_REVIEWING: frozenset({QuestionStatus.AI_APPROVED, QuestionStatus.AI_REJECTED}),
    QuestionStatus.AI_APPROVED: frozenset({QuestionStatus.PENDING}),
    QuestionStatus.PENDING: frozenset({QuestionStatus.APPROVED, QuestionStatus.REJECTED}),
    QuestionStatus.AI_REJECTED: frozenset(),
    QuestionStatus.APPROVED: frozenset(),
    QuestionStatus.REJECTED: frozenset(),
}


def can_transition(current: QuestionStatus, target: QuestionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[QuestionStatus(current)]


def transition(question: Question, target: QuestionStatus) -> None:
    current = QuestionStatus(question.status)
    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value)
    logger.info("Question %s: %s -> %s", question.id, current.value, target.value)
    question.status = target


# =============================================================================
# Rule-based screening
# =============================================================================

HIGH = "high"
MEDIUM = "medium"
LOW = "low"

# Deduction per issue, by rule group and severity
DEDUCTIONS = {
    "stem": {HIGH: 15, MEDIUM: 8, LOW: 3},
    "options": {HIGH: 12, MEDIUM: 6, LOW: 2},
    "analysis": {HIGH: 10, MEDIUM: 5, LOW: 2},
}

STEM_MIN_LENGTH = 10
STEM_MAX_LENGTH = 300
OPTION_MIN_LENGTH = 1
OPTION_MAX_LENGTH = 120
EXCERPT_MIN_LENGTH = 20
ANALYSIS_MAX_LENGTH = 900

VAGUE_PHRASES = (
    "maybe", "possibly", "perhaps", "to some extent", "more or less", "basically", "probably",
    "可能", "一定程度上", "或许", "部分情况", "某种程度", "基本上", "大概", "似乎",
)
DOUBLE_NEGATIVES = (
    "not unlike", "not uncommon", "not unusual", "not impossible", "not incorrect",
    "not untrue", "cannot not", "never not",
    "不是不", "不能不", "不会不", "不应该不",
)

SUGGESTIONS = {
    "stem_format": "Check the stem: it must be a complete, self-contained statement of reasonable length.",
    "language": "Avoid hedging words and double negatives in the stem.",
    "option_structure": "Check the options: the count must match the question type and labels must be sequential.",
    "option_content": "Keep options short, parallel and distinct from one another, without trailing full stops.",
    "answer_format": "Check the correct answer: it must use option labels and match the question type.",
    "analysis_completeness": "Complete the analysis with a source excerpt, reasoning and a conclusion naming the answer.",
    "analysis_length": "Shorten the analysis and keep the source excerpt to the relevant passage.",
}


@dataclass
class ScreeningResult:
    score: float
    passed: bool
    issues: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[dict[str, Any]] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)


def _issue(group: str, category: str, message: str, severity: str) -> dict[str, Any]:
    return {"group": group, "category": category, "message": message, "severity": severity}


def _check_stem(question: Question) -> list[dict[str, Any]]:
    stem = (question.stem or "").strip()
    if not stem:
        return [_issue("stem", "stem_format", "Stem is empty", HIGH)]

    found = []
    if len(stem) < STEM_MIN_LENGTH:
        found.append(_issue("stem", "stem_format", f"Stem is shorter than {STEM_MIN_LENGTH} characters", MEDIUM))
    if len(stem) > STEM_MAX_LENGTH:
        found.append(_issue("stem", "stem_format", f"Stem is longer than {STEM_MAX_LENGTH} characters", MEDIUM))

    lowered = stem.lower()
    for phrase in VAGUE_PHRASES:
        if phrase in lowered:
            found.append(_issue("stem", "language", f"Stem uses vague wording: '{phrase}'", MEDIUM))
    if any(phrase in lowered for phrase in DOUBLE_NEGATIVES):
        found.append(_issue("stem", "language", "Stem contains a double negative", MEDIUM))
    return found


def _check_options(question: Question) -> list[dict[str, Any]]:
    options = question.options or {}
    if not options:
        return [_issue("options", "option_structure", "Question has no options", HIGH)]

    found = []
    expected = 2 if question.question_type == QuestionType.TRUE_FALSE else 4
    if len(options) != expected:
        found.append(
            _issue(
                "options",
                "option_structure",
                f"{QuestionType(question.question_type).value} needs {expected} options, has {len(options)}",
                HIGH,
            )
        )

    texts = {label: (text or "").strip() for label, text in options.items()}
    for label, text in texts.items():
        if len(text) < OPTION_MIN_LENGTH:
            found.append(_issue("options", "option_content", f"Option {label} is empty", LOW))
        if len(text) > OPTION_MAX_LENGTH:
            found.append(_issue("options", "option_content", f"Option {label} is too long", MEDIUM))
        if text.endswith((".", "。")):
            found.append(_issue("options", "option_content", f"Option {label} ends with a full stop", LOW))

    labels = list(texts)
    for i, first in enumerate(labels):
        for second in labels[i + 1:]:
            a, b = texts[first].lower(), texts[second].lower()
            if a and b and (a in b or b in a):
                found.append(
                    _issue("options", "option_content", f"Options {first} and {second} overlap", MEDIUM)
                )

    answer = (question.correct_answer or "").strip()
    if not answer:
        found.append(_issue("options", "answer_format", "Correct answer is missing", HIGH))
        return found
    unknown = sorted(set(answer) - set(labels))
    if unknown:
        found.append(
            _issue("options", "answer_format", f"Answer uses unknown labels: {''.join(unknown)}", HIGH)
        )
    if question.question_type in (QuestionType.SINGLE_CHOICE, QuestionType.TRUE_FALSE) and len(answer) > 1:
        found.append(_issue("options", "answer_format", "Answer must be a single label", HIGH))
    if question.question_type == QuestionType.MULTI_CHOICE and len(answer) < 2:
        found.append(_issue("options", "answer_format", "Multi-choice answer needs at least two labels", HIGH))
    return found


def _conclusion_names_answer(question: Question) -> bool:
    conclusion = question.conclusion or ""
    answer = question.correct_answer or ""
    if answer and answer in conclusion:
        return True
    option_text = (question.options or {}).get(answer, "")
    return bool(option_text) and option_text.lower() in conclusion.lower()


def _check_analysis(question: Question) -> list[dict[str, Any]]:
    found = []
    parts = {
        "source_excerpt": question.source_excerpt,
        "reasoning": question.reasoning,
        "conclusion": question.conclusion,
    }
    for name, text in parts.items():
        if not (text or "").strip():
            found.append(_issue("analysis", "analysis_completeness", f"Analysis is missing {name}", HIGH))

    excerpt = (question.source_excerpt or "").strip()
    if excerpt and len(excerpt) < EXCERPT_MIN_LENGTH:
        found.append(_issue("analysis", "analysis_completeness", "Source excerpt is too short", MEDIUM))
    if (question.conclusion or "").strip() and not _conclusion_names_answer(question):
        found.append(
            _issue("analysis", "analysis_completeness", "Conclusion does not name the correct answer", HIGH)
        )

    total = sum(len(text or "") for text in parts.values())
    if total > ANALYSIS_MAX_LENGTH:
        found.append(
            _issue("analysis", "analysis_length", f"Analysis is longer than {ANALYSIS_MAX_LENGTH} characters", MEDIUM)
        )
    return found


def screen(question: Question, pass_score: float | None = None) -> ScreeningResult:
    """Score a question from 100 down by severity-weighted deductions."""
    threshold = settings.REVIEW_PASS_SCORE if pass_score is None else pass_score
    found = _check_stem(question) + _check_options(question) + _check_analysis(question)

    score = 100.0
    for item in found:
        score -= DEDUCTIONS[item["group"]][item["severity"]]
    score = max(0.0, min(100.0, score))

    issues = [item for item in found if item["severity"] == HIGH]
    warnings = [item for item in found if item["severity"] != HIGH]
    suggestions = []
    for category in dict.fromkeys(item["category"] for item in found):
        suggestions.append(SUGGESTIONS[category])

    passed = not issues and (score >= threshold or question.requires_human_review)
    return ScreeningResult(
        score=score, passed=passed, issues=issues, warnings=warnings, suggestions=suggestions
    )


# =============================================================================
# Review Service
# =============================================================================


class ReviewService:
    """Applies screening results and human decisions to stored questions."""

    def __init__(self, session: Session, pass_score: float | None = None):
        self.session = session
        self.pass_score = settings.REVIEW_PASS_SCORE if pass_score is None else pass_score

    def _get(self, question_id: uuid.UUID) -> Question:
        question = crud.get_question(session=self.session, question_id=question_id)
        if question is None:
            raise QuestionNotFoundError(f"Question {question_id} not found")
        return question

    def _save(self, question: Question) -> Question:
        try:
            return crud.save_question(session=self.session, question=question)
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceError(f"Failed to save question {question.id}: {exc}") from exc

    def _apply_screening(self, question: Question) -> Question:
        if QuestionStatus(question.status) != QuestionStatus.AI_REVIEWING:
            raise InvalidTransitionError(
                QuestionStatus(question.status).value, QuestionStatus.AI_APPROVED.value
            )

        result = screen(question, self.pass_score)
        question.review_issues = result.issues
        question.review_warnings = result.warnings
        question.review_suggestions = result.suggestions
        question.reviewed_at = utcnow()

        if result.passed:
            transition(question, QuestionStatus.AI_APPROVED)
            transition(question, QuestionStatus.PENDING)
        else:
            transition(question, QuestionStatus.AI_REJECTED)
        logger.info(
            "Screened question %s: score=%.1f blocking=%d warnings=%d",
            question.id,
            result.score,
            len(result.issues),
            len(result.warnings),
        )
        return question

    def screen_question(self, question_id: uuid.UUID) -> Question:
        return self._save(self._apply_screening(self._get(question_id)))

    def screen_task(self, task_id: uuid.UUID) -> list[Question]:
        """Screen every question of a task still in ``ai_reviewing``."""
        if crud.get_generation_task(session=self.session, task_id=task_id) is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        questions = crud.get_questions_by_task(
            session=self.session, task_id=task_id, status=QuestionStatus.AI_REVIEWING
        )
        return [self._save(self._apply_screening(q)) for q in questions]

    def review_question(
        self,
        question_id: uuid.UUID,
        decision: ReviewDecision,
        comment: str | None = None,
        reviewer_id: uuid.UUID | None = None,
    ) -> Question:
        """Human decision on a ``pending`` question."""
        question = self._get(question_id)
        target = (
            QuestionStatus.APPROVED if ReviewDecision(decision) == ReviewDecision.APPROVE else QuestionStatus.REJECTED
        )
        transition(question, target)
        question.reviewer_comment = comment
        question.reviewer_id = reviewer_id
        question.reviewed_at = utcnow()
        return self._save(question)

    def resubmit(self, question_id: uuid.UUID) -> Question:
        """Copy an ``ai_rejected`` question into a new one awaiting screening."""
        original = self._get(question_id)
        if QuestionStatus(original.status) != QuestionStatus.AI_REJECTED:
            raise InvalidTransitionError(
                QuestionStatus(original.status).value, QuestionStatus.AI_REVIEWING.value
            )

        copy = Question(
            task_id=original.task_id,
            question_type=original.question_type,
            difficulty=original.difficulty,
            stem=original.stem,
            options=dict(original.options),
            correct_answer=original.correct_answer,
            source_excerpt=original.source_excerpt,
            reasoning=original.reasoning,
            conclusion=original.conclusion,
            quality_score=original.quality_score,
            knowledge_point=original.knowledge_point,
            slot=original.slot,
            repair_actions=list(original.repair_actions),
            requires_human_review=original.requires_human_review,
            is_simulated=original.is_simulated,
            resubmitted_from_id=original.id,
        )
        try:
            created = crud.create_question(session=self.session, question=copy)
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceError(f"Failed to resubmit question {question_id}: {exc}") from exc
        logger.info("Question %s resubmitted as %s", original.id, created.id)
        return created

    def get_queue(
        self,
        creator_id: uuid.UUID | None = None,
        question_type: QuestionType | None = None,
        difficulty: str | None = None,
        skip: int = 0,
        limit: int = 20,
    ) -> tuple[list[Question], int]:
        return crud.get_review_queue(
            session=self.session,
            creator_id=creator_id,
            question_type=question_type,
            difficulty=difficulty,
            skip=skip,
            limit=limit,
        )

    def stats(self, creator_id: uuid.UUID | None = None) -> ReviewStats:
        counts = crud.count_questions_by_status(session=self.session, creator_id=creator_id)
        return ReviewStats(**counts, total=sum(counts.values()))
