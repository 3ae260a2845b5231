"""
Response Validator - Force raw model text into the per-type question grammar.

Grammar:

    single_choice   4 options   one letter A-D
    multi_choice    4 options   2-4 distinct letters A-D, sorted
    true_false      2 options   A or B

Deviations with a known repair are fixed and recorded as ``RepairAction``s;
anything else is a ``QuestionValidationError``. Output that cannot be decoded
at all is a ``ParseError``. Validation of an already valid candidate returns
``Ok`` with no actions, so repairs are idempotent.
"""
import json
import logging
import re
import string
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from app.core.exceptions import ParseError, QuestionValidationError
from app.models import QuestionType
from app.schemas.questions import QuestionCandidate, RawQuestion

logger = logging.getLogger(__name__)

CHOICE_OPTION_COUNT = 4
TRUE_FALSE_OPTION_COUNT = 2
TRUE_FALSE_OPTIONS = {"A": "True", "B": "False"}
PLACEHOLDER_OPTIONS = {"C": "Option C", "D": "Option D"}
DEFAULT_QUALITY_SCORE = 80.0

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_ANSWER_SEPARATORS = re.compile(r"[\s,，、;；/|&+.。:：\-_()（）\[\]]")
_LABEL_CHARS = re.compile(r"[^A-Za-z]")

_NEGATIVE_CUES = re.compile(
    r"\b(false|incorrect|wrong|no|not|untrue)\b|不正确|不对|不是|错误|错|否|×|✗",
    re.IGNORECASE,
)
_AFFIRMATIVE_CUES = re.compile(
    r"\b(true|correct|yes|right)\b|正确|对|是|√|✓",
    re.IGNORECASE,
)


# =============================================================================
# Result types
# =============================================================================


@dataclass(frozen=True)
class RepairAction:
    kind: str
    before: Any
    after: Any

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "before": self.before, "after": self.after}


@dataclass
class Ok:
    candidate: QuestionCandidate


@dataclass
class Repaired:
    candidate: QuestionCandidate
    actions: list[RepairAction] = field(default_factory=list)


@dataclass
class Err:
    error: ParseError | QuestionValidationError


ValidationResult = Ok | Repaired | Err


# =============================================================================
# Cue detection
# =============================================================================


def is_negative(text: str) -> bool:
    return bool(_NEGATIVE_CUES.search(text or ""))


def is_affirmative(text: str) -> bool:
    """True when ``text`` carries an affirmative cue and no negative one."""
    if is_negative(text):
        return False
    return bool(_AFFIRMATIVE_CUES.search(text or ""))


# =============================================================================
# Decoding
# =============================================================================


def extract_json_object(raw_text: str) -> dict[str, Any]:
    """Pull the outermost JSON object out of model text."""
    if not raw_text or not raw_text.strip():
        raise ParseError("Empty model response")

    match = _JSON_OBJECT.search(raw_text)
    if match is None:
        raise ParseError("No JSON object found in model response")

    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise ParseError(f"Invalid JSON in model response: {exc.msg}") from exc

    # Some models wrap a single question in {"questions": [...]}
    if isinstance(payload.get("questions"), list) and payload["questions"]:
        first = payload["questions"][0]
        if isinstance(first, dict):
            payload = first
    return payload


def _decode(payload: dict[str, Any]) -> RawQuestion:
    try:
        return RawQuestion.model_validate(payload)
    except ValidationError as exc:
        missing = sorted(
            str(err["loc"][0]) for err in exc.errors() if err["type"] == "missing" and err["loc"]
        )
        if missing:
            raise ParseError(f"Missing required fields: {', '.join(missing)}") from exc
        raise ParseError(f"Malformed question object: {exc.error_count()} field error(s)") from exc


def _normalise_options(raw_options: list[Any] | dict[str, Any]) -> dict[str, str]:
    options: dict[str, str] = {}

    if isinstance(raw_options, list):
        if len(raw_options) > len(string.ascii_uppercase):
            raise QuestionValidationError(f"Too many options: {len(raw_options)}")
        for index, item in enumerate(raw_options):
            if isinstance(item, dict):
                text = item.get("text", item.get("content", ""))
            else:
                text = item
            options[string.ascii_uppercase[index]] = str(text if text is not None else "").strip()
    else:
        for key, text in raw_options.items():
            label = _LABEL_CHARS.sub("", str(key)).upper()
            if len(label) != 1:
                raise QuestionValidationError(f"Invalid option label: {key!r}")
            if label in options:
                raise QuestionValidationError(f"Duplicate option label: {label}")
            options[label] = str(text if text is not None else "").strip()
        options = dict(sorted(options.items()))

    expected = list(string.ascii_uppercase[: len(options)])
    if list(options) != expected:
        raise QuestionValidationError(
            f"Option labels must run from A without gaps, got {''.join(options)}"
        )
    empty = [label for label, text in options.items() if not text]
    if empty:
        raise QuestionValidationError(f"Empty option text for {', '.join(empty)}")
    return options


def _canonical_answer(raw_answer: str | list[str]) -> str:
    if isinstance(raw_answer, list):
        raw_answer = "".join(str(part) for part in raw_answer)
    return _ANSWER_SEPARATORS.sub("", raw_answer).upper()


def _raw_answer_text(raw_answer: str | list[str]) -> str:
    if isinstance(raw_answer, list):
        return " ".join(str(part) for part in raw_answer)
    return raw_answer


def _quality_score(raw_score: float | None) -> float:
    if raw_score is None:
        return DEFAULT_QUALITY_SCORE
    score = float(raw_score)
    if 0 < score <= 1:
        score *= 100
    return round(max(0.0, min(100.0, score)), 2)


# =============================================================================
# Per-type grammar
# =============================================================================


def _repair_true_false(
    options: dict[str, str], raw_answer: str | list[str], actions: list[RepairAction]
) -> tuple[dict[str, str], str]:
    original = options
    if len(options) != TRUE_FALSE_OPTION_COUNT:
        actions.append(RepairAction("option_count", dict(options), dict(TRUE_FALSE_OPTIONS)))
        options = dict(TRUE_FALSE_OPTIONS)
    elif not (is_affirmative(options["A"]) and is_negative(options["B"])):
        actions.append(RepairAction("option_text", dict(options), dict(TRUE_FALSE_OPTIONS)))
        options = dict(TRUE_FALSE_OPTIONS)

    answer = _canonical_answer(raw_answer)
    if options is not original and answer in original:
        # The answer follows the meaning of the option it pointed at
        chosen = original[answer]
        remapped = "A" if is_affirmative(chosen) else "B" if is_negative(chosen) else answer
        if remapped != answer:
            actions.append(RepairAction("answer_format", answer, remapped))
            answer = remapped
    if answer not in ("A", "B"):
        repaired = "A" if is_affirmative(_raw_answer_text(raw_answer)) else "B"
        actions.append(RepairAction("answer_format", _raw_answer_text(raw_answer), repaired))
        answer = repaired
    return options, answer


def _repair_choice(
    question_type: QuestionType,
    options: dict[str, str],
    raw_answer: str | list[str],
    actions: list[RepairAction],
) -> tuple[dict[str, str], str]:
    original_labels = set(options)

    if len(options) == TRUE_FALSE_OPTION_COUNT:
        padded = {**options, **PLACEHOLDER_OPTIONS}
        actions.append(RepairAction("option_count", dict(options), dict(padded)))
        options = padded
    elif len(options) != CHOICE_OPTION_COUNT:
        raise QuestionValidationError(
            f"{question_type.value} needs {CHOICE_OPTION_COUNT} options, got {len(options)}"
        )

    answer = _canonical_answer(raw_answer)
    if not answer:
        raise QuestionValidationError("Empty correct_answer")
    stray = sorted(set(answer) - original_labels)
    if stray:
        raise QuestionValidationError(
            f"Answer {answer!r} references unknown options: {''.join(stray)}"
        )

    if question_type == QuestionType.SINGLE_CHOICE:
        if len(answer) > 1:
            actions.append(RepairAction("answer_format", answer, answer[0]))
            answer = answer[0]
        return options, answer

    answer = "".join(sorted(set(answer)))
    if len(answer) == 1:
        extra = "B" if answer == "A" else "A"
        repaired = "".join(sorted(answer + extra))
        actions.append(RepairAction("answer_format", answer, repaired))
        answer = repaired
    return options, answer


# =============================================================================
# Entry points
# =============================================================================


def validate_candidate(payload: dict[str, Any], question_type: QuestionType) -> ValidationResult:
    """Validate an already decoded question object."""
    try:
        raw = _decode(payload)
        options = _normalise_options(raw.options)
        actions: list[RepairAction] = []
        if question_type == QuestionType.TRUE_FALSE:
            options, answer = _repair_true_false(options, raw.correct_answer, actions)
        else:
            options, answer = _repair_choice(question_type, options, raw.correct_answer, actions)
    except (ParseError, QuestionValidationError) as exc:
        return Err(exc)

    candidate = QuestionCandidate(
        question_type=question_type,
        stem=raw.stem,
        options=options,
        correct_answer=answer,
        source_excerpt=raw.analysis.source_excerpt,
        reasoning=raw.analysis.reasoning,
        conclusion=raw.analysis.conclusion,
        quality_score=_quality_score(raw.quality_score),
    )
    if actions:
        logger.debug(
            "Repaired %s candidate: %s",
            question_type.value,
            ", ".join(action.kind for action in actions),
        )
        return Repaired(candidate, actions)
    return Ok(candidate)


def validate_response(raw_text: str, question_type: QuestionType) -> ValidationResult:
    """Decode raw model text and validate it against ``question_type``."""
    try:
        payload = extract_json_object(raw_text)
    except ParseError as exc:
        return Err(exc)
    if not isinstance(payload, dict):
        return Err(ParseError("Model response is not a JSON object"))
    return validate_candidate(payload, question_type)
