"""
Question Generation Service - Prompting for one question slot at a time.

1. Material excerpting: long material is reduced to its most relevant sentences
2. Slot planning: question types and knowledge points assigned round-robin
3. Prompt building and a single provider attempt, validated on return
"""
import logging
import re
from dataclasses import dataclass

from app.models import Difficulty, QuestionType
from app.services.llm_client import PromptSpec, ProviderClient
from app.services.response_validator import ValidationResult, validate_response

logger = logging.getLogger(__name__)


# =============================================================================
# System Prompts
# =============================================================================

GENERATION_SYSTEM_PROMPT = """You are an expert exam author writing assessment questions from training material.

Follow these rules strictly:

1. **Grounding**:
   - Every question must be answerable from the supplied material alone
   - Quote the supporting passage in the analysis

2. **Stem**:
   - One clear, self-contained statement or question
   - No hedging words (maybe, possibly, to some extent) and no double negatives

3. **Options**:
   - Use exactly the option count required for the question type
   - Options are short, parallel in form, and do not end with a full stop
   - Distractors are plausible but clearly wrong according to the material

4. **Analysis** has three parts:
   - source_excerpt: the passage of the material the question rests on
   - reasoning: why the correct option is right and each distractor is wrong
   - conclusion: a closing sentence naming the answer, e.g. "The answer is B."

5. **quality_score**: your own rating of the question from 0 to 100.

Respond with a single JSON object and nothing else."""

RESPONSE_FORMAT = """{
  "stem": "...",
  "options": {"A": "...", "B": "...", "C": "...", "D": "..."},
  "correct_answer": "B",
  "analysis": {
    "source_excerpt": "...",
    "reasoning": "...",
    "conclusion": "The answer is B."
  },
  "quality_score": 85
}"""

TYPE_INSTRUCTIONS = {
    QuestionType.SINGLE_CHOICE: (
        "Write a single-choice question with exactly 4 options labelled A, B, C and D. "
        "Exactly one option is correct; correct_answer is a single letter."
    ),
    QuestionType.MULTI_CHOICE: (
        "Write a multiple-choice question with exactly 4 options labelled A, B, C and D. "
        "Two to four options are correct; correct_answer concatenates their letters "
        "without separators, e.g. \"AC\"."
    ),
    QuestionType.TRUE_FALSE: (
        "Write a true/false statement with exactly 2 options: {\"A\": \"True\", \"B\": \"False\"}. "
        "correct_answer is \"A\" when the statement is true and \"B\" when it is false."
    ),
}

DIFFICULTY_INSTRUCTIONS = {
    Difficulty.EASY: "Easy: test recall of a fact stated directly in the material.",
    Difficulty.MEDIUM: "Medium: test understanding or application of a concept in the material.",
    Difficulty.HARD: "Hard: test analysis across several statements or a realistic workplace scenario.",
}

# Terms that mark definitional or procedural sentences worth keeping
KEY_TERMS = (
    "definition", "defined", "concept", "principle", "method", "step", "requirement",
    "standard", "process", "policy", "must", "should",
    "定义", "概念", "原则", "方法", "步骤", "要求", "标准", "规范", "流程", "制度", "政策",
)

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?。！？])\s*|\n+")
_MIN_SENTENCE_LENGTH = 10


# =============================================================================
# Material excerpting
# =============================================================================


def _score_sentence(sentence: str, knowledge_points: list[str]) -> int:
    lowered = sentence.lower()
    score = sum(lowered.count(term.lower()) for term in KEY_TERMS)
    score += sum(3 * lowered.count(point.lower()) for point in knowledge_points if point)
    return score


def select_excerpt(content: str, knowledge_points: list[str] | None = None, max_length: int = 2500) -> str:
    """
    Reduce material to at most ``max_length`` characters.

    Sentences are ranked by key-term and knowledge-point hits and kept in
    document order. When the selection is thin, leading material is prepended
    for context.
    """
    content = content.strip()
    if len(content) <= max_length:
        return content

    points = knowledge_points or []
    sentences = [
        s.strip() for s in _SENTENCE_SPLIT.split(content) if s and len(s.strip()) > _MIN_SENTENCE_LENGTH
    ]
    ranked = sorted(
        enumerate(sentences), key=lambda item: (-_score_sentence(item[1], points), item[0])
    )

    chosen: list[tuple[int, str]] = []
    used = 0
    for index, sentence in ranked:
        cost = len(sentence) + 1
        if used + cost > max_length:
            break
        chosen.append((index, sentence))
        used += cost

    excerpt = " ".join(sentence for _, sentence in sorted(chosen))
    if len(excerpt) < max_length * 0.8:
        lead_length = max_length - len(excerpt) - 2
        excerpt = f"{content[:lead_length]}\n\n{excerpt}" if excerpt else content[:max_length]
    return excerpt[:max_length]


# =============================================================================
# Slot planning
# =============================================================================


@dataclass(frozen=True)
class SlotPlan:
    """What one slot of a task should produce."""

    index: int
    question_type: QuestionType
    difficulty: Difficulty
    knowledge_point: str | None = None


def plan_slots(
    count: int,
    question_types: list[QuestionType],
    difficulty: Difficulty,
    knowledge_points: list[str] | None = None,
) -> list[SlotPlan]:
    if not question_types:
        raise ValueError("At least one question type is required")
    points = [p for p in (knowledge_points or []) if p]
    return [
        SlotPlan(
            index=i,
            question_type=QuestionType(question_types[i % len(question_types)]),
            difficulty=Difficulty(difficulty),
            knowledge_point=points[i % len(points)] if points else None,
        )
        for i in range(count)
    ]


# =============================================================================
# Question Generation Service
# =============================================================================


class QuestionGeneratorService:
    """Builds prompts for a task's slots and runs single generation attempts."""

    def __init__(
        self,
        client: ProviderClient,
        material_text: str,
        knowledge_points: list[str] | None = None,
        excerpt_length: int = 2500,
    ):
        self.client = client
        self.excerpt = select_excerpt(material_text, knowledge_points, excerpt_length)

    def build_prompt(self, slot: SlotPlan, attempt: int = 1) -> PromptSpec:
        """
        Build the prompt for one attempt at ``slot``.

        Args:
            slot: The slot being filled
            attempt: 1-based attempt number; retries ask for a different angle

        Returns:
            PromptSpec for the provider
        """
        focus = f"\nFocus on the knowledge point: {slot.knowledge_point}" if slot.knowledge_point else ""
        retry = (
            f"\nThis is attempt {attempt}. Previous output was rejected; follow the format exactly "
            "and choose a different passage if possible."
            if attempt > 1
            else ""
        )

        user_prompt = f"""Write one exam question from the material below.

{TYPE_INSTRUCTIONS[slot.question_type]}
{DIFFICULTY_INSTRUCTIONS[slot.difficulty]}{focus}{retry}

=== MATERIAL ===
{self.excerpt}
=== END MATERIAL ===

Return JSON in exactly this shape:
{RESPONSE_FORMAT}"""

        return PromptSpec(system_prompt=GENERATION_SYSTEM_PROMPT, user_prompt=user_prompt)

    async def generate(self, slot: SlotPlan, attempt: int = 1) -> ValidationResult:
        """One provider call for ``slot``. Provider errors propagate to the caller."""
        raw_text = await self.client.generate_completion(self.build_prompt(slot, attempt))
        return validate_response(raw_text, slot.question_type)


# Factory function
def get_question_generator(
    client: ProviderClient,
    material_text: str,
    knowledge_points: list[str] | None = None,
    excerpt_length: int = 2500,
) -> QuestionGeneratorService:
    """Get a question generator service instance."""
    return QuestionGeneratorService(
        client=client,
        material_text=material_text,
        knowledge_points=knowledge_points,
        excerpt_length=excerpt_length,
    )
