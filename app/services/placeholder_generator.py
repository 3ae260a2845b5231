"""
Placeholder questions used when the task's provider is unavailable.

Output is deterministic for a given slot and material, always satisfies the
question grammar, and is flagged ``is_simulated`` by the orchestrator.
"""
import re

from app.models import QuestionType
from app.schemas.questions import QuestionCandidate
from app.services.question_generator import SlotPlan

PLACEHOLDER_QUALITY_SCORE = 75.0

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?。！？])\s*|\n+")


def _source_sentences(material_text: str) -> list[str]:
    sentences = [s.strip() for s in _SENTENCE_SPLIT.split(material_text or "") if s and len(s.strip()) > 10]
    return sentences or [material_text.strip()[:200] or "The material"]


def _topic(slot: SlotPlan) -> str:
    return slot.knowledge_point or "the material"


def generate_placeholder(slot: SlotPlan, material_text: str) -> QuestionCandidate:
    sentences = _source_sentences(material_text)
    excerpt = sentences[slot.index % len(sentences)][:300]
    topic = _topic(slot)

    if slot.question_type == QuestionType.TRUE_FALSE:
        return QuestionCandidate(
            question_type=QuestionType.TRUE_FALSE,
            stem=f"The material makes the following statement about {topic}: {excerpt}",
            options={"A": "True", "B": "False"},
            correct_answer="A",
            source_excerpt=excerpt,
            reasoning="The statement is quoted from the material, so it is true.",
            conclusion="The answer is A.",
            quality_score=PLACEHOLDER_QUALITY_SCORE,
        )

    if slot.question_type == QuestionType.MULTI_CHOICE:
        return QuestionCandidate(
            question_type=QuestionType.MULTI_CHOICE,
            stem=f"Which of the following statements about {topic} are supported by the material",
            options={
                "A": excerpt[:60],
                "B": f"{topic.capitalize()} is described in the material",
                "C": f"{topic.capitalize()} is not mentioned anywhere",
                "D": "The material contradicts itself on this point",
            },
            correct_answer="AB",
            source_excerpt=excerpt,
            reasoning="A and B restate the material. C and D are contradicted by it.",
            conclusion="The answer is AB.",
            quality_score=PLACEHOLDER_QUALITY_SCORE,
        )

    return QuestionCandidate(
        question_type=QuestionType.SINGLE_CHOICE,
        stem=f"Which of the following statements about {topic} matches the material",
        options={
            "A": excerpt[:60],
            "B": f"{topic.capitalize()} is outside the scope of the material",
            "C": "The material gives no guidance on this topic",
            "D": "The material recommends the opposite approach",
        },
        correct_answer="A",
        source_excerpt=excerpt,
        reasoning="A restates the material. B, C and D are contradicted by it.",
        conclusion="The answer is A.",
        quality_score=PLACEHOLDER_QUALITY_SCORE,
    )


def generate_placeholders(slots: list[SlotPlan], material_text: str) -> list[QuestionCandidate]:
    return [generate_placeholder(slot, material_text) for slot in slots]
