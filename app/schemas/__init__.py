"""
Pydantic schemas for AI question output.
"""
from app.schemas.questions import QuestionCandidate, RawAnalysis, RawQuestion

__all__ = [
    "QuestionCandidate",
    "RawAnalysis",
    "RawQuestion",
]
