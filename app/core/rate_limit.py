"""
Rate Limiting Configuration for Exam Forge.

Uses SlowAPI for request rate limiting with different tiers:
- Task creation: RATE_LIMIT_GENERATION (each task fans out to many LLM calls)
- Review actions: RATE_LIMIT_REVIEW
- General API: RATE_LIMIT_DEFAULT
"""
from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from app.core.config import settings


def get_identifier(request: Request) -> str:
    """
    Get rate limit identifier.

    Uses the actor id forwarded by the upstream auth layer if present,
    otherwise falls back to IP.
    """
    actor_id = request.headers.get("X-Actor-Id")
    if actor_id:
        return f"actor:{actor_id}"

    return get_remote_address(request)


limiter = Limiter(
    key_func=get_identifier,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
    strategy="fixed-window",
    enabled=settings.RATE_LIMIT_ENABLED,
)
