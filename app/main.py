"""
Exam Forge Backend - FastAPI Application Entry Point.

Turns training material into exam questions through external AI providers:
1. Generation Tasks: material -> N validated questions, in the background
2. Automated Screening: rule-based quality gate on every accepted question
3. Human Review: approve/reject queue for questions that passed screening
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlmodel import SQLModel

from app.api.main import api_router
from app.core.config import settings
from app.core.db import engine
from app.core.exceptions import (
    AppError,
    InvalidTaskRequestError,
    InvalidTransitionError,
    MaterialNotFoundError,
    MaterialTooShortError,
    PersistenceError,
    ProviderNotConfiguredError,
    ProviderNotFoundError,
    QuestionNotFoundError,
    TaskAlreadyFinishedError,
    TaskNotFoundError,
)
from app.core.middleware import SecurityHeadersMiddleware, TrustedHostMiddleware
from app.core.rate_limit import limiter
from app.services.task_orchestrator import get_orchestrator

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - runs on startup and shutdown."""
    # Startup: Create database tables
    SQLModel.metadata.create_all(engine)
    logger.info("%s started (%s)", settings.PROJECT_NAME, settings.ENVIRONMENT)
    yield
    # Shutdown: stop running generation tasks
    await get_orchestrator().shutdown()


app = FastAPI(
    title=settings.PROJECT_NAME,
    description="""
## Exam Forge Backend

AI-assisted exam question generation with a two-stage review.

### Core Workflows

1. **Generation Tasks** (`/api/v1/tasks`)
   - Generate single-choice, multi-choice and true/false questions from stored material
   - Runs in the background with per-question retries and progress reporting
   - Falls back to placeholder questions when no provider is configured

2. **Review** (`/api/v1/review`)
   - Automated screening scores every question and filters out weak ones
   - Human reviewers approve or reject what passes

3. **Providers** (`/api/v1/providers`)
   - OpenRouter, DMXAPI and Gemini through OpenAI-compatible endpoints
   - Switch the default provider/model for new tasks

### Identity

Authentication is handled upstream. Pass the caller id in `X-Actor-Id`.
    """,
    version="0.1.0",
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    docs_url=f"{settings.API_V1_STR}/docs",
    redoc_url=f"{settings.API_V1_STR}/redoc",
    lifespan=lifespan,
)

# =============================================================================
# Middleware Stack (order matters - last added runs first)
# =============================================================================

# 1. Security Headers and request logging
app.add_middleware(SecurityHeadersMiddleware)

# 2. Trusted Host validation
if settings.ALLOWED_HOSTS != ["*"]:
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.ALLOWED_HOSTS)

# 3. CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.all_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# =============================================================================
# Rate Limiting Setup
# =============================================================================

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# =============================================================================
# Error Handling
# =============================================================================

ERROR_STATUS_CODES: dict[type[AppError], int] = {
    MaterialNotFoundError: status.HTTP_404_NOT_FOUND,
    TaskNotFoundError: status.HTTP_404_NOT_FOUND,
    QuestionNotFoundError: status.HTTP_404_NOT_FOUND,
    ProviderNotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    TaskAlreadyFinishedError: status.HTTP_409_CONFLICT,
    ProviderNotConfiguredError: status.HTTP_400_BAD_REQUEST,
    MaterialTooShortError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidTaskRequestError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    PersistenceError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    status_code = next(
        (code for error_type, code in ERROR_STATUS_CODES.items() if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    if status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


app.add_exception_handler(AppError, app_error_handler)

# Include API router
app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/")
async def root():
    """Root endpoint - API info."""
    return {
        "name": settings.PROJECT_NAME,
        "version": "0.1.0",
        "docs": f"{settings.API_V1_STR}/docs",
        "workflows": {
            "tasks": f"{settings.API_V1_STR}/tasks",
            "review": f"{settings.API_V1_STR}/review",
            "providers": f"{settings.API_V1_STR}/providers",
        },
    }


@app.get("/health")
async def health_check():
    """Health check endpoint for deployment monitoring."""
    return {"status": "healthy"}
