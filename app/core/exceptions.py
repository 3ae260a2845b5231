"""
Error taxonomy for the generation and review pipeline.

Per-slot errors (provider, parse, validation) are retried by the orchestrator
and never reach API callers. The rest map onto HTTP status codes in
``app.main``.
"""
from enum import Enum


class AppError(Exception):
    """Base class for all application errors."""


# =============================================================================
# Provider errors
# =============================================================================


class ProviderErrorKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    NETWORK = "network"
    MALFORMED_RESPONSE = "malformed_response"


class ProviderError(AppError):
    """A chat-completion call failed. ``kind`` tells the caller why."""

    def __init__(self, kind: ProviderErrorKind, message: str, provider: str | None = None):
        super().__init__(message)
        self.kind = kind
        self.provider = provider

    def __str__(self) -> str:
        prefix = f"[{self.provider}] " if self.provider else ""
        return f"{prefix}{self.kind.value}: {self.args[0]}"


class ProviderNotFoundError(AppError):
    """Unknown provider key or model key."""


class ProviderNotConfiguredError(AppError):
    """The provider exists but has no credentials."""


# =============================================================================
# Candidate errors
# =============================================================================


class ParseError(AppError):
    """Model output could not be decoded into a question object."""


class QuestionValidationError(AppError):
    """Model output deviates from the question grammar with no repair rule."""


# =============================================================================
# Task and review errors
# =============================================================================


class PersistenceError(AppError):
    """A database write failed. Fatal to the running task."""


class TaskCancelledError(AppError):
    """Raised inside a task run once its cancellation flag is set."""


class InvalidTransitionError(AppError):
    """A question status change that the review state machine forbids."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move question from '{current}' to '{target}'")
        self.current = current
        self.target = target


class MaterialNotFoundError(AppError):
    pass


class MaterialTooShortError(AppError):
    pass


class InvalidTaskRequestError(AppError):
    """A generation request the orchestrator cannot run, such as zero questions."""


class TaskNotFoundError(AppError):
    pass


class TaskAlreadyFinishedError(AppError):
    pass


class QuestionNotFoundError(AppError):
    pass
