"""
LLM Client - Uniform interface over interchangeable chat-completion backends.

Backends are registered implementations of ``ProviderClient`` keyed by an
implementation name. Provider definitions (endpoint, credentials, models)
come from settings. Clients never retry; retry policy belongs to the
task orchestrator.
"""
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, replace

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel

from app.core.config import Settings, settings
from app.core.exceptions import (
    ProviderError,
    ProviderErrorKind,
    ProviderNotConfiguredError,
    ProviderNotFoundError,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration objects
# =============================================================================


@dataclass(frozen=True)
class ProviderDefinition:
    """A configured backend: where it lives and which models it serves."""

    key: str
    display_name: str
    base_url: str
    api_key: str
    models: tuple[str, ...]
    implementation: str = "openai_compatible"

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key.strip())


@dataclass(frozen=True)
class ProviderConfig:
    """Immutable snapshot of the provider/model a task runs against."""

    provider_key: str
    model: str
    base_url: str
    api_key: str
    implementation: str = "openai_compatible"
    temperature: float = 0.7
    max_tokens: int = 2000
    timeout_seconds: float = 120

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key.strip())


class Availability(BaseModel):
    available: bool
    reason: str


class PromptSpec(BaseModel):
    """One chat-completion request."""

    system_prompt: str
    user_prompt: str
    temperature: float | None = None
    max_tokens: int | None = None


# =============================================================================
# Client interface and registry
# =============================================================================


class ProviderClient(ABC):
    """A chat-completion backend bound to one ``ProviderConfig``."""

    def __init__(self, config: ProviderConfig):
        self.config = config

    def is_available(self) -> Availability:
        if not self.config.has_api_key:
            return Availability(
                available=False,
                reason=f"API key for provider '{self.config.provider_key}' is not configured",
            )
        return Availability(
            available=True,
            reason=f"{self.config.provider_key}/{self.config.model} is configured",
        )

    @abstractmethod
    async def generate_completion(self, prompt: PromptSpec) -> str:
        """Return the raw assistant text or raise ``ProviderError``."""


_PROVIDER_REGISTRY: dict[str, type[ProviderClient]] = {}


def register_provider(implementation: str) -> Callable[[type[ProviderClient]], type[ProviderClient]]:
    """Class decorator adding a ``ProviderClient`` implementation to the registry."""

    def decorator(cls: type[ProviderClient]) -> type[ProviderClient]:
        _PROVIDER_REGISTRY[implementation] = cls
        return cls

    return decorator


def registered_implementations() -> list[str]:
    return sorted(_PROVIDER_REGISTRY)


def create_provider_client(config: ProviderConfig) -> ProviderClient:
    try:
        cls = _PROVIDER_REGISTRY[config.implementation]
    except KeyError:
        raise ProviderNotFoundError(
            f"No client registered for implementation '{config.implementation}'"
        ) from None
    return cls(config)


@register_provider("openai_compatible")
class OpenAICompatibleClient(ProviderClient):
    """Any endpoint speaking the OpenAI chat-completions protocol."""

    def __init__(self, config: ProviderConfig):
        super().__init__(config)
        self._client: AsyncOpenAI | None = None

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.config.api_key,
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
                max_retries=0,
            )
        return self._client

    async def generate_completion(self, prompt: PromptSpec) -> str:
        if not self.config.has_api_key:
            raise ProviderError(
                ProviderErrorKind.UNAUTHORIZED,
                "API key is not configured",
                provider=self.config.provider_key,
            )

        try:
            response = await self.client.chat.completions.create(
                model=self.config.model,
                messages=[
                    {"role": "system", "content": prompt.system_prompt},
                    {"role": "user", "content": prompt.user_prompt},
                ],
                temperature=prompt.temperature if prompt.temperature is not None else self.config.temperature,
                max_tokens=prompt.max_tokens or self.config.max_tokens,
            )
        except openai.APIError as exc:
            raise self._translate_error(exc) from exc

        if not response.choices:
            raise ProviderError(
                ProviderErrorKind.MALFORMED_RESPONSE,
                "Response contained no choices",
                provider=self.config.provider_key,
            )
        content = response.choices[0].message.content
        if not content or not content.strip():
            raise ProviderError(
                ProviderErrorKind.MALFORMED_RESPONSE,
                "Response content was empty",
                provider=self.config.provider_key,
            )
        return content

    def _translate_error(self, exc: openai.APIError) -> ProviderError:
        # APITimeoutError subclasses APIConnectionError, check it first
        if isinstance(exc, openai.APITimeoutError):
            kind = ProviderErrorKind.TIMEOUT
        elif isinstance(exc, openai.APIConnectionError):
            kind = ProviderErrorKind.NETWORK
        elif isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
            kind = ProviderErrorKind.UNAUTHORIZED
        elif isinstance(exc, openai.RateLimitError):
            kind = ProviderErrorKind.RATE_LIMITED
        elif isinstance(exc, openai.APIResponseValidationError):
            kind = ProviderErrorKind.MALFORMED_RESPONSE
        else:
            kind = ProviderErrorKind.NETWORK
        return ProviderError(kind, str(exc), provider=self.config.provider_key)


# =============================================================================
# Provider manager
# =============================================================================


class ProviderManager:
    """
    Holds the configured providers and the default used by new tasks.

    Tasks never read the default directly; they take a ``snapshot()`` when
    they are created, so ``select_model`` only affects tasks created after it.
    """

    def __init__(
        self,
        definitions: list[ProviderDefinition],
        default_provider: str,
        default_model: str,
        temperature: float = 0.7,
        max_tokens: int = 2000,
        timeout_seconds: float = 120,
    ):
        self._definitions = {d.key: d for d in definitions}
        if default_provider not in self._definitions:
            raise ProviderNotFoundError(f"Unknown default provider '{default_provider}'")
        self._lock = threading.Lock()
        self._current_provider = default_provider
        self._current_model = default_model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, config: Settings) -> "ProviderManager":
        definitions = [
            ProviderDefinition(
                key="openrouter",
                display_name="OpenRouter",
                base_url=config.OPENROUTER_BASE_URL,
                api_key=config.OPENROUTER_API_KEY,
                models=tuple(config.OPENROUTER_MODELS),
            ),
            ProviderDefinition(
                key="dmxapi",
                display_name="DMXAPI",
                base_url=config.DMXAPI_BASE_URL,
                api_key=config.DMXAPI_API_KEY,
                models=tuple(config.DMXAPI_MODELS),
            ),
            ProviderDefinition(
                key="gemini",
                display_name="Google Gemini",
                base_url=config.GEMINI_BASE_URL,
                api_key=config.GOOGLE_API_KEY,
                models=tuple(config.GEMINI_MODELS),
            ),
        ]
        return cls(
            definitions,
            default_provider=config.DEFAULT_PROVIDER,
            default_model=config.DEFAULT_MODEL,
            temperature=config.DEFAULT_TEMPERATURE,
            max_tokens=config.DEFAULT_MAX_TOKENS,
            timeout_seconds=config.LLM_TIMEOUT_SECONDS,
        )

    def get_definition(self, provider_key: str) -> ProviderDefinition:
        try:
            return self._definitions[provider_key]
        except KeyError:
            raise ProviderNotFoundError(f"Unknown provider '{provider_key}'") from None

    def list_providers(self) -> list[dict]:
        return [
            {
                "key": d.key,
                "display_name": d.display_name,
                "models": list(d.models),
                "configured": d.has_api_key,
                "implementation": d.implementation,
            }
            for d in self._definitions.values()
        ]

    def select_model(self, provider_key: str, model_key: str | None = None) -> ProviderConfig:
        """Change the default provider/model for tasks created from now on."""
        definition = self.get_definition(provider_key)
        if not definition.has_api_key:
            raise ProviderNotConfiguredError(
                f"{definition.display_name} has no API key configured"
            )
        if model_key is None:
            if not definition.models:
                raise ProviderNotFoundError(f"{definition.display_name} lists no models")
            model_key = definition.models[0]
        elif model_key not in definition.models:
            raise ProviderNotFoundError(
                f"Provider '{provider_key}' does not serve model '{model_key}'"
            )

        with self._lock:
            self._current_provider = provider_key
            self._current_model = model_key
            config = self._snapshot_locked()
        logger.info("Default provider switched to %s/%s", provider_key, model_key)
        return config

    def snapshot(self) -> ProviderConfig:
        with self._lock:
            return self._snapshot_locked()

    def _snapshot_locked(self) -> ProviderConfig:
        definition = self._definitions[self._current_provider]
        return ProviderConfig(
            provider_key=definition.key,
            model=self._current_model,
            base_url=definition.base_url,
            api_key=definition.api_key,
            implementation=definition.implementation,
            temperature=self._temperature,
            max_tokens=self._max_tokens,
            timeout_seconds=self._timeout_seconds,
        )

    def status(self) -> dict:
        config = self.snapshot()
        definition = self._definitions[config.provider_key]
        available = config.has_api_key
        return {
            "available": available,
            "provider": config.provider_key,
            "model": config.model,
            "has_api_key": available,
            "message": (
                f"{definition.display_name} is configured"
                if available
                else f"{definition.display_name} is not configured, set its API key to enable generation"
            ),
        }

    def client_for(self, config: ProviderConfig) -> ProviderClient:
        return create_provider_client(config)

    def with_overrides(self, config: ProviderConfig, **changes) -> ProviderConfig:
        return replace(config, **changes)


provider_manager = ProviderManager.from_settings(settings)


def get_provider_manager() -> ProviderManager:
    """Get the process-wide provider manager."""
    return provider_manager
