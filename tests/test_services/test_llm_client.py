"""
Tests for provider clients and the provider manager.

Tests the OpenAI-compatible client with a mocked AsyncOpenAI.
"""
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from app.core.exceptions import (
    ProviderError,
    ProviderErrorKind,
    ProviderNotConfiguredError,
    ProviderNotFoundError,
)
from app.services.llm_client import (
    OpenAICompatibleClient,
    PromptSpec,
    ProviderClient,
    ProviderConfig,
    ProviderDefinition,
    ProviderManager,
    create_provider_client,
    register_provider,
    registered_implementations,
)

REQUEST = httpx.Request("POST", "https://example.test/v1/chat/completions")


def _status_error(cls, status_code: int):
    return cls("error", response=httpx.Response(status_code, request=REQUEST), body=None)


def _completion(content):
    response = MagicMock()
    if content is None:
        response.choices = []
    else:
        choice = MagicMock()
        choice.message.content = content
        response.choices = [choice]
    return response


@pytest.fixture(name="prompt")
def prompt_fixture() -> PromptSpec:
    return PromptSpec(system_prompt="You write exam questions.", user_prompt="Write one.")


@pytest.fixture(name="manager")
def manager_fixture() -> ProviderManager:
    return ProviderManager(
        [
            ProviderDefinition(
                key="openrouter",
                display_name="OpenRouter",
                base_url="https://openrouter.ai/api/v1",
                api_key="or-key",
                models=("openai/gpt-4.1-mini", "anthropic/claude-sonnet-4"),
            ),
            ProviderDefinition(
                key="gemini",
                display_name="Google Gemini",
                base_url="https://generativelanguage.googleapis.com/v1beta/openai/",
                api_key="",
                models=("gemini-2.5-flash",),
            ),
        ],
        default_provider="openrouter",
        default_model="openai/gpt-4.1-mini",
        temperature=0.3,
        max_tokens=1500,
        timeout_seconds=30,
    )


class TestOpenAICompatibleClient:
    """Tests for completions through the OpenAI protocol."""

    @pytest.mark.asyncio
    @patch("app.services.llm_client.AsyncOpenAI")
    async def test_returns_content(self, mock_openai, provider_config, prompt):
        mock_openai.return_value.chat.completions.create = AsyncMock(return_value=_completion('{"stem": "x"}'))

        client = OpenAICompatibleClient(provider_config)
        result = await client.generate_completion(prompt)

        assert result == '{"stem": "x"}'
        mock_openai.assert_called_once_with(
            api_key="test-key",
            base_url=provider_config.base_url,
            timeout=provider_config.timeout_seconds,
            max_retries=0,
        )
        kwargs = mock_openai.return_value.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == provider_config.model
        assert kwargs["messages"][0] == {"role": "system", "content": "You write exam questions."}
        assert kwargs["temperature"] == provider_config.temperature

    @pytest.mark.asyncio
    @patch("app.services.llm_client.AsyncOpenAI")
    async def test_prompt_overrides_temperature(self, mock_openai, provider_config):
        mock_openai.return_value.chat.completions.create = AsyncMock(return_value=_completion("ok"))

        prompt = PromptSpec(system_prompt="s", user_prompt="u", temperature=0.0, max_tokens=50)
        await OpenAICompatibleClient(provider_config).generate_completion(prompt)

        kwargs = mock_openai.return_value.chat.completions.create.call_args.kwargs
        assert kwargs["temperature"] == 0.0
        assert kwargs["max_tokens"] == 50

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", [None, "", "   "])
    @patch("app.services.llm_client.AsyncOpenAI")
    async def test_empty_response_is_malformed(self, mock_openai, content, provider_config, prompt):
        mock_openai.return_value.chat.completions.create = AsyncMock(return_value=_completion(content))

        with pytest.raises(ProviderError) as exc_info:
            await OpenAICompatibleClient(provider_config).generate_completion(prompt)

        assert exc_info.value.kind == ProviderErrorKind.MALFORMED_RESPONSE

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error,kind",
        [
            (openai.APITimeoutError(request=REQUEST), ProviderErrorKind.TIMEOUT),
            (openai.APIConnectionError(request=REQUEST), ProviderErrorKind.NETWORK),
            (_status_error(openai.AuthenticationError, 401), ProviderErrorKind.UNAUTHORIZED),
            (_status_error(openai.PermissionDeniedError, 403), ProviderErrorKind.UNAUTHORIZED),
            (_status_error(openai.RateLimitError, 429), ProviderErrorKind.RATE_LIMITED),
            (_status_error(openai.InternalServerError, 500), ProviderErrorKind.NETWORK),
        ],
    )
    @patch("app.services.llm_client.AsyncOpenAI")
    async def test_errors_are_classified(self, mock_openai, error, kind, provider_config, prompt):
        mock_openai.return_value.chat.completions.create = AsyncMock(side_effect=error)

        with pytest.raises(ProviderError) as exc_info:
            await OpenAICompatibleClient(provider_config).generate_completion(prompt)

        assert exc_info.value.kind == kind
        assert exc_info.value.provider == "openrouter"

    @pytest.mark.asyncio
    @patch("app.services.llm_client.AsyncOpenAI")
    async def test_missing_key_fails_without_calling(self, mock_openai, provider_config, prompt):
        config = ProviderConfig(
            provider_key="gemini", model="gemini-2.5-flash", base_url="https://example.test", api_key=""
        )

        with pytest.raises(ProviderError) as exc_info:
            await OpenAICompatibleClient(config).generate_completion(prompt)

        assert exc_info.value.kind == ProviderErrorKind.UNAUTHORIZED
        mock_openai.assert_not_called()

    def test_availability(self, provider_config):
        assert OpenAICompatibleClient(provider_config).is_available().available

        unconfigured = ProviderConfig(provider_key="x", model="m", base_url="https://example.test", api_key=" ")
        availability = OpenAICompatibleClient(unconfigured).is_available()
        assert not availability.available
        assert "not configured" in availability.reason


class TestRegistry:
    """Tests for the implementation registry."""

    def test_default_implementation_registered(self, provider_config):
        assert "openai_compatible" in registered_implementations()
        assert isinstance(create_provider_client(provider_config), OpenAICompatibleClient)

    def test_unknown_implementation(self, provider_config):
        config = ProviderConfig(
            provider_key="x", model="m", base_url="https://example.test", api_key="k", implementation="carrier-pigeon"
        )

        with pytest.raises(ProviderNotFoundError):
            create_provider_client(config)

    def test_register_new_implementation(self):
        @register_provider("echo-test")
        class EchoClient(ProviderClient):
            async def generate_completion(self, prompt: PromptSpec) -> str:
                return prompt.user_prompt

        config = ProviderConfig(
            provider_key="x", model="m", base_url="https://example.test", api_key="k", implementation="echo-test"
        )

        assert isinstance(create_provider_client(config), EchoClient)


class TestProviderManager:
    """Tests for provider selection and snapshots."""

    def test_snapshot_uses_defaults(self, manager):
        config = manager.snapshot()

        assert config.provider_key == "openrouter"
        assert config.model == "openai/gpt-4.1-mini"
        assert config.api_key == "or-key"
        assert config.temperature == 0.3
        assert config.timeout_seconds == 30

    def test_select_model(self, manager):
        config = manager.select_model("openrouter", "anthropic/claude-sonnet-4")

        assert config.model == "anthropic/claude-sonnet-4"
        assert manager.snapshot().model == "anthropic/claude-sonnet-4"

    def test_select_provider_defaults_to_first_model(self, manager):
        manager.select_model("openrouter", "anthropic/claude-sonnet-4")

        assert manager.select_model("openrouter").model == "openai/gpt-4.1-mini"

    def test_snapshot_unaffected_by_later_selection(self, manager):
        before = manager.snapshot()

        manager.select_model("openrouter", "anthropic/claude-sonnet-4")

        assert before.model == "openai/gpt-4.1-mini"

    def test_select_unconfigured_provider(self, manager):
        with pytest.raises(ProviderNotConfiguredError):
            manager.select_model("gemini")

        assert manager.snapshot().provider_key == "openrouter"

    def test_select_unknown_provider(self, manager):
        with pytest.raises(ProviderNotFoundError):
            manager.select_model("nope")

    def test_select_unknown_model(self, manager):
        with pytest.raises(ProviderNotFoundError):
            manager.select_model("openrouter", "not-a-model")

    def test_unknown_default_provider(self):
        with pytest.raises(ProviderNotFoundError):
            ProviderManager([], default_provider="openrouter", default_model="m")

    def test_list_providers(self, manager):
        providers = {p["key"]: p for p in manager.list_providers()}

        assert providers["openrouter"]["configured"] is True
        assert providers["gemini"]["configured"] is False
        assert providers["gemini"]["models"] == ["gemini-2.5-flash"]

    def test_status(self, manager):
        status = manager.status()

        assert status["available"] is True
        assert status["provider"] == "openrouter"
        assert status["model"] == "openai/gpt-4.1-mini"

    def test_with_overrides(self, manager):
        config = manager.with_overrides(manager.snapshot(), temperature=0.9)

        assert config.temperature == 0.9
        assert config.model == "openai/gpt-4.1-mini"
