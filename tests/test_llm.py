"""Tests for the LiteLLM client behind the classifier backend."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import litellm
import pytest

from brain_router.config import BrainSettings
from brain_router.llm import (
    JSON_RESPONSE_FORMAT,
    CompletionUsage,
    LLMClient,
    LLMError,
    LLMRateLimitError,
    LLMUnavailableError,
    first_choice_text,
)

MESSAGES = [{"role": "user", "content": "classify me"}]


def _response(content: str | None, usage: object | None = None) -> SimpleNamespace:
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=usage,
    )


def _rate_limit() -> litellm.exceptions.RateLimitError:
    return litellm.exceptions.RateLimitError(
        message="slow down", llm_provider="openai", model="gpt-4o-mini"
    )


@pytest.fixture
def client(settings: BrainSettings) -> LLMClient:
    return LLMClient(settings)


@pytest.mark.asyncio
async def test_complete_json_request_shape(client, settings):
    with patch("brain_router.llm.litellm.acompletion", new_callable=AsyncMock) as mock_llm:
        mock_llm.return_value = _response('{"mode": "PLAN"}')

        text = await client.complete_json(MESSAGES)

    assert text == '{"mode": "PLAN"}'
    kwargs = mock_llm.call_args.kwargs
    assert kwargs["model"] == settings.classifier_model
    assert kwargs["messages"] == MESSAGES
    assert kwargs["api_base"] == settings.litellm_base_url
    assert kwargs["api_key"] == "sk-dev-key"
    assert kwargs["response_format"] == JSON_RESPONSE_FORMAT
    assert kwargs["timeout"] == settings.classifier_timeout_seconds


@pytest.mark.asyncio
async def test_complete_json_model_override(client):
    with patch("brain_router.llm.litellm.acompletion", new_callable=AsyncMock) as mock_llm:
        mock_llm.return_value = _response("{}")

        await client.complete_json(MESSAGES, model="openai/gpt-4.1-nano", max_tokens=50)

    kwargs = mock_llm.call_args.kwargs
    assert kwargs["model"] == "openai/gpt-4.1-nano"
    assert kwargs["max_tokens"] == 50


@pytest.mark.asyncio
async def test_empty_choice_returns_empty_text(client):
    with patch("brain_router.llm.litellm.acompletion", new_callable=AsyncMock) as mock_llm:
        mock_llm.return_value = _response(None)
        assert await client.complete_json(MESSAGES) == ""


@pytest.mark.asyncio
async def test_generic_failure_not_retried(client):
    with patch("brain_router.llm.litellm.acompletion", new_callable=AsyncMock) as mock_llm:
        mock_llm.side_effect = RuntimeError("boom")

        with pytest.raises(LLMError, match="boom"):
            await client.complete_json(MESSAGES)

    assert mock_llm.await_count == 1


@pytest.mark.asyncio
async def test_rate_limit_retried_then_normalised(client, settings):
    with patch("brain_router.llm.litellm.acompletion", new_callable=AsyncMock) as mock_llm:
        mock_llm.side_effect = _rate_limit()

        with pytest.raises(LLMRateLimitError):
            await client.complete_json(MESSAGES)

    assert mock_llm.await_count == settings.classifier_max_attempts


@pytest.mark.asyncio
async def test_transient_failure_recovers_on_retry(client):
    with patch("brain_router.llm.litellm.acompletion", new_callable=AsyncMock) as mock_llm:
        mock_llm.side_effect = [ConnectionError("reset"), _response('{"ok": true}')]

        assert await client.complete_json(MESSAGES) == '{"ok": true}'

    assert mock_llm.await_count == 2


@pytest.mark.asyncio
async def test_single_attempt_configuration():
    client = LLMClient(BrainSettings(classifier_max_attempts=1))
    with patch("brain_router.llm.litellm.acompletion", new_callable=AsyncMock) as mock_llm:
        mock_llm.side_effect = ConnectionError("reset")

        with pytest.raises(LLMError):
            await client.complete_json(MESSAGES)

    assert mock_llm.await_count == 1


@pytest.mark.asyncio
async def test_service_unavailable_normalised(client):
    error = litellm.exceptions.ServiceUnavailableError(
        message="down", llm_provider="openai", model="gpt-4o-mini"
    )
    with patch("brain_router.llm.litellm.acompletion", new_callable=AsyncMock) as mock_llm:
        mock_llm.side_effect = error

        with pytest.raises(LLMUnavailableError):
            await client.complete_json(MESSAGES)


def test_first_choice_text_handles_malformed_response():
    assert first_choice_text(SimpleNamespace(choices=[])) == ""
    assert first_choice_text(None) == ""
    assert first_choice_text(_response("hi")) == "hi"


def test_completion_usage_from_response():
    usage = CompletionUsage.from_response(
        _response("x", SimpleNamespace(prompt_tokens=12, completion_tokens=3))
    )
    assert usage == CompletionUsage(prompt_tokens=12, completion_tokens=3)
    assert CompletionUsage.from_response(_response("x")) is None
