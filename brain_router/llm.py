"""LiteLLM access for the classifier backend.

The router only ever needs one kind of model call: a short, JSON-mode chat
completion whose text is the classifier verdict. Calls go through the
LiteLLM proxy configured in BrainSettings, so provider keys never reach
this process and the classifier model is swapped through configuration.

Transient upstream failures (rate limits, 503s, timeouts, dropped
connections) are retried with exponential backoff; everything else fails
on the first attempt. Provider exceptions never leave this module: they
are mapped onto the LLMError hierarchy.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

import litellm
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from brain_router.config import BrainSettings, get_settings

log = structlog.get_logger(__name__)

_TRANSIENT = (
    litellm.exceptions.RateLimitError,
    litellm.exceptions.ServiceUnavailableError,
    litellm.exceptions.Timeout,
    ConnectionError,
)

JSON_RESPONSE_FORMAT = {"type": "json_object"}


class LLMError(Exception):
    """Base exception for all LLM call failures."""


class LLMRateLimitError(LLMError):
    """Upstream LLM rate limit exceeded."""


class LLMUnavailableError(LLMError):
    """LLM service is unavailable or timed out."""


# First match wins; anything unlisted becomes a plain LLMError
_ERROR_MAP: tuple[tuple[type[BaseException], type[LLMError], str], ...] = (
    (litellm.exceptions.RateLimitError, LLMRateLimitError, "rate limited by upstream"),
    (litellm.exceptions.ServiceUnavailableError, LLMUnavailableError, "upstream unavailable"),
    (litellm.exceptions.Timeout, LLMUnavailableError, "upstream timed out"),
)


def _to_llm_error(exc: Exception) -> LLMError:
    for source, target, label in _ERROR_MAP:
        if isinstance(exc, source):
            return target(f"{label}: {exc}")
    return LLMError(f"completion failed: {exc}")


@dataclass(frozen=True)
class CompletionUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @classmethod
    def from_response(cls, response: Any) -> CompletionUsage | None:
        usage = getattr(response, "usage", None)
        if usage is None:
            return None
        return cls(
            prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
        )


def first_choice_text(response: Any) -> str:
    """Text of the first choice, or "" when the response has none."""
    try:
        return response.choices[0].message.content or ""
    except (AttributeError, IndexError, KeyError, TypeError):
        return ""


class LLMClient:
    """JSON-mode chat completions through the LiteLLM proxy."""

    def __init__(self, settings: BrainSettings | None = None) -> None:
        self._settings = settings or get_settings()

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(_TRANSIENT),
            stop=stop_after_attempt(self._settings.classifier_max_attempts),
            wait=wait_exponential(multiplier=0.2, min=0.2, max=1),
            reraise=True,
        )

    async def _call(self, request: dict[str, Any]) -> Any:
        async for attempt in self._retrying():
            with attempt:
                return await litellm.acompletion(
                    api_base=self._settings.litellm_base_url,
                    api_key=self._settings.litellm_api_key.get_secret_value(),
                    **request,
                )

    async def complete_json(
        self,
        messages: list[dict[str, str]],
        *,
        model: str | None = None,
        temperature: float = 0.1,
        max_tokens: int = 200,
    ) -> str:
        """Run a JSON-mode completion and return the raw response text.

        Args:
            messages: OpenAI-format chat messages
            model: LiteLLM model name. Defaults to the configured classifier model.
            temperature: Sampling temperature
            max_tokens: Output token cap

        Returns:
            Text of the first choice; "" when the model returned nothing

        Raises:
            LLMRateLimitError: Still rate limited after retries
            LLMUnavailableError: Upstream unavailable or timed out after retries
            LLMError: Any other failure
        """
        request = {
            "model": model or self._settings.classifier_model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "response_format": JSON_RESPONSE_FORMAT,
            "timeout": self._settings.classifier_timeout_seconds,
        }
        started = time.monotonic()
        try:
            response = await self._call(request)
        except Exception as exc:
            error = _to_llm_error(exc)
            log.warning(
                "llm.completion_failed",
                model=request["model"],
                error_type=type(error).__name__,
                error=str(exc),
            )
            raise error from exc

        usage = CompletionUsage.from_response(response)
        log.info(
            "llm.completion_done",
            model=request["model"],
            latency_ms=round((time.monotonic() - started) * 1000, 1),
            prompt_tokens=usage.prompt_tokens if usage else None,
            completion_tokens=usage.completion_tokens if usage else None,
        )
        return first_choice_text(response)
