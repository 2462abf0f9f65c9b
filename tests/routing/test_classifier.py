"""Tests for the classifier gate, its cache and the LiteLLM backend."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from brain_router.errors import ClassifierUnavailable
from brain_router.routing.classifier import (
    CLASSIFIER_MAX_TOKENS,
    CLASSIFIER_SYSTEM_PROMPT,
    ClassifierCache,
    LiteLLMClassifierBackend,
    build_classifier_messages,
    classify_prompt,
    classify_prompt_cached,
    create_classifier_function,
    parse_classifier_payload,
)
from brain_router.schemas import ClassifierResult, ContextStats, OperatingMode, RiskLevel

VERDICT = {"mode": "BATCH", "confidence": 0.9, "reasoning": "bulk rewrite"}


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def _backend(payload=VERDICT):
    """Backend returning a fixed payload and counting its calls."""
    return AsyncMock(return_value=payload)


@pytest.fixture
def stats() -> ContextStats:
    return ContextStats.from_total(5_000, business_rules_count=3, message_count=2)


# ------------------------------------------------------------------ #
# Messages and payload parsing
# ------------------------------------------------------------------ #


def test_build_messages_summarises_context(stats):
    messages = build_classifier_messages("update the thing", stats)

    assert messages[0] == {"role": "system", "content": CLASSIFIER_SYSTEM_PROMPT}
    user = messages[1]["content"]
    assert "update the thing" in user
    assert "Estimated tokens: 5,000" in user
    assert "Business rules: 3" in user
    assert "large context" not in user


def test_build_messages_warns_on_long_context():
    stats = ContextStats.from_total(10, is_long_context=True)
    assert "Warning: large context" in build_classifier_messages("x", stats)[1]["content"]


def test_parse_payload_from_json_string():
    result = parse_classifier_payload(json.dumps(VERDICT))
    assert result.mode == OperatingMode.BATCH
    assert result.confidence == 0.9


def test_parse_payload_normalises_case():
    result = parse_classifier_payload({"mode": "plan", "confidence": 0.7, "risk_level": "HIGH"})
    assert result.mode == OperatingMode.PLAN
    assert result.risk_level == RiskLevel.HIGH


def test_parse_payload_ignores_unknown_fields():
    result = parse_classifier_payload({**VERDICT, "extra": "ignored"})
    assert result.reasoning == "bulk rewrite"


@pytest.mark.parametrize(
    "payload",
    [
        "not json",
        "[1, 2, 3]",
        {"mode": "DANCE", "confidence": 0.9},
        {"mode": "PLAN", "confidence": 1.5},
        {"confidence": 0.5},
    ],
)
def test_parse_payload_rejects_invalid(payload):
    with pytest.raises(ClassifierUnavailable):
        parse_classifier_payload(payload)


# ------------------------------------------------------------------ #
# classify_prompt
# ------------------------------------------------------------------ #


@pytest.mark.asyncio
async def test_classify_prompt_success(stats, settings):
    backend = _backend()

    result = await classify_prompt("update the thing", stats, backend, settings=settings)

    assert result.mode == OperatingMode.BATCH
    backend.assert_awaited_once()
    sent = backend.await_args.args[0]
    assert sent[0]["role"] == "system"


@pytest.mark.asyncio
async def test_classify_prompt_wraps_backend_errors(stats, settings):
    backend = AsyncMock(side_effect=RuntimeError("proxy down"))

    with pytest.raises(ClassifierUnavailable, match="proxy down"):
        await classify_prompt("x", stats, backend, settings=settings)


@pytest.mark.asyncio
async def test_classify_prompt_times_out(stats, settings):
    async def slow(messages):
        await asyncio.sleep(10)
        return VERDICT

    with pytest.raises(ClassifierUnavailable, match="timed out"):
        await classify_prompt("x", stats, slow, timeout=0.05, settings=settings)


@pytest.mark.asyncio
async def test_classify_prompt_cancelled_in_flight(stats, settings):
    cancel_event = asyncio.Event()
    started = asyncio.Event()

    async def slow(messages):
        started.set()
        await asyncio.sleep(10)
        return VERDICT

    async def cancel_soon():
        await started.wait()
        cancel_event.set()

    canceller = asyncio.create_task(cancel_soon())
    with pytest.raises(ClassifierUnavailable, match="cancelled"):
        await classify_prompt(
            "x", stats, slow, timeout=5, cancel_event=cancel_event, settings=settings
        )
    await canceller


@pytest.mark.asyncio
async def test_classify_prompt_already_cancelled_skips_backend(stats, settings):
    cancel_event = asyncio.Event()
    cancel_event.set()
    backend = _backend()

    with pytest.raises(ClassifierUnavailable):
        await classify_prompt("x", stats, backend, cancel_event=cancel_event, settings=settings)

    backend.assert_not_awaited()


# ------------------------------------------------------------------ #
# Cache
# ------------------------------------------------------------------ #


def test_cache_key_is_hashed(stats):
    key = ClassifierCache.make_key("secret prompt", stats)
    assert len(key) == 64
    assert "secret" not in key
    assert key != ClassifierCache.make_key("secret prompt", ContextStats.from_total(1))


def test_cache_expires_after_ttl(stats):
    clock = FakeClock()
    cache = ClassifierCache(ttl_seconds=60, clock=clock)
    result = ClassifierResult(mode="PLAN", confidence=0.8)

    cache.set("k", result)
    clock.now += 59
    assert cache.get("k") == result
    clock.now += 2
    assert cache.get("k") is None
    assert len(cache) == 0


def test_cache_evicts_oldest_entry():
    cache = ClassifierCache(max_entries=2)
    result = ClassifierResult(mode="PLAN", confidence=0.8)

    for key in ("a", "b", "c"):
        cache.set(key, result)

    assert len(cache) == 2
    assert cache.get("a") is None
    assert cache.get("c") == result


def test_cache_zero_ttl_disables_storage():
    cache = ClassifierCache(ttl_seconds=0)
    cache.set("k", ClassifierResult(mode="PLAN", confidence=0.8))
    assert len(cache) == 0


def test_cache_rejects_non_positive_size():
    with pytest.raises(ValueError):
        ClassifierCache(max_entries=0)


@pytest.mark.asyncio
async def test_cached_classification_calls_backend_once(stats, settings):
    backend = _backend()
    cache = ClassifierCache()

    first = await classify_prompt_cached("x", stats, backend, cache, settings=settings)
    second = await classify_prompt_cached("x", stats, backend, cache, settings=settings)

    assert first == second
    backend.assert_awaited_once()


@pytest.mark.asyncio
async def test_failures_are_not_cached(stats, settings):
    backend = AsyncMock(side_effect=[RuntimeError("boom"), VERDICT])
    cache = ClassifierCache()

    with pytest.raises(ClassifierUnavailable):
        await classify_prompt_cached("x", stats, backend, cache, settings=settings)
    assert len(cache) == 0

    result = await classify_prompt_cached("x", stats, backend, cache, settings=settings)
    assert result.mode == OperatingMode.BATCH
    assert backend.await_count == 2


# ------------------------------------------------------------------ #
# create_classifier_function
# ------------------------------------------------------------------ #


@pytest.mark.asyncio
async def test_classifier_function_uses_private_cache(stats, settings):
    backend = _backend()
    classify = create_classifier_function(backend, settings=settings)

    await classify("x", stats)
    await classify("x", stats)

    backend.assert_awaited_once()


@pytest.mark.asyncio
async def test_classifier_function_without_cache(stats, settings):
    backend = _backend()
    classify = create_classifier_function(backend, settings=settings, use_cache=False)

    await classify("x", stats)
    await classify("x", stats)

    assert backend.await_count == 2


@pytest.mark.asyncio
async def test_classifier_function_shares_given_cache(stats, settings):
    cache = ClassifierCache()
    first = create_classifier_function(_backend(), settings=settings, cache=cache)
    second_backend = _backend()
    second = create_classifier_function(second_backend, settings=settings, cache=cache)

    await first("x", stats)
    await second("x", stats)

    second_backend.assert_not_awaited()


# ------------------------------------------------------------------ #
# LiteLLM backend
# ------------------------------------------------------------------ #


def _mock_client(text: str) -> MagicMock:
    client = MagicMock()
    client.complete_json = AsyncMock(return_value=text)
    return client


@pytest.mark.asyncio
async def test_litellm_backend_uses_classifier_model(settings):
    client = _mock_client(json.dumps(VERDICT))
    backend = LiteLLMClassifierBackend(client=client, settings=settings)

    content = await backend([{"role": "user", "content": "x"}])

    assert json.loads(content) == VERDICT
    kwargs = client.complete_json.await_args.kwargs
    assert kwargs["model"] == settings.classifier_model
    assert kwargs["max_tokens"] == CLASSIFIER_MAX_TOKENS


@pytest.mark.asyncio
async def test_litellm_backend_empty_response(settings):
    backend = LiteLLMClassifierBackend(client=_mock_client(""), settings=settings)

    with pytest.raises(ClassifierUnavailable, match="empty"):
        await backend([{"role": "user", "content": "x"}])


@pytest.mark.asyncio
async def test_litellm_backend_end_to_end(stats, settings):
    client = _mock_client(json.dumps({"mode": "consult", "confidence": 0.75}))
    backend = LiteLLMClassifierBackend(client=client, settings=settings)

    result = await classify_prompt("what is this", stats, backend, settings=settings)

    assert result.mode == OperatingMode.CONSULT
    assert result.confidence == 0.75
