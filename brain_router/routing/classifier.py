"""Classifier gate.

Second, optional stage of the pipeline. Only consulted when the
deterministic gate is uncertain. A cheap model reads the prompt plus a
summary of the context and answers with a JSON verdict.

The model call itself is an injected capability: a ClassifierBackend is any
async callable that takes chat messages and returns the raw verdict (a
JSON string or a mapping). LiteLLMClassifierBackend is the default one.

Any failure (backend error, timeout, cancellation, invalid payload) is
raised as ClassifierUnavailable; the router then keeps its deterministic
decision.

Successful verdicts are memoised by SHA-256 of (prompt, stats fingerprint)
with a short TTL. Failures are never cached.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

import structlog
from pydantic import ValidationError

from brain_router.config import BrainSettings, get_settings
from brain_router.errors import ClassifierUnavailable
from brain_router.llm import LLMClient
from brain_router.schemas import ClassifierResult, ContextStats

log = structlog.get_logger(__name__)

ClassifierMessages = list[dict[str, str]]
ClassifierBackend = Callable[[ClassifierMessages], Awaitable[str | Mapping[str, Any]]]


class ClassifierFunction(Protocol):
    async def __call__(
        self,
        prompt: str,
        stats: ContextStats,
        cancel_event: asyncio.Event | None = None,
    ) -> ClassifierResult: ...


CLASSIFIER_SYSTEM_PROMPT = """You classify user intents for an AI assistant that designs user flows.

Classify the user's prompt into exactly one mode:

1. PLAN: create, change or plan something structured (architecture, business
   rules, specs, refactors, conflict resolution, product planning)
2. CONSULT: questions, explanations, quick lookups, suggestions without
   structured changes
3. BATCH: repetitive transformations (normalise, translate, reformat,
   generate variations in bulk, extract lists)
4. LONG_CONTEXT: the request needs an unusually large context

Answer ONLY with valid JSON:

{
  "mode": "PLAN|CONSULT|BATCH|LONG_CONTEXT",
  "confidence": 0.0 to 1.0,
  "reasoning": "one short sentence",
  "complexity": 0.0 to 1.0,
  "risk_level": "low|medium|high",
  "requires_structured_output": true|false,
  "needs_tool_use": true|false
}

risk_level: high = delete, migrate, production, breaking changes;
medium = change, modify, update; low = ask, explain, suggest."""

CLASSIFIER_TEMPERATURE = 0.1
CLASSIFIER_MAX_TOKENS = 200


def build_classifier_messages(prompt: str, stats: ContextStats) -> ClassifierMessages:
    """Build the compact chat transcript sent to the classifier."""
    summary = [
        f"Estimated tokens: {stats.total_tokens:,}",
        f"Business rules: {stats.business_rules_count}",
        f"Flow specs: {stats.flow_specs_count}",
        f"Personas: {stats.personas_count}",
        f"Thread messages: {stats.message_count}",
    ]
    if stats.is_long_context:
        summary.append("Warning: large context")

    user_message = (
        f"## USER PROMPT\n{prompt}\n\n"
        f"## CONTEXT\n" + "\n".join(summary) + "\n\n"
        "Classify the prompt above."
    )
    return [
        {"role": "system", "content": CLASSIFIER_SYSTEM_PROMPT},
        {"role": "user", "content": user_message},
    ]


def parse_classifier_payload(payload: str | Mapping[str, Any]) -> ClassifierResult:
    """Validate a raw classifier verdict.

    Raises:
        ClassifierUnavailable: Payload is not JSON or does not match the schema
    """
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ClassifierUnavailable(f"Classifier returned invalid JSON: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise ClassifierUnavailable(
            f"Classifier returned {type(payload).__name__}, expected an object"
        )
    try:
        return ClassifierResult.model_validate(dict(payload))
    except ValidationError as exc:
        raise ClassifierUnavailable(f"Classifier payload failed validation: {exc}") from exc


async def _await_unless_cancelled(
    call: Awaitable[Any],
    timeout: float,
    cancel_event: asyncio.Event | None,
) -> Any:
    task = asyncio.ensure_future(call)
    waiters: set[asyncio.Future[Any]] = {task}
    cancel_waiter: asyncio.Task[Any] | None = None
    if cancel_event is not None:
        cancel_waiter = asyncio.create_task(cancel_event.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(
            waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()
        if not task.done():
            task.cancel()

    if task in done:
        return task.result()

    if cancel_event is not None and cancel_event.is_set():
        raise ClassifierUnavailable("Classifier call cancelled by caller")
    raise ClassifierUnavailable(f"Classifier timed out after {timeout:g}s")


async def classify_prompt(
    prompt: str,
    stats: ContextStats,
    backend: ClassifierBackend,
    *,
    timeout: float | None = None,
    cancel_event: asyncio.Event | None = None,
    settings: BrainSettings | None = None,
) -> ClassifierResult:
    """Ask the classifier backend for a mode verdict.

    Args:
        prompt: User prompt
        stats: Context statistics, summarised for the classifier
        backend: Async callable performing the model call
        timeout: Seconds before giving up. Defaults to the configured value.
        cancel_event: When set, the in-flight call is cancelled
        settings: Settings to read the timeout from

    Returns:
        Validated ClassifierResult

    Raises:
        ClassifierUnavailable: On any backend failure, timeout, cancellation
            or invalid payload
    """
    if timeout is None:
        timeout = (settings or get_settings()).classifier_timeout_seconds

    if cancel_event is not None and cancel_event.is_set():
        raise ClassifierUnavailable("Classifier call cancelled by caller")

    messages = build_classifier_messages(prompt, stats)
    started = time.monotonic()
    try:
        payload = await _await_unless_cancelled(backend(messages), timeout, cancel_event)
    except ClassifierUnavailable:
        raise
    except Exception as exc:
        raise ClassifierUnavailable(f"Classifier backend failed: {exc}") from exc

    result = parse_classifier_payload(payload)
    log.info(
        "classifier.classified",
        mode=result.mode.value,
        confidence=result.confidence,
        latency_ms=round((time.monotonic() - started) * 1000, 1),
    )
    return result


# ------------------------------------------------------------------ #
# Result cache
# ------------------------------------------------------------------ #


@dataclass
class _CacheEntry:
    result: ClassifierResult
    expires_at: float


class ClassifierCache:
    """In-process TTL cache of classifier verdicts.

    Keys are SHA-256 digests of the prompt and the stats fingerprint, so
    raw prompt text never appears in the key space. The oldest entry is
    evicted once ``max_entries`` is reached.
    """

    def __init__(
        self,
        ttl_seconds: float = 300,
        max_entries: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, _CacheEntry] = OrderedDict()

    @staticmethod
    def make_key(prompt: str, stats: ContextStats) -> str:
        raw = f"{prompt}\x00{stats.fingerprint()}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def get(self, key: str) -> ClassifierResult | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry.result

    def set(self, key: str, result: ClassifierResult) -> None:
        if self._ttl <= 0:
            return
        self._entries.pop(key, None)
        while len(self._entries) >= self._max_entries:
            self._entries.popitem(last=False)
        self._entries[key] = _CacheEntry(result, self._clock() + self._ttl)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


async def classify_prompt_cached(
    prompt: str,
    stats: ContextStats,
    backend: ClassifierBackend,
    cache: ClassifierCache,
    *,
    timeout: float | None = None,
    cancel_event: asyncio.Event | None = None,
    settings: BrainSettings | None = None,
) -> ClassifierResult:
    """classify_prompt with memoisation of successful verdicts."""
    key = ClassifierCache.make_key(prompt, stats)
    cached = cache.get(key)
    if cached is not None:
        log.debug("classifier.cache_hit", key=key[:12])
        return cached

    result = await classify_prompt(
        prompt,
        stats,
        backend,
        timeout=timeout,
        cancel_event=cancel_event,
        settings=settings,
    )
    cache.set(key, result)
    return result


# ------------------------------------------------------------------ #
# Backends
# ------------------------------------------------------------------ #


class LiteLLMClassifierBackend:
    """Default backend: a JSON-mode completion through the LiteLLM proxy."""

    def __init__(
        self,
        client: LLMClient | None = None,
        settings: BrainSettings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client or LLMClient(self._settings)

    async def __call__(self, messages: ClassifierMessages) -> str:
        content = await self._client.complete_json(
            messages,
            model=self._settings.classifier_model,
            temperature=CLASSIFIER_TEMPERATURE,
            max_tokens=CLASSIFIER_MAX_TOKENS,
        )
        if not content:
            raise ClassifierUnavailable("Classifier returned an empty response")
        return content


def create_classifier_function(
    backend: ClassifierBackend | None = None,
    *,
    settings: BrainSettings | None = None,
    cache: ClassifierCache | None = None,
    use_cache: bool = True,
) -> ClassifierFunction:
    """Bind a backend, settings and cache into a router-ready classifier.

    Args:
        backend: Model call to use. Defaults to LiteLLMClassifierBackend.
        settings: Settings for timeout and cache limits
        cache: Shared cache. A private one is created when omitted.
        use_cache: Disable memoisation entirely when False

    Returns:
        Async ``classify(prompt, stats, cancel_event=None)``
    """
    settings = settings or get_settings()
    bound_backend = backend or LiteLLMClassifierBackend(settings=settings)
    if use_cache and cache is None:
        cache = ClassifierCache(
            ttl_seconds=settings.classifier_cache_ttl_seconds,
            max_entries=settings.classifier_cache_max_entries,
        )

    async def classify(
        prompt: str,
        stats: ContextStats,
        cancel_event: asyncio.Event | None = None,
    ) -> ClassifierResult:
        if cache is None:
            return await classify_prompt(
                prompt, stats, bound_backend, cancel_event=cancel_event, settings=settings
            )
        return await classify_prompt_cached(
            prompt,
            stats,
            bound_backend,
            cache,
            cancel_event=cancel_event,
            settings=settings,
        )

    return classify
