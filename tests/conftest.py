"""
Shared test fixtures for pytest.

Provides common settings and stubs for all test modules:
- settings: Deterministic router settings (no .env, no BRAIN_* leakage)
- make_stats: Helper building ContextStats from a total token count
- classifier_stub: Factory for async classifier functions returning fixed verdicts
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable
from pathlib import Path

import pytest

from brain_router.config import BrainSettings, Environment, get_settings
from brain_router.schemas import ClassifierResult, ContextStats, OperatingMode
from brain_router.telemetry import clear_context


# ------------------------------------------------------------------ #
# Clear the settings cache and environment between tests
# ------------------------------------------------------------------ #


@pytest.fixture(autouse=True)
def _clear_settings_cache(monkeypatch):
    """Clear the lru_cache on get_settings so test overrides take effect."""
    for name in [key for key in os.environ if key.upper().startswith("BRAIN_")]:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(Path(__file__).parent)
    get_settings.cache_clear()
    clear_context()
    yield
    get_settings.cache_clear()
    clear_context()


@pytest.fixture
def settings() -> BrainSettings:
    return BrainSettings(environment=Environment.TEST)


@pytest.fixture
def make_stats() -> Callable[..., ContextStats]:
    def _make(total_tokens: int, **fields) -> ContextStats:
        return ContextStats.from_total(total_tokens, **fields)

    return _make


@pytest.fixture
def classifier_stub():
    """Build an async classifier function that records its calls."""

    def _build(mode: OperatingMode | str, confidence: float, **extra):
        calls: list[tuple[str, ContextStats]] = []

        async def classify(
            prompt: str,
            stats: ContextStats,
            cancel_event: asyncio.Event | None = None,
        ) -> ClassifierResult:
            calls.append((prompt, stats))
            return ClassifierResult(mode=mode, confidence=confidence, **extra)

        classify.calls = calls
        return classify

    return _build
