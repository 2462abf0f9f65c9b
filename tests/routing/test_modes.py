"""Tests for the mode configuration registry."""

from __future__ import annotations

import pytest

from brain_router.config import BrainSettings
from brain_router.routing.modes import (
    BRAIN_SYSTEM_PROMPT_BASE,
    DEFAULT_THRESHOLDS,
    PLAN_HIGH_EFFORT_TRIGGERS,
    determine_verbosity,
    estimate_risk_level,
    get_all_mode_configs,
    get_batch_config,
    get_consult_config,
    get_long_context_config,
    get_plan_config,
    get_plan_pro_config,
    get_system_prompt_for_mode,
    requires_high_reasoning_effort,
    resolve_model_config,
)
from brain_router.schemas import (
    ModelIdentifier,
    ModelTier,
    OperatingMode,
    ReasoningEffort,
    RiskLevel,
    TextVerbosity,
)


# ------------------------------------------------------------------ #
# Per-mode configs
# ------------------------------------------------------------------ #


def test_default_mode_configs(settings):
    plan = get_plan_config(settings)
    assert (plan.model, plan.reasoning_effort, plan.text_verbosity, plan.max_output_tokens) == (
        ModelIdentifier.GPT_4O,
        ReasoningEffort.MEDIUM,
        TextVerbosity.MEDIUM,
        16_000,
    )

    pro = get_plan_pro_config(settings)
    assert pro.model == ModelIdentifier.O1
    assert pro.reasoning_effort == ReasoningEffort.HIGH
    assert pro.max_output_tokens == 32_000
    assert pro.tier == ModelTier.PRO

    consult = get_consult_config(settings)
    assert consult.model == ModelIdentifier.GPT_4O_MINI
    assert consult.reasoning_effort == ReasoningEffort.LOW
    assert consult.max_output_tokens == 4_000

    batch = get_batch_config(settings)
    assert batch.text_verbosity == TextVerbosity.LOW
    assert batch.max_output_tokens == 8_000

    long_context = get_long_context_config(settings)
    assert long_context.use_rag is True
    assert long_context.model == ModelIdentifier.GPT_4O


def test_mode_configs_follow_settings():
    settings = BrainSettings(model_batch="gpt-5-nano", effort_batch="medium")

    config = get_batch_config(settings)

    assert config.model == ModelIdentifier.GPT_5_NANO
    assert config.reasoning_effort == ReasoningEffort.MEDIUM


def test_plan_high_effort_flag(settings):
    assert get_plan_config(settings, high_effort=True).reasoning_effort == ReasoningEffort.HIGH


def test_get_all_mode_configs_keys(settings):
    configs = get_all_mode_configs(settings)
    assert set(configs) == {"PLAN", "PLAN_PRO", "CONSULT", "BATCH", "LONG_CONTEXT"}


def test_fallback_chain_starts_with_default_model(settings):
    for config in get_all_mode_configs(settings).values():
        assert config.fallback_chain[0] == config.model


def test_default_thresholds_match_documented_values():
    assert DEFAULT_THRESHOLDS["long_context_threshold"] == 250_000
    assert DEFAULT_THRESHOLDS["classifier_min_tokens"] == 300
    assert DEFAULT_THRESHOLDS["uncertainty_band_max"] == 0.6


# ------------------------------------------------------------------ #
# resolve_model_config
# ------------------------------------------------------------------ #


def test_plan_high_risk_uses_pro(settings):
    config = resolve_model_config(OperatingMode.PLAN, RiskLevel.HIGH, False, settings)
    assert config.model == ModelIdentifier.O1


def test_plan_trigger_escalates_effort(settings):
    config = resolve_model_config(OperatingMode.PLAN, RiskLevel.LOW, True, settings)
    assert config.model == ModelIdentifier.GPT_4O
    assert config.reasoning_effort == ReasoningEffort.HIGH


def test_other_modes_escalate_one_rank(settings):
    consult = resolve_model_config(OperatingMode.CONSULT, RiskLevel.HIGH, False, settings)
    long_context = resolve_model_config(OperatingMode.LONG_CONTEXT, RiskLevel.LOW, True, settings)

    assert consult.reasoning_effort == ReasoningEffort.MEDIUM
    assert long_context.reasoning_effort == ReasoningEffort.HIGH


def test_medium_risk_does_not_escalate(settings):
    config = resolve_model_config(OperatingMode.BATCH, RiskLevel.MEDIUM, False, settings)
    assert config.reasoning_effort == ReasoningEffort.LOW


@pytest.mark.parametrize("mode", list(OperatingMode))
@pytest.mark.parametrize("risk_level", list(RiskLevel))
@pytest.mark.parametrize("triggered", [False, True])
def test_escalation_never_lowers_effort(settings, mode, risk_level, triggered):
    baseline = resolve_model_config(mode, RiskLevel.LOW, False, settings)
    escalated = resolve_model_config(mode, risk_level, triggered, settings)
    assert escalated.reasoning_effort.rank >= baseline.reasoning_effort.rank


def test_unknown_mode_resolves_as_consult(settings):
    config = resolve_model_config("SOMETHING", settings=settings)
    assert config == get_consult_config(settings)


def test_resolve_returns_fresh_configs(settings):
    first = resolve_model_config(OperatingMode.PLAN, settings=settings)
    second = resolve_model_config(OperatingMode.PLAN, settings=settings)
    assert first == second
    assert first is not second


# ------------------------------------------------------------------ #
# Triggers and risk
# ------------------------------------------------------------------ #


@pytest.mark.parametrize(
    "prompt",
    [
        "Please REFACTOR the onboarding flow",
        "there is a conflict between rules",
        "plan the database migration",
        "Precisamos refatorar o fluxo",
        "review the permissions model",
    ],
)
def test_requires_high_reasoning_effort(prompt):
    assert requires_high_reasoning_effort(prompt) is True


def test_requires_high_reasoning_effort_negative():
    assert requires_high_reasoning_effort("How do I reset a password?") is False


def test_triggers_are_lowercase():
    assert all(trigger == trigger.lower() for trigger in PLAN_HIGH_EFFORT_TRIGGERS)


@pytest.mark.parametrize(
    ("prompt", "expected"),
    [
        ("Delete the legacy checkout flow", RiskLevel.HIGH),
        ("Deploy this to production", RiskLevel.HIGH),
        ("This is a breaking change", RiskLevel.HIGH),
        ("remove all records older than a year", RiskLevel.HIGH),
        ("update the thing", RiskLevel.MEDIUM),
        ("Change the button label", RiskLevel.MEDIUM),
        ("How do I reset a password?", RiskLevel.LOW),
    ],
)
def test_estimate_risk_level(prompt, expected):
    assert estimate_risk_level(prompt) == expected


# ------------------------------------------------------------------ #
# Verbosity and prompts
# ------------------------------------------------------------------ #


def test_verbosity_defaults_per_mode(settings):
    assert determine_verbosity(OperatingMode.PLAN, 1_000, settings=settings) == TextVerbosity.MEDIUM
    assert determine_verbosity(OperatingMode.CONSULT, 1_000, settings=settings) == TextVerbosity.LOW
    assert determine_verbosity(OperatingMode.BATCH, 1_000, settings=settings) == TextVerbosity.LOW


def test_verbosity_steps_down_for_large_context(settings):
    tokens = int(settings.long_context_threshold * settings.compact_verbosity_ratio)
    assert determine_verbosity(OperatingMode.PLAN, tokens, settings=settings) == TextVerbosity.LOW
    assert determine_verbosity(OperatingMode.CONSULT, tokens, settings=settings) == TextVerbosity.LOW


def test_batch_verbosity_capped_low():
    settings = BrainSettings(verbosity_batch="high")
    assert determine_verbosity(OperatingMode.BATCH, 10, settings=settings) == TextVerbosity.LOW


def test_handoff_forces_high_verbosity(settings):
    verbosity = determine_verbosity(OperatingMode.BATCH, 10, is_handoff=True, settings=settings)
    assert verbosity == TextVerbosity.HIGH


@pytest.mark.parametrize("mode", list(OperatingMode))
def test_system_prompt_for_mode(mode):
    prompt = get_system_prompt_for_mode(mode)
    assert prompt.startswith(BRAIN_SYSTEM_PROMPT_BASE)
    assert f"MODE: {mode.value}" in prompt


def test_system_prompt_unknown_mode_uses_consult():
    assert "MODE: CONSULT" in get_system_prompt_for_mode("NOPE")
