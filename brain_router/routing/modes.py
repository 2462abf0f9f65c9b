"""Mode configuration registry.

Maps each operating mode to a concrete ModelConfig and holds the keyword
tables that escalate reasoning effort and estimate risk.

Default mode profiles (model / effort / verbosity / max output tokens):
- PLAN: gpt-4o / medium / medium / 16000
- PLAN_PRO: o1 / high / medium / 32000 (high-risk PLAN requests)
- CONSULT: gpt-4o-mini / low / low / 4000
- BATCH: gpt-4o-mini / low / low / 8000
- LONG_CONTEXT: gpt-4o / medium / medium / 16000, served through RAG

Models, effort and verbosity per mode are overridable through settings.
The registry has no mutable state; every call builds a fresh ModelConfig.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from types import MappingProxyType
from typing import Final

import structlog

from brain_router.config import BrainSettings, get_settings
from brain_router.schemas import (
    ModelConfig,
    ModelIdentifier,
    OperatingMode,
    ReasoningEffort,
    RiskLevel,
    TextVerbosity,
)

log = structlog.get_logger(__name__)

PLAN_PRO_KEY: Final = "PLAN_PRO"
STRUCTURED_OUTPUT_SCHEMA: Final = "BrainOutput"

# Documented defaults of the routing thresholds, independent of the environment
DEFAULT_THRESHOLDS: Final = MappingProxyType(
    {
        name: BrainSettings.model_fields[name].default
        for name in (
            "long_context_threshold",
            "uncertainty_band_min",
            "uncertainty_band_max",
            "min_rubric_score",
            "dominance_margin",
            "classifier_min_tokens",
            "rag_largest_item_tokens",
            "compact_verbosity_ratio",
        )
    }
)

FALLBACK_CHAINS: Final[dict[str, tuple[ModelIdentifier, ...]]] = {
    OperatingMode.PLAN.value: (ModelIdentifier.GPT_4O, ModelIdentifier.GPT_4O_MINI),
    PLAN_PRO_KEY: (ModelIdentifier.O1, ModelIdentifier.GPT_4O, ModelIdentifier.GPT_4O_MINI),
    OperatingMode.CONSULT.value: (ModelIdentifier.GPT_4O_MINI, ModelIdentifier.GPT_4O),
    OperatingMode.BATCH.value: (ModelIdentifier.GPT_4O_MINI, ModelIdentifier.GPT_4O),
    OperatingMode.LONG_CONTEXT.value: (ModelIdentifier.GPT_4O, ModelIdentifier.GPT_4O_MINI),
}


# ------------------------------------------------------------------ #
# Per-mode configs
# ------------------------------------------------------------------ #


def get_plan_config(
    settings: BrainSettings | None = None,
    *,
    high_effort: bool = False,
) -> ModelConfig:
    settings = settings or get_settings()
    return ModelConfig(
        model=settings.model_plan,
        reasoning_effort=ReasoningEffort.HIGH if high_effort else settings.effort_plan,
        text_verbosity=settings.verbosity_plan,
        max_output_tokens=16_000,
        temperature=0.3,
        json_schema_name=STRUCTURED_OUTPUT_SCHEMA,
        fallback_chain=FALLBACK_CHAINS[OperatingMode.PLAN.value],
    )


def get_plan_pro_config(settings: BrainSettings | None = None) -> ModelConfig:
    """PLAN profile for severe conflicts and high-risk changes."""
    settings = settings or get_settings()
    return ModelConfig(
        model=settings.model_plan_pro,
        reasoning_effort=ReasoningEffort.HIGH,
        text_verbosity=settings.verbosity_plan,
        max_output_tokens=32_000,
        temperature=0.2,
        json_schema_name=STRUCTURED_OUTPUT_SCHEMA,
        fallback_chain=FALLBACK_CHAINS[PLAN_PRO_KEY],
    )


def get_consult_config(settings: BrainSettings | None = None) -> ModelConfig:
    settings = settings or get_settings()
    return ModelConfig(
        model=settings.model_consult,
        reasoning_effort=settings.effort_consult,
        text_verbosity=settings.verbosity_consult,
        max_output_tokens=4_000,
        temperature=0.5,
        fallback_chain=FALLBACK_CHAINS[OperatingMode.CONSULT.value],
    )


def get_batch_config(settings: BrainSettings | None = None) -> ModelConfig:
    settings = settings or get_settings()
    return ModelConfig(
        model=settings.model_batch,
        reasoning_effort=settings.effort_batch,
        text_verbosity=settings.verbosity_batch,
        max_output_tokens=8_000,
        temperature=0.2,
        json_schema_name=STRUCTURED_OUTPUT_SCHEMA,
        fallback_chain=FALLBACK_CHAINS[OperatingMode.BATCH.value],
    )


def get_long_context_config(settings: BrainSettings | None = None) -> ModelConfig:
    settings = settings or get_settings()
    return ModelConfig(
        model=settings.model_long,
        reasoning_effort=settings.effort_long,
        text_verbosity=settings.verbosity_long,
        max_output_tokens=16_000,
        use_rag=True,
        temperature=0.3,
        json_schema_name=STRUCTURED_OUTPUT_SCHEMA,
        fallback_chain=FALLBACK_CHAINS[OperatingMode.LONG_CONTEXT.value],
    )


_MODE_CONFIG_BUILDERS: dict[OperatingMode, Callable[[BrainSettings], ModelConfig]] = {
    OperatingMode.PLAN: get_plan_config,
    OperatingMode.CONSULT: get_consult_config,
    OperatingMode.BATCH: get_batch_config,
    OperatingMode.LONG_CONTEXT: get_long_context_config,
}


def get_all_mode_configs(settings: BrainSettings | None = None) -> dict[str, ModelConfig]:
    """Return the base config of every mode, keyed by mode name plus PLAN_PRO."""
    settings = settings or get_settings()
    configs = {mode.value: build(settings) for mode, build in _MODE_CONFIG_BUILDERS.items()}
    configs[PLAN_PRO_KEY] = get_plan_pro_config(settings)
    return configs


def resolve_model_config(
    mode: OperatingMode | str,
    risk_level: RiskLevel = RiskLevel.LOW,
    triggered_high_effort: bool = False,
    settings: BrainSettings | None = None,
) -> ModelConfig:
    """Resolve the concrete config for a mode given risk and effort triggers.

    Escalation rules:
    - PLAN with high risk resolves to the PLAN_PRO profile
    - PLAN with a trigger phrase runs at high effort
    - Any other mode raises effort by one rank on high risk or a trigger

    Escalation never lowers effort.

    Args:
        mode: Operating mode. Unknown names resolve as CONSULT.
        risk_level: Estimated risk of the request
        triggered_high_effort: Whether a high-effort trigger phrase matched
        settings: Settings to read models from. Defaults to get_settings().

    Returns:
        Freshly built ModelConfig
    """
    settings = settings or get_settings()
    try:
        mode = OperatingMode(mode)
    except ValueError:
        log.warning("mode_registry.unknown_mode", mode=str(mode))
        mode = OperatingMode.CONSULT

    if mode is OperatingMode.PLAN:
        if risk_level == RiskLevel.HIGH:
            return get_plan_pro_config(settings)
        return get_plan_config(settings, high_effort=triggered_high_effort)

    config = _MODE_CONFIG_BUILDERS[mode](settings)
    if risk_level == RiskLevel.HIGH or triggered_high_effort:
        config = config.model_copy(
            update={"reasoning_effort": config.reasoning_effort.raised()}
        )
    return config


# ------------------------------------------------------------------ #
# Reasoning effort and risk keywords
# ------------------------------------------------------------------ #

PLAN_HIGH_EFFORT_TRIGGERS: Final[tuple[str, ...]] = (
    # Structural complexity
    "conflito",
    "conflict",
    "refatorar",
    "refactor",
    "migração",
    "migration",
    "branching",
    "bifurcação",
    "inconsistente",
    "inconsistent",
    "corrigir lógica",
    "fix logic",
    "contradiz",
    "contradict",
    "múltiplos fluxos",
    "cross-flow",
    "integração complexa",
    "complex integration",
    # Security and irreversible data changes
    "security",
    "segurança",
    "permission",
    "permissão",
    "drop table",
    "delete all",
    "apagar tudo",
    "irreversible",
    "irreversível",
)


def requires_high_reasoning_effort(prompt: str) -> bool:
    """True when the prompt contains any high-effort trigger phrase."""
    lowered = prompt.lower()
    return any(trigger in lowered for trigger in PLAN_HIGH_EFFORT_TRIGGERS)


_HIGH_RISK_PATTERNS: Final = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\b(delete|deletar|apagar|excluir|remove|remover|drop|purge|wipe)\b",
        r"\b(migrate|migration|migrar|migração)\b",
        r"\b(production|produção|prod)\b",
        r"\bbreaking[\s-]?changes?\b",
        r"\b(irreversible|irreversível)\b",
        r"\b(all|todas?|todos)\s+(the\s+|as\s+|os\s+)?(records|data|dados|rules|regras|users|usuários)\b",
    )
)

_MEDIUM_RISK_PATTERNS: Final = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\b(change|alterar|mudar|modify|modificar|update|atualizar|replace|substituir|rename|renomear)\b",
    )
)


def estimate_risk_level(prompt: str) -> RiskLevel:
    """Keyword estimate of how destructive the requested change is."""
    if any(pattern.search(prompt) for pattern in _HIGH_RISK_PATTERNS):
        return RiskLevel.HIGH
    if any(pattern.search(prompt) for pattern in _MEDIUM_RISK_PATTERNS):
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


# ------------------------------------------------------------------ #
# Verbosity and system prompts
# ------------------------------------------------------------------ #


def determine_verbosity(
    mode: OperatingMode,
    context_tokens: int,
    is_handoff: bool = False,
    settings: BrainSettings | None = None,
) -> TextVerbosity:
    """Pick output verbosity for a mode and context size.

    Hand-offs to another agent or person always get high verbosity. Large
    contexts (at or above ``compact_verbosity_ratio`` of the long-context
    threshold) step the mode's verbosity down one rank. BATCH output is
    never more than low.
    """
    if is_handoff:
        return TextVerbosity.HIGH

    settings = settings or get_settings()
    mode = OperatingMode(mode)
    verbosity = {
        OperatingMode.PLAN: settings.verbosity_plan,
        OperatingMode.CONSULT: settings.verbosity_consult,
        OperatingMode.BATCH: settings.verbosity_batch,
        OperatingMode.LONG_CONTEXT: settings.verbosity_long,
    }[mode]

    compact_at = settings.long_context_threshold * settings.compact_verbosity_ratio
    if context_tokens >= compact_at:
        verbosity = verbosity.lowered()
    if mode is OperatingMode.BATCH:
        verbosity = TextVerbosity.LOW
    return verbosity


BRAIN_SYSTEM_PROMPT_BASE: Final = """You are Brain, the assistant of a user-flow design platform.

## YOUR ROLE

You help product managers, designers and developers to:
- Create and optimise user flows
- Define business rules
- Design specs and flow registries
- Answer questions about the product
- Suggest UX improvements

## RESPONSE FORMAT

Always answer with valid JSON following the BrainOutput schema, with an
"assistant_response_md" markdown answer and a list of structured "actions"."""

_MODE_PROMPT_SUFFIXES: Final[dict[OperatingMode, str]] = {
    OperatingMode.PLAN: """## MODE: PLAN

Use this mode to change flow architecture, define or modify business rules,
generate flow specs, refactor pipelines and resolve conflicts.

- Analyse thoroughly before proposing changes
- Emit one structured action per change
- Include a reasoning summary
- Call out risks and impact
- Propose a rollback plan when appropriate""",
    OperatingMode.CONSULT: """## MODE: CONSULT

Use this mode to answer quick questions, explain how something works and
clarify existing rules.

- Be direct and concise
- Do not emit complex actions
- Cite sources when relevant
- Prefer short examples""",
    OperatingMode.BATCH: """## MODE: BATCH

Use this mode to normalise text, generate variations, translate content,
extract lists and standardise labels.

- Focus on the requested transformation
- Keep the output format uniform
- Skip unnecessary explanations""",
    OperatingMode.LONG_CONTEXT: """## MODE: LONG_CONTEXT

The context is very large.

- Prioritise the most relevant information
- Summarise when needed
- Say when something was left out
- Suggest more focused follow-up analyses""",
}


def get_system_prompt_for_mode(mode: OperatingMode | str) -> str:
    try:
        suffix = _MODE_PROMPT_SUFFIXES[OperatingMode(mode)]
    except ValueError:
        suffix = _MODE_PROMPT_SUFFIXES[OperatingMode.CONSULT]
    return f"{BRAIN_SYSTEM_PROMPT_BASE}\n\n{suffix}"
