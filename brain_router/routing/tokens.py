"""Token estimation heuristics for routing decisions.

No tokenizer is called. Estimates only need to be good enough to pick a
mode, so everything is derived from character counts:

- English averages ~4 chars/token, Portuguese ~3.5, JSON ~3
- CHARS_PER_TOKEN = 3.5 is the compromise
- JSON payloads are scaled by JSON_OVERHEAD_MULTIPLIER for punctuation and
  charged STRUCTURE_OVERHEAD_TOKENS per nested object or array

Estimators never raise. Values of an unexpected shape count as 0 tokens.
"""

from __future__ import annotations

import json
import math
from collections.abc import Iterable, Mapping
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from brain_router.config import BrainSettings, get_settings
from brain_router.schemas import (
    BrainMessage,
    BusinessRule,
    ContextStats,
    FlowRegistryItem,
    FlowSpec,
    Persona,
    ProductProfile,
    ProjectContext,
)

log = structlog.get_logger(__name__)

CHARS_PER_TOKEN = 3.5
JSON_OVERHEAD_MULTIPLIER = 1.15
# Extra tokens per object or array, for braces, brackets and nesting
STRUCTURE_OVERHEAD_TOKENS = 2
SYSTEM_PROMPT_TOKENS = 1500

# Fixed metadata overhead per entity
BUSINESS_RULE_OVERHEAD = 50
FLOW_SPEC_OVERHEAD = 30
REGISTRY_ITEM_OVERHEAD = 40
PERSONA_OVERHEAD = 50
PRODUCT_PROFILE_OVERHEAD = 80
MESSAGE_OVERHEAD = 30

_EntityT = TypeVar("_EntityT", bound=BaseModel)


def estimate_string_tokens(text: Any) -> int:
    """Estimate tokens in a string. Empty strings and non-strings yield 0."""
    if not isinstance(text, str) or not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _count_containers(value: Any) -> int:
    if isinstance(value, Mapping):
        return 1 + sum(_count_containers(item) for item in value.values())
    if isinstance(value, (list, tuple)):
        return 1 + sum(_count_containers(item) for item in value)
    return 0


def estimate_json_tokens(value: Any) -> int:
    """Estimate tokens of a JSON-serialisable value.

    Serialised length is scaled by JSON_OVERHEAD_MULTIPLIER, then every
    object and array adds STRUCTURE_OVERHEAD_TOKENS.

    ``None`` and values that cannot be serialised yield 0.
    """
    if value is None:
        return 0
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    try:
        encoded = json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return 0
    text_tokens = math.ceil((len(encoded) / CHARS_PER_TOKEN) * JSON_OVERHEAD_MULTIPLIER)
    return text_tokens + STRUCTURE_OVERHEAD_TOKENS * _count_containers(value)


def _coerce(model: type[_EntityT], value: Any) -> _EntityT | None:
    if isinstance(value, model):
        return value
    if isinstance(value, Mapping):
        try:
            return model.model_validate(value)
        except ValidationError:
            log.debug("token_estimator.unparseable_entity", entity=model.__name__)
    return None


def estimate_business_rule_tokens(rule: BusinessRule | Mapping[str, Any]) -> int:
    parsed = _coerce(BusinessRule, rule)
    if parsed is None:
        return 0
    return (
        estimate_string_tokens(parsed.rule_name)
        + estimate_string_tokens(parsed.description)
        + estimate_json_tokens(parsed.conditions)
        + estimate_json_tokens(parsed.actions)
        + BUSINESS_RULE_OVERHEAD
    )


def estimate_flow_spec_tokens(spec: FlowSpec | Mapping[str, Any]) -> int:
    parsed = _coerce(FlowSpec, spec)
    if parsed is None:
        return 0
    return (
        estimate_string_tokens(parsed.spec_name)
        + estimate_json_tokens(parsed.spec_content)
        + FLOW_SPEC_OVERHEAD
    )


def estimate_registry_item_tokens(item: FlowRegistryItem | Mapping[str, Any]) -> int:
    parsed = _coerce(FlowRegistryItem, item)
    if parsed is None:
        return 0
    return (
        estimate_string_tokens(parsed.flow_name)
        + estimate_string_tokens(parsed.flow_type)
        + estimate_json_tokens(parsed.exit_node_ids)
        + REGISTRY_ITEM_OVERHEAD
    )


def estimate_persona_tokens(persona: Persona | Mapping[str, Any]) -> int:
    parsed = _coerce(Persona, persona)
    if parsed is None:
        return 0
    return (
        estimate_string_tokens(parsed.role_name)
        + estimate_json_tokens(parsed.permissions)
        + estimate_json_tokens(parsed.restrictions)
        + estimate_json_tokens(parsed.typical_goals)
        + estimate_json_tokens(parsed.pain_points)
        + PERSONA_OVERHEAD
    )


def estimate_product_profile_tokens(
    profile: ProductProfile | Mapping[str, Any] | None,
) -> int:
    if profile is None:
        return 0
    parsed = _coerce(ProductProfile, profile)
    if parsed is None:
        return 0
    return (
        estimate_string_tokens(parsed.product_name)
        + estimate_string_tokens(parsed.product_type)
        + estimate_string_tokens(parsed.main_value_proposition or "")
        + estimate_string_tokens(parsed.target_audience or "")
        + estimate_json_tokens(parsed.key_features)
        + PRODUCT_PROFILE_OVERHEAD
    )


def estimate_message_tokens(message: BrainMessage | Mapping[str, Any]) -> int:
    parsed = _coerce(BrainMessage, message)
    if parsed is None:
        return 0
    return (
        estimate_string_tokens(parsed.content)
        + estimate_json_tokens(parsed.structured_output)
        + MESSAGE_OVERHEAD
    )


def estimate_prompt_tokens(prompt: str) -> int:
    return estimate_string_tokens(prompt)


def estimate_total_request_tokens(stats: ContextStats, prompt: str) -> int:
    """Context total plus the user's prompt."""
    return stats.total_tokens + estimate_prompt_tokens(prompt)


def coerce_project_context(
    context: ProjectContext | Mapping[str, Any] | None,
) -> ProjectContext:
    if context is None:
        return ProjectContext()
    parsed = _coerce(ProjectContext, context)
    if parsed is None:
        log.warning("token_estimator.unparseable_context")
        return ProjectContext()
    return parsed


def coerce_messages(
    messages: Iterable[BrainMessage | Mapping[str, Any]],
) -> list[BrainMessage]:
    parsed = (_coerce(BrainMessage, message) for message in messages)
    return [message for message in parsed if message is not None]


def calculate_context_stats(
    context: ProjectContext | Mapping[str, Any] | None,
    messages: Iterable[BrainMessage | Mapping[str, Any]] = (),
    threshold: int | None = None,
) -> ContextStats:
    """Compute ContextStats for a project context plus thread history.

    Args:
        context: Project context (model or raw mapping). None counts as empty.
        messages: Thread messages included in the request
        threshold: Long-context ceiling. Defaults to the configured value.

    Returns:
        ContextStats with breakdown, counts, largest item and long-context flag
    """
    if threshold is None:
        threshold = get_settings().long_context_threshold

    project = coerce_project_context(context)
    thread = coerce_messages(messages)

    profile_tokens = estimate_product_profile_tokens(project.product_profile)
    persona_items = [estimate_persona_tokens(p) for p in project.personas]
    rule_items = [estimate_business_rule_tokens(r) for r in project.business_rules]
    registry_items = [estimate_registry_item_tokens(r) for r in project.flow_registry]
    spec_items = [estimate_flow_spec_tokens(s) for s in project.flow_specs]
    message_items = [estimate_message_tokens(m) for m in thread]

    largest_item = max(
        [profile_tokens, *persona_items, *rule_items, *registry_items, *spec_items],
        default=0,
    )

    stats = ContextStats(
        system_prompt_tokens=SYSTEM_PROMPT_TOKENS,
        product_profile_tokens=profile_tokens,
        personas_tokens=sum(persona_items),
        business_rules_tokens=sum(rule_items),
        registry_items_tokens=sum(registry_items),
        flow_specs_tokens=sum(spec_items),
        messages_tokens=sum(message_items),
        business_rules_count=len(rule_items),
        flow_specs_count=len(spec_items),
        flow_registry_count=len(registry_items),
        personas_count=len(persona_items),
        message_count=len(message_items),
        largest_item_tokens=largest_item,
    )
    if stats.total_tokens > threshold:
        stats = stats.model_copy(update={"is_long_context": True})

    log.debug(
        "token_estimator.context_stats",
        total_tokens=stats.total_tokens,
        largest_item_tokens=largest_item,
        is_long_context=stats.is_long_context,
    )
    return stats


def needs_rag_strategy(
    stats: ContextStats,
    settings: BrainSettings | None = None,
) -> bool:
    """Whether the context must be served through retrieval instead of inline."""
    settings = settings or get_settings()
    return (
        stats.is_long_context
        or stats.total_tokens > settings.long_context_threshold
        or stats.largest_item_tokens > settings.rag_largest_item_tokens
    )


# ------------------------------------------------------------------ #
# Presentation helpers
# ------------------------------------------------------------------ #


def format_token_count(tokens: int) -> str:
    """Render a token count for humans: "950 tokens", "12.3k tokens", "1.2M tokens"."""
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.1f}M tokens"
    if tokens >= 1_000:
        return f"{tokens / 1_000:.1f}k tokens"
    return f"{tokens} tokens"


def calculate_usage_percentage(tokens: int, limit: int | None = None) -> int:
    """Share of the long-context ceiling used, as an integer percent capped at 100."""
    if limit is None:
        limit = get_settings().long_context_threshold
    if limit <= 0:
        return 100
    return min(100, round(tokens / limit * 100))
