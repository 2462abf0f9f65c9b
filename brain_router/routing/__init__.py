"""Request routing: mode, model and inference parameter selection.

The pipeline runs a deterministic gate, consults the optional classifier
gate for uncertain prompts, and resolves the final mode into a ModelConfig
through the mode registry. Token estimation and context reduction helpers
live alongside so callers can compute ContextStats and shrink oversized
contexts when a decision asks for RAG.
"""

from __future__ import annotations

from brain_router.routing.classifier import (
    ClassifierCache,
    LiteLLMClassifierBackend,
    classify_prompt,
    classify_prompt_cached,
    create_classifier_function,
)
from brain_router.routing.deterministic import DeterministicResult, route_deterministic
from brain_router.routing.modes import (
    DEFAULT_THRESHOLDS,
    PLAN_HIGH_EFFORT_TRIGGERS,
    determine_verbosity,
    get_all_mode_configs,
    get_system_prompt_for_mode,
    requires_high_reasoning_effort,
    resolve_model_config,
)
from brain_router.routing.reduction import ContextReduction, reduce_context_to_fit
from brain_router.routing.router import (
    BrainRouter,
    format_route_result,
    get_model_config,
    route,
    should_use_rag,
)
from brain_router.routing.tokens import (
    calculate_context_stats,
    estimate_json_tokens,
    estimate_string_tokens,
    needs_rag_strategy,
)

__all__ = [
    "DEFAULT_THRESHOLDS",
    "PLAN_HIGH_EFFORT_TRIGGERS",
    "BrainRouter",
    "ClassifierCache",
    "ContextReduction",
    "DeterministicResult",
    "LiteLLMClassifierBackend",
    "calculate_context_stats",
    "classify_prompt",
    "classify_prompt_cached",
    "create_classifier_function",
    "determine_verbosity",
    "estimate_json_tokens",
    "estimate_string_tokens",
    "format_route_result",
    "get_all_mode_configs",
    "get_model_config",
    "get_system_prompt_for_mode",
    "needs_rag_strategy",
    "reduce_context_to_fit",
    "requires_high_reasoning_effort",
    "resolve_model_config",
    "route",
    "route_deterministic",
    "should_use_rag",
]
