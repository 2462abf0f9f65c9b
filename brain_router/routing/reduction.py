"""Context reduction strategies.

When an assembled context is over budget, named strategies are applied in
order until the re-estimated total fits. Each strategy is a pure function
of (context, messages) returning a reduced pair; nothing is mutated.

Strategies:
- approved_rules_only: drop draft and deprecated business rules
- latest_specs_only: keep only the latest version of each flow spec
- message_limit_<N>: keep the N most recent thread messages
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from brain_router.routing.tokens import (
    calculate_context_stats,
    coerce_messages,
    coerce_project_context,
)
from brain_router.schemas import BrainMessage, ProjectContext

log = structlog.get_logger(__name__)

ReductionFn = Callable[
    [ProjectContext, list[BrainMessage]],
    tuple[ProjectContext, list[BrainMessage]],
]

DEFAULT_STRATEGIES: tuple[str, ...] = ("approved_rules_only", "latest_specs_only")
MESSAGE_LIMITS: tuple[int, ...] = (20, 10, 5)

_MESSAGE_LIMIT_RE = re.compile(r"^message_limit_(\d+)$")


@dataclass(frozen=True)
class ReductionStrategy:
    """A named context reduction step.

    Attributes:
        name: Registry key, reported in ContextReduction.strategies_applied
        description: Human-readable summary
        estimated_reduction: Rough expected saving, in percent
        apply: Pure reduction function
    """

    name: str
    description: str
    estimated_reduction: int
    apply: ReductionFn


@dataclass(frozen=True)
class ContextReduction:
    """Outcome of reduce_context_to_fit."""

    context: ProjectContext
    messages: list[BrainMessage]
    strategies_applied: list[str] = field(default_factory=list)
    final_tokens: int = 0


def _approved_rules_only(
    context: ProjectContext, messages: list[BrainMessage]
) -> tuple[ProjectContext, list[BrainMessage]]:
    rules = [rule for rule in context.business_rules if rule.status == "approved"]
    return context.model_copy(update={"business_rules": rules}), messages


def _latest_specs_only(
    context: ProjectContext, messages: list[BrainMessage]
) -> tuple[ProjectContext, list[BrainMessage]]:
    specs = [spec for spec in context.flow_specs if spec.is_latest]
    return context.model_copy(update={"flow_specs": specs}), messages


def create_message_limit_strategy(max_messages: int) -> ReductionStrategy:
    """Build a strategy keeping the ``max_messages`` most recent messages."""
    if max_messages < 0:
        raise ValueError("max_messages cannot be negative")

    def _limit(
        context: ProjectContext, messages: list[BrainMessage]
    ) -> tuple[ProjectContext, list[BrainMessage]]:
        if max_messages == 0:
            return context, []
        return context, messages[-max_messages:]

    return ReductionStrategy(
        name=f"message_limit_{max_messages}",
        description=f"Keep the {max_messages} most recent messages",
        estimated_reduction=20,
        apply=_limit,
    )


REDUCTION_STRATEGIES: dict[str, ReductionStrategy] = {
    "approved_rules_only": ReductionStrategy(
        name="approved_rules_only",
        description="Include only business rules with status 'approved'",
        estimated_reduction=30,
        apply=_approved_rules_only,
    ),
    "latest_specs_only": ReductionStrategy(
        name="latest_specs_only",
        description="Include only the latest version of each flow spec",
        estimated_reduction=40,
        apply=_latest_specs_only,
    ),
}


def get_reduction_strategy(name: str) -> ReductionStrategy | None:
    """Look up a strategy by name, including parametric ``message_limit_<N>``."""
    if name in REDUCTION_STRATEGIES:
        return REDUCTION_STRATEGIES[name]
    match = _MESSAGE_LIMIT_RE.match(name)
    if match:
        return create_message_limit_strategy(int(match.group(1)))
    return None


def reduce_context_to_fit(
    context: ProjectContext | Mapping[str, Any] | None,
    messages: Iterable[BrainMessage | Mapping[str, Any]],
    target_tokens: int,
    strategies: Sequence[str] | None = None,
) -> ContextReduction:
    """Apply reduction strategies until the context fits ``target_tokens``.

    Named strategies run first, in order, each only while the context is
    still over budget. If that is not enough, message history is limited to
    the 20, then 10, then 5 most recent messages.

    Args:
        context: Project context to reduce
        messages: Thread history, oldest first
        target_tokens: Token budget to fit into
        strategies: Strategy names. Defaults to DEFAULT_STRATEGIES.

    Returns:
        ContextReduction with the reduced inputs, applied names and final estimate
    """
    current_context = coerce_project_context(context)
    current_messages = coerce_messages(messages)
    applied: list[str] = []

    def _total() -> int:
        return calculate_context_stats(
            current_context, current_messages, threshold=target_tokens
        ).total_tokens

    total = _total()
    if total <= target_tokens:
        return ContextReduction(current_context, current_messages, applied, total)

    for name in strategies if strategies is not None else DEFAULT_STRATEGIES:
        if total <= target_tokens:
            break
        strategy = get_reduction_strategy(name)
        if strategy is None:
            log.warning("context_reduction.unknown_strategy", strategy=name)
            continue
        current_context, current_messages = strategy.apply(current_context, current_messages)
        applied.append(strategy.name)
        total = _total()

    for limit in MESSAGE_LIMITS:
        if total <= target_tokens:
            break
        strategy = create_message_limit_strategy(limit)
        current_context, current_messages = strategy.apply(current_context, current_messages)
        applied.append(strategy.name)
        total = _total()

    log.info(
        "context_reduction.done",
        target_tokens=target_tokens,
        final_tokens=total,
        strategies_applied=applied,
        fits=total <= target_tokens,
    )
    return ContextReduction(current_context, current_messages, applied, total)
