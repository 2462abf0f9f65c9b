"""Brain router - selects mode, model and inference parameters per request.

Pipeline:
1. Deterministic gate (no LLM cost) - rubric scoring and hard thresholds
2. Classifier gate (optional) - cheap model, only for uncertain cases
3. Config resolution - mode, risk and effort triggers to a ModelConfig

The router is a pure function of (prompt, stats, options, settings) apart
from the injected classifier. Every decision is returned as a fully
populated RouteResult and logged with its provenance.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

import structlog
from pydantic import ValidationError

from brain_router.config import BrainSettings, get_settings
from brain_router.errors import InvalidInput
from brain_router.routing.classifier import ClassifierFunction
from brain_router.routing.deterministic import (
    estimate_complexity,
    needs_tool_use,
    requires_structured_output,
    route_deterministic,
)
from brain_router.routing.modes import (
    determine_verbosity,
    estimate_risk_level,
    requires_high_reasoning_effort,
    resolve_model_config,
)
from brain_router.routing.tokens import needs_rag_strategy
from brain_router.schemas import (
    ClassifierResult,
    ContextStats,
    ModelConfig,
    ModelIdentifier,
    OperatingMode,
    RiskLevel,
    RouteResult,
    max_level,
)

log = structlog.get_logger(__name__)


def _validate_prompt(prompt: Any) -> str:
    if not isinstance(prompt, str) or not prompt.strip():
        raise InvalidInput("prompt must be a non-empty string")
    return prompt


def _validate_stats(stats: Any) -> ContextStats:
    if isinstance(stats, ContextStats):
        return stats
    if isinstance(stats, Mapping):
        try:
            return ContextStats.model_validate(dict(stats))
        except ValidationError as exc:
            raise InvalidInput(f"malformed context stats: {exc}") from exc
    raise InvalidInput("context stats are required")


def _validate_mode(mode: Any) -> OperatingMode | None:
    if mode is None:
        return None
    try:
        return OperatingMode(mode.upper() if isinstance(mode, str) else mode)
    except ValueError as exc:
        raise InvalidInput(f"unknown mode: {mode!r}") from exc


def _validate_model(model: Any) -> ModelIdentifier | None:
    if model is None:
        return None
    try:
        return ModelIdentifier(model)
    except ValueError as exc:
        raise InvalidInput(f"unknown model: {model!r}") from exc


class BrainRouter:
    """Routes prompts to an operating mode and model configuration.

    The router holds only read-only settings and an optional default
    classifier; concurrent ``route()`` calls are independent.
    """

    def __init__(
        self,
        settings: BrainSettings | None = None,
        classifier: ClassifierFunction | None = None,
    ) -> None:
        """Initialize router.

        Args:
            settings: Routing settings. Defaults to get_settings().
            classifier: Default classifier used for uncertain prompts.
                Without one, uncertain prompts keep the deterministic guess.
        """
        self._settings = settings or get_settings()
        self._classifier = classifier

    @property
    def settings(self) -> BrainSettings:
        return self._settings

    def _should_classify(self, stats: ContextStats, uncertain: bool, has_classifier: bool) -> bool:
        return (
            uncertain
            and has_classifier
            and self._settings.classifier_enabled
            and stats.total_tokens > self._settings.classifier_min_tokens
        )

    async def route(
        self,
        prompt: str,
        stats: ContextStats | Mapping[str, Any],
        *,
        force_mode: OperatingMode | str | None = None,
        force_model: ModelIdentifier | str | None = None,
        classifier: ClassifierFunction | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> RouteResult:
        """Route a prompt.

        Args:
            prompt: User prompt
            stats: Context statistics (model or raw mapping)
            force_mode: Bypass routing and use this mode
            force_model: Override the resolved model
            classifier: Classifier for this call, overriding the default
            cancel_event: Cancels an in-flight classifier call when set

        Returns:
            Fully populated RouteResult

        Raises:
            InvalidInput: Empty prompt, missing or malformed stats, unknown
                forced mode or model
        """
        prompt = _validate_prompt(prompt)
        stats = _validate_stats(stats)
        forced_mode = _validate_mode(force_mode)
        forced_model = _validate_model(force_model)
        classifier = classifier or self._classifier

        gate = route_deterministic(prompt, stats, forced_mode, settings=self._settings)
        mode = gate.mode
        confidence = gate.confidence
        reason = gate.reason
        rules = list(gate.rules_applied)
        used_classifier = False
        verdict: ClassifierResult | None = None

        if self._should_classify(stats, gate.uncertain, classifier is not None):
            used_classifier = True
            try:
                verdict = await classifier(prompt, stats, cancel_event=cancel_event)
            except Exception as exc:
                log.warning(
                    "brain_router.classifier_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    fallback_mode=mode.value,
                )
                rules.append("classifier_failed_fallback")
                reason = f"{reason}; classifier unavailable, kept deterministic result"
            else:
                if verdict.confidence > confidence and verdict.mode != mode:
                    rules.append("classifier_override")
                    reason = (
                        f"classifier chose {verdict.mode.value} "
                        f"(confidence {verdict.confidence:.2f} > {confidence:.2f})"
                    )
                    if verdict.reasoning:
                        reason = f"{reason}: {verdict.reasoning}"
                    mode = verdict.mode
                    confidence = verdict.confidence
                else:
                    rules.append("classifier_confirmed")
                    reason = (
                        f"{reason}; classifier suggested {verdict.mode.value} "
                        f"(confidence {verdict.confidence:.2f}), kept {mode.value}"
                    )

        risk_level = estimate_risk_level(prompt)
        if verdict is not None and verdict.risk_level is not None:
            risk_level = max_level(risk_level, verdict.risk_level)
        triggered = requires_high_reasoning_effort(prompt)
        if triggered:
            rules.append("high_effort_trigger")
        plan_rubrics = sum(1 for rule in gate.rules_applied if rule.startswith("plan."))
        complexity = estimate_complexity(prompt, plan_rubrics)
        if verdict is not None and verdict.complexity is not None:
            complexity = verdict.complexity
        if (
            mode is OperatingMode.PLAN
            and complexity >= self._settings.high_complexity_threshold
        ):
            triggered = True
            rules.append("high_complexity_trigger")
        if mode is OperatingMode.PLAN and risk_level is RiskLevel.HIGH:
            rules.append("high_risk_use_pro")

        config = resolve_model_config(mode, risk_level, triggered, settings=self._settings)
        use_rag = config.use_rag or should_use_rag(stats, self._settings)
        updates: dict[str, Any] = {
            "text_verbosity": determine_verbosity(
                mode, stats.total_tokens, settings=self._settings
            ),
            "use_rag": use_rag,
        }
        if forced_model is not None:
            updates["model"] = forced_model
            rules.append("forced_model")
        config = config.model_copy(update=updates)

        result = RouteResult(
            mode=mode,
            config=config,
            reason=reason,
            used_classifier=used_classifier,
            was_uncertain=gate.uncertain,
            context_stats=stats,
            confidence=confidence,
            risk_level=risk_level,
            high_effort_triggered=triggered,
            complexity=complexity,
            requires_structured_output=requires_structured_output(prompt, mode),
            needs_tool_use=needs_tool_use(prompt),
            rules_applied=tuple(rules),
            classifier_result=verdict,
        )

        log.info(
            "brain_router.route_selected",
            mode=mode.value,
            model=config.model.value,
            reasoning_effort=config.reasoning_effort.value,
            text_verbosity=config.text_verbosity.value,
            use_rag=config.use_rag,
            confidence=confidence,
            was_uncertain=gate.uncertain,
            used_classifier=used_classifier,
            risk_level=risk_level.value,
            total_tokens=stats.total_tokens,
            rules_applied=list(rules),
        )
        return result


async def route(
    prompt: str,
    stats: ContextStats | Mapping[str, Any],
    *,
    force_mode: OperatingMode | str | None = None,
    force_model: ModelIdentifier | str | None = None,
    classifier: ClassifierFunction | None = None,
    cancel_event: asyncio.Event | None = None,
    settings: BrainSettings | None = None,
) -> RouteResult:
    """Route a prompt with a one-off BrainRouter. See BrainRouter.route."""
    return await BrainRouter(settings).route(
        prompt,
        stats,
        force_mode=force_mode,
        force_model=force_model,
        classifier=classifier,
        cancel_event=cancel_event,
    )


def get_model_config(result: RouteResult) -> ModelConfig:
    return result.config


def should_use_rag(stats: ContextStats, settings: BrainSettings | None = None) -> bool:
    return needs_rag_strategy(stats, settings)


def format_route_result(result: RouteResult) -> str:
    """One-line summary of a decision, for logs and debug panels."""
    parts = [
        f"Mode: {result.mode.value}",
        f"Model: {result.config.model.value}",
        f"Effort: {result.config.reasoning_effort.value}",
        f"Verbosity: {result.config.text_verbosity.value}",
        f"Complexity: {result.complexity * 100:.0f}%",
        f"Risk: {result.risk_level.value}",
        f"Confidence: {result.confidence:.2f}",
    ]
    if result.was_uncertain:
        parts.append("Uncertain")
    if result.used_classifier:
        parts.append("Classifier")
    if result.config.use_rag:
        parts.append("RAG")
    if result.rules_applied:
        parts.append(f"Rules: {', '.join(result.rules_applied)}")
    parts.append(f"Reason: {result.reason}")
    return " | ".join(parts)
