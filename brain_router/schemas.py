"""Data model for routing decisions.

Every value object here is a frozen pydantic model, so a payload either
parses into a valid instance at the boundary or fails loudly. Routing code
never mutates these objects; derived variants are produced with
``model_copy(update=...)``.

Two families live in this module:

- Routing types: OperatingMode, ModelIdentifier, the ordered levels
  (ReasoningEffort, TextVerbosity, RiskLevel), ContextStats,
  ClassifierResult, ModelConfig and RouteResult.
- Project context entities fed to the token estimator: ProductProfile,
  Persona, BusinessRule, FlowRegistryItem, FlowSpec, BrainMessage and
  ProjectContext. Fields the estimator does not read are optional so
  partial payloads still parse.
"""

from __future__ import annotations

import hashlib
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class OperatingMode(str, Enum):
    """Behavioural profile selected for a single request."""

    PLAN = "PLAN"  # Structured changes: architecture, rules, specs
    CONSULT = "CONSULT"  # Questions and explanations
    BATCH = "BATCH"  # Repetitive transformations
    LONG_CONTEXT = "LONG_CONTEXT"  # Context too large for the normal path


class ModelIdentifier(str, Enum):
    """Backend models the router may select."""

    GPT_5_2 = "gpt-5.2"
    GPT_5_2_PRO = "gpt-5.2-pro"
    GPT_5_MINI = "gpt-5-mini"
    GPT_5_NANO = "gpt-5-nano"
    GPT_4_1 = "gpt-4.1"
    GPT_4_1_MINI = "gpt-4.1-mini"
    GPT_4_1_NANO = "gpt-4.1-nano"
    GPT_4O = "gpt-4o"
    GPT_4O_MINI = "gpt-4o-mini"
    O3 = "o3"
    O3_MINI = "o3-mini"
    O1 = "o1"
    O1_MINI = "o1-mini"


class ModelTier(str, Enum):
    """Cost/capability tier of a model."""

    NANO = "nano"
    MINI = "mini"
    STANDARD = "standard"
    PRO = "pro"


MODEL_TIERS: dict[ModelIdentifier, ModelTier] = {
    ModelIdentifier.GPT_5_2: ModelTier.STANDARD,
    ModelIdentifier.GPT_5_2_PRO: ModelTier.PRO,
    ModelIdentifier.GPT_5_MINI: ModelTier.MINI,
    ModelIdentifier.GPT_5_NANO: ModelTier.NANO,
    ModelIdentifier.GPT_4_1: ModelTier.STANDARD,
    ModelIdentifier.GPT_4_1_MINI: ModelTier.MINI,
    ModelIdentifier.GPT_4_1_NANO: ModelTier.NANO,
    ModelIdentifier.GPT_4O: ModelTier.STANDARD,
    ModelIdentifier.GPT_4O_MINI: ModelTier.MINI,
    ModelIdentifier.O3: ModelTier.PRO,
    ModelIdentifier.O3_MINI: ModelTier.MINI,
    ModelIdentifier.O1: ModelTier.PRO,
    ModelIdentifier.O1_MINI: ModelTier.MINI,
}


class _OrderedLevel(str, Enum):
    """Base for low < medium < high enums.

    Members are ranked by declaration order.
    """

    @property
    def rank(self) -> int:
        return list(type(self)).index(self)

    def raised(self) -> _OrderedLevel:
        """Return the next level up, saturating at the highest."""
        members = list(type(self))
        return members[min(self.rank + 1, len(members) - 1)]

    def lowered(self) -> _OrderedLevel:
        """Return the next level down, saturating at the lowest."""
        members = list(type(self))
        return members[max(self.rank - 1, 0)]


class ReasoningEffort(_OrderedLevel):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TextVerbosity(_OrderedLevel):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RiskLevel(_OrderedLevel):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def max_level(first: _OrderedLevel, second: _OrderedLevel) -> _OrderedLevel:
    """Return the higher-ranked of two levels of the same enum."""
    return first if first.rank >= second.rank else second


# ------------------------------------------------------------------ #
# Context statistics
# ------------------------------------------------------------------ #

TOKEN_BREAKDOWN_FIELDS: tuple[str, ...] = (
    "system_prompt_tokens",
    "business_rules_tokens",
    "flow_specs_tokens",
    "registry_items_tokens",
    "personas_tokens",
    "product_profile_tokens",
    "messages_tokens",
    "other_tokens",
)

# Each breakdown field is rounded up independently, so a caller-supplied
# total may differ from the sum by at most one token per field.
TOKEN_ROUNDING_SLACK = len(TOKEN_BREAKDOWN_FIELDS)


class ContextStats(BaseModel):
    """Token accounting for one request's assembled context.

    ``total_tokens`` is computed from the breakdown when omitted. When the
    caller supplies it, it must agree with the breakdown sum within
    ``TOKEN_ROUNDING_SLACK``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    system_prompt_tokens: int = Field(default=0, ge=0)
    business_rules_tokens: int = Field(default=0, ge=0)
    flow_specs_tokens: int = Field(default=0, ge=0)
    registry_items_tokens: int = Field(default=0, ge=0)
    personas_tokens: int = Field(default=0, ge=0)
    product_profile_tokens: int = Field(default=0, ge=0)
    messages_tokens: int = Field(default=0, ge=0)
    other_tokens: int = Field(
        default=0,
        ge=0,
        description="Tokens supplied without source attribution",
    )

    business_rules_count: int = Field(default=0, ge=0)
    flow_specs_count: int = Field(default=0, ge=0)
    flow_registry_count: int = Field(default=0, ge=0)
    personas_count: int = Field(default=0, ge=0)
    message_count: int = Field(default=0, ge=0)

    largest_item_tokens: int = Field(default=0, ge=0)
    is_long_context: bool = False
    total_tokens: int = Field(default=0, ge=0)

    @model_validator(mode="before")
    @classmethod
    def _fill_total(cls, data: Any) -> Any:
        if not isinstance(data, dict) or data.get("total_tokens") is not None:
            return data
        try:
            total = sum(int(data.get(name) or 0) for name in TOKEN_BREAKDOWN_FIELDS)
        except (TypeError, ValueError):
            # Field validation reports the offending breakdown value
            return data
        return {**data, "total_tokens": total}

    @model_validator(mode="after")
    def _check_total(self) -> ContextStats:
        breakdown_sum = sum(self.breakdown.values())
        if abs(self.total_tokens - breakdown_sum) > TOKEN_ROUNDING_SLACK:
            raise ValueError(
                f"total_tokens={self.total_tokens} does not match breakdown sum "
                f"{breakdown_sum} (allowed slack {TOKEN_ROUNDING_SLACK})"
            )
        return self

    @classmethod
    def from_total(cls, total_tokens: int, **fields: Any) -> ContextStats:
        """Build stats for callers that only know an overall token count."""
        return cls(other_tokens=total_tokens, total_tokens=total_tokens, **fields)

    @property
    def breakdown(self) -> dict[str, int]:
        return {name: getattr(self, name) for name in TOKEN_BREAKDOWN_FIELDS}

    def fingerprint(self) -> str:
        """Stable SHA-256 digest of the stats, used in cache keys."""
        return hashlib.sha256(self.model_dump_json().encode("utf-8")).hexdigest()


# ------------------------------------------------------------------ #
# Classifier / routing output
# ------------------------------------------------------------------ #


class ClassifierResult(BaseModel):
    """Validated output of the probabilistic classifier."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    mode: OperatingMode
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    risk_level: RiskLevel | None = None
    complexity: float | None = Field(default=None, ge=0.0, le=1.0)
    requires_structured_output: bool | None = None
    needs_tool_use: bool | None = None

    @field_validator("mode", mode="before")
    @classmethod
    def _normalise_mode(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("risk_level", mode="before")
    @classmethod
    def _normalise_risk(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower() or None
        return value


class ModelConfig(BaseModel):
    """Concrete inference parameters for one routing decision."""

    model_config = ConfigDict(frozen=True)

    model: ModelIdentifier
    reasoning_effort: ReasoningEffort
    text_verbosity: TextVerbosity
    max_output_tokens: int = Field(ge=1)
    use_rag: bool = False
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    json_schema_name: str | None = None
    fallback_chain: tuple[ModelIdentifier, ...] = ()

    @property
    def tier(self) -> ModelTier:
        return MODEL_TIERS[self.model]


class RouteResult(BaseModel):
    """Final routing decision with its provenance.

    Attributes:
        mode: Selected operating mode
        config: Resolved model configuration for the mode
        reason: Human-readable explanation of the decision
        used_classifier: True when the classifier was consulted, even if it
            failed or did not override the deterministic mode
        was_uncertain: True when the deterministic gate was not confident
        context_stats: Stats the decision was made on
        confidence: Confidence of the winning gate
        rules_applied: Ordered names of the rules that produced the decision
    """

    model_config = ConfigDict(frozen=True)

    mode: OperatingMode
    config: ModelConfig
    reason: str
    used_classifier: bool
    was_uncertain: bool
    context_stats: ContextStats
    confidence: float = Field(ge=0.0, le=1.0)
    risk_level: RiskLevel = RiskLevel.LOW
    high_effort_triggered: bool = False
    complexity: float = Field(default=0.5, ge=0.0, le=1.0)
    requires_structured_output: bool = False
    needs_tool_use: bool = False
    rules_applied: tuple[str, ...] = ()
    classifier_result: ClassifierResult | None = None


# ------------------------------------------------------------------ #
# Project context entities
# ------------------------------------------------------------------ #


class _Entity(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class ProductProfile(_Entity):
    id: int | None = None
    project_id: int | None = None
    product_name: str = ""
    product_type: str = ""
    industry: str | None = None
    business_model: str | None = None
    main_value_proposition: str | None = None
    key_features: list[str] = Field(default_factory=list)
    target_audience: str | None = None
    maturity_stage: str | None = None


class Persona(_Entity):
    id: int | None = None
    project_id: int | None = None
    role_id: str = ""
    role_name: str = ""
    role_scope: str = ""
    permissions: list[str] = Field(default_factory=list)
    restrictions: list[str] = Field(default_factory=list)
    typical_goals: list[str] = Field(default_factory=list)
    pain_points: list[str] = Field(default_factory=list)


class BusinessRule(_Entity):
    id: int | None = None
    project_id: int | None = None
    rule_name: str = ""
    rule_type: str = ""
    description: str = ""
    conditions: Any = None
    actions: Any = None
    status: Literal["draft", "approved", "deprecated"] = "draft"
    version: int = 1


class FlowRegistryItem(_Entity):
    id: int | None = None
    project_id: int | None = None
    flow_id: str = ""
    flow_name: str = ""
    flow_type: str = ""
    entry_node_id: str = ""
    exit_node_ids: list[str] = Field(default_factory=list)
    node_count: int = 0


class FlowSpec(_Entity):
    id: int | None = None
    project_id: int | None = None
    flow_id: str = ""
    spec_name: str = ""
    spec_content: Any = None
    version: int = 1
    is_latest: bool = True


class BrainMessage(_Entity):
    id: str | None = None
    thread_id: str | None = None
    role: Literal["user", "assistant", "system"] = "user"
    content: str = ""
    structured_output: Any = None


class ProjectContext(_Entity):
    project_id: int | None = None
    product_profile: ProductProfile | None = None
    personas: list[Persona] = Field(default_factory=list)
    business_rules: list[BusinessRule] = Field(default_factory=list)
    flow_registry: list[FlowRegistryItem] = Field(default_factory=list)
    flow_specs: list[FlowSpec] = Field(default_factory=list)
