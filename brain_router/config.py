"""
Router configuration via pydantic-settings.

All settings are read from ``BRAIN_``-prefixed environment variables (or a
.env file in dev). Loading never fails: a malformed value is reported as a
ConfigError in the log and replaced by its documented default.
"""

from __future__ import annotations

from enum import StrEnum
from functools import lru_cache
from typing import Any

import structlog
from pydantic import Field, SecretStr, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from brain_router.errors import ConfigError
from brain_router.schemas import ModelIdentifier, ReasoningEffort, TextVerbosity

log = structlog.get_logger(__name__)


class Environment(StrEnum):
    DEV = "dev"
    PROD = "prod"
    TEST = "test"


class BrainSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="BRAIN_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Application
    # ------------------------------------------------------------------ #
    environment: Environment = Environment.DEV
    log_level: str = Field(default="INFO", description="Minimum structlog level")
    json_logs: bool = False

    # ------------------------------------------------------------------ #
    # Models per mode
    # ------------------------------------------------------------------ #
    model_plan: ModelIdentifier = ModelIdentifier.GPT_4O
    model_plan_pro: ModelIdentifier = Field(
        default=ModelIdentifier.O1,
        description="Model used when a PLAN request is high risk",
    )
    model_consult: ModelIdentifier = ModelIdentifier.GPT_4O_MINI
    model_batch: ModelIdentifier = ModelIdentifier.GPT_4O_MINI
    model_long: ModelIdentifier = ModelIdentifier.GPT_4O

    # ------------------------------------------------------------------ #
    # Reasoning effort / verbosity per mode
    # ------------------------------------------------------------------ #
    effort_plan: ReasoningEffort = ReasoningEffort.MEDIUM
    effort_consult: ReasoningEffort = ReasoningEffort.LOW
    effort_batch: ReasoningEffort = ReasoningEffort.LOW
    effort_long: ReasoningEffort = ReasoningEffort.MEDIUM

    verbosity_plan: TextVerbosity = TextVerbosity.MEDIUM
    verbosity_consult: TextVerbosity = TextVerbosity.LOW
    verbosity_batch: TextVerbosity = TextVerbosity.LOW
    verbosity_long: TextVerbosity = TextVerbosity.MEDIUM

    # ------------------------------------------------------------------ #
    # Routing thresholds
    # ------------------------------------------------------------------ #
    long_context_threshold: int = Field(
        default=250_000,
        ge=1,
        description="Total context tokens above which LONG_CONTEXT is forced",
    )
    uncertainty_band_min: float = Field(default=0.2, ge=0.0, le=1.0)
    uncertainty_band_max: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Deterministic confidence below this value is uncertain",
    )
    min_rubric_score: float = Field(
        default=1.0,
        gt=0.0,
        description="Lowest winning rubric score that can be certain",
    )
    dominance_margin: float = Field(
        default=1.0,
        ge=0.0,
        description="Required lead of the winning mode over the runner-up",
    )
    rag_largest_item_tokens: int = Field(
        default=50_000,
        ge=1,
        description="A single context item above this size requires RAG",
    )
    compact_verbosity_ratio: float = Field(
        default=0.5,
        gt=0.0,
        le=1.0,
        description="Share of the long-context threshold at which verbosity steps down",
    )
    high_complexity_threshold: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="PLAN requests at or above this complexity run at high effort",
    )

    # ------------------------------------------------------------------ #
    # Classifier
    # ------------------------------------------------------------------ #
    classifier_enabled: bool = True
    classifier_min_tokens: int = Field(
        default=300,
        ge=0,
        description="Contexts at or below this size never call the classifier",
    )
    classifier_model: str = Field(
        default="openai/gpt-4o-mini",
        description="Classifier model identifier (LiteLLM format)",
    )
    classifier_timeout_seconds: float = Field(default=4.0, gt=0.0)
    classifier_max_attempts: int = Field(
        default=2,
        ge=1,
        description="Attempts per classifier call on transient upstream errors",
    )
    classifier_cache_ttl_seconds: int = Field(default=300, ge=0)
    classifier_cache_max_entries: int = Field(default=100, ge=1)

    # ------------------------------------------------------------------ #
    # LiteLLM Proxy
    # ------------------------------------------------------------------ #
    litellm_base_url: str = Field(
        default="http://localhost:4000",
        description="LiteLLM proxy base URL",
    )
    litellm_api_key: SecretStr = Field(
        default=SecretStr("sk-dev-key"),
        description="API key for LiteLLM proxy",
    )

    @model_validator(mode="after")
    def _validate_uncertainty_band(self) -> BrainSettings:
        if self.uncertainty_band_min > self.uncertainty_band_max:
            raise ValueError(
                "uncertainty_band_min must not exceed uncertainty_band_max"
            )
        return self

    @property
    def is_prod(self) -> bool:
        return self.environment == Environment.PROD


# Reset together when the band check fails; that error carries no field location
_BAND_FIELDS = frozenset({"uncertainty_band_min", "uncertainty_band_max"})


def _invalid_fields(exc: ValidationError) -> set[str]:
    fields: set[str] = set()
    for error in exc.errors():
        if error["loc"]:
            fields.add(str(error["loc"][0]))
    return fields


def load_env_config(**overrides: Any) -> BrainSettings:
    """Build settings from the environment without ever raising.

    Each invalid field is logged as a ConfigError and pinned to its default
    before retrying. An inverted uncertainty band resets both band fields
    and keeps every other value. Errors that survive that fall back to a
    fully default config.

    Args:
        **overrides: Explicit field values, taking precedence over the
            environment (mainly for tests and embedding callers)

    Returns:
        A valid BrainSettings instance
    """
    pinned: dict[str, Any] = dict(overrides)
    defaulted: set[str] = set()
    for _ in range(len(BrainSettings.model_fields) + 1):
        try:
            return BrainSettings(**pinned)
        except ValidationError as exc:
            for error in exc.errors():
                name = str(error["loc"][0]) if error["loc"] else "<settings>"
                log.warning(
                    "config.invalid_value",
                    field=name,
                    error=str(ConfigError(name, error.get("input"), error["msg"])),
                )
            fresh = (_invalid_fields(exc) & set(BrainSettings.model_fields)) - defaulted
            if not fresh:
                fresh = _BAND_FIELDS - defaulted
            if not fresh:
                break
            for name in fresh:
                pinned[name] = BrainSettings.model_fields[name].default
                defaulted.add(name)

    log.warning("config.using_defaults")
    return BrainSettings.model_construct()


@lru_cache(maxsize=1)
def get_settings() -> BrainSettings:
    """Return cached settings singleton.

    Built once per process and read concurrently afterwards. Tests call
    ``get_settings.cache_clear()`` to pick up environment changes.
    """
    return load_env_config()
