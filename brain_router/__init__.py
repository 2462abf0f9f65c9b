"""Brain router: picks the operating mode, model and inference parameters
for each request of a conversational flow-design agent."""

from __future__ import annotations

from brain_router.errors import (
    BrainRouterError,
    ClassifierUnavailable,
    ConfigError,
    InvalidInput,
)
from brain_router.schemas import (
    ClassifierResult,
    ContextStats,
    ModelConfig,
    ModelIdentifier,
    OperatingMode,
    ReasoningEffort,
    RiskLevel,
    RouteResult,
    TextVerbosity,
)

__version__ = "0.1.0"

__all__ = [
    "BrainRouterError",
    "ClassifierResult",
    "ClassifierUnavailable",
    "ConfigError",
    "ContextStats",
    "InvalidInput",
    "ModelConfig",
    "ModelIdentifier",
    "OperatingMode",
    "ReasoningEffort",
    "RiskLevel",
    "RouteResult",
    "TextVerbosity",
]
