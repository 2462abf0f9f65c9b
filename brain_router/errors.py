"""Error taxonomy for the router.

Only InvalidInput is ever raised out of ``route()``. ConfigError is logged
and replaced by defaults while settings load, and ClassifierUnavailable is
caught by the router, which then keeps the deterministic decision.
"""

from __future__ import annotations


class BrainRouterError(Exception):
    """Base exception for all router failures."""


class ConfigError(BrainRouterError):
    """A configuration value could not be parsed or failed validation."""

    def __init__(self, field: str, value: object, message: str) -> None:
        self.field = field
        self.value = value
        super().__init__(f"Invalid value for {field!r}: {message}")


class ClassifierUnavailable(BrainRouterError):
    """The classifier failed, timed out, was cancelled or returned garbage."""


class InvalidInput(BrainRouterError, ValueError):
    """Raised when the caller passes an empty prompt or unusable stats.

    This is a ValueError subclass so callers validating request payloads can
    handle it alongside other value errors.
    """
