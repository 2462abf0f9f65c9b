"""Telemetry package: structured logging for routing decisions."""

from __future__ import annotations

from brain_router.telemetry.logging import (
    bind_request_context,
    clear_context,
    configure_logging,
    new_request_id,
    request_context,
)

__all__ = [
    "bind_request_context",
    "clear_context",
    "configure_logging",
    "new_request_id",
    "request_context",
]
