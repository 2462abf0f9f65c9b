"""structlog setup for the router.

Routing decisions are logged as structured events (``brain_router.*``,
``classifier.*``, ``llm.*``). Hosts call ``configure_logging()`` once at
startup; by default it reads ``json_logs`` and ``log_level`` from
BrainSettings. Identifiers bound through ``bind_request_context`` or the
``request_context`` manager are merged into every event emitted while the
request is routed.

A routing decision in JSON mode:
    {
        "event": "brain_router.route_selected",
        "level": "info",
        "logger": "brain_router.routing.router",
        "timestamp": "2026-02-17T10:30:45.123456Z",
        "request_id": "req_6f1c2a9e0b7d4c3a",
        "project_id": "42",
        "mode": "PLAN",
        "model": "gpt-4o",
        "rules_applied": ["plan.architecture", "dominant_score"]
    }
"""

from __future__ import annotations

import logging
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager

import structlog
from structlog.types import Processor

from brain_router.config import BrainSettings, get_settings


def _resolve_level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def _renderer(json_logs: bool) -> list[Processor]:
    if json_logs:
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [
        structlog.dev.ConsoleRenderer(
            colors=sys.stderr.isatty(),
            exception_formatter=structlog.dev.plain_traceback,
        )
    ]


def configure_logging(
    settings: BrainSettings | None = None,
    *,
    json_logs: bool | None = None,
    log_level: str | None = None,
) -> None:
    """Configure structlog and the stdlib root logger.

    Explicit ``json_logs`` / ``log_level`` win over the settings values.
    Production environments log JSON unless told otherwise.
    Unknown level names fall back to INFO.
    """
    settings = settings or get_settings()
    if json_logs is None:
        json_logs = settings.json_logs or settings.is_prod
    level = _resolve_level(log_level or settings.log_level)

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level, force=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            *_renderer(json_logs),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ------------------------------------------------------------------ #
# Request context
# ------------------------------------------------------------------ #


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:16]}"


def _context_fields(
    request_id: str,
    project_id: str | int | None,
    thread_id: str | uuid.UUID | None,
) -> dict[str, str]:
    fields = {"request_id": request_id}
    if project_id is not None:
        fields["project_id"] = str(project_id)
    if thread_id is not None:
        fields["thread_id"] = str(thread_id)
    return fields


def bind_request_context(
    request_id: str | None = None,
    *,
    project_id: str | int | None = None,
    thread_id: str | uuid.UUID | None = None,
) -> str:
    """Bind request identifiers for the rest of the current context.

    Returns:
        The bound request ID, generated when omitted
    """
    request_id = request_id or new_request_id()
    structlog.contextvars.bind_contextvars(**_context_fields(request_id, project_id, thread_id))
    return request_id


@contextmanager
def request_context(
    request_id: str | None = None,
    *,
    project_id: str | int | None = None,
    thread_id: str | uuid.UUID | None = None,
) -> Iterator[str]:
    """Bind request identifiers for the duration of a ``with`` block.

    Previously bound values are restored on exit.
    """
    request_id = request_id or new_request_id()
    with structlog.contextvars.bound_contextvars(
        **_context_fields(request_id, project_id, thread_id)
    ):
        yield request_id


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
