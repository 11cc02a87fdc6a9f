"""changegate — Log setup.

Every component logs through structlog with snake_case event names and
keyword fields.  Records are rendered by one stdlib formatter so that
third-party loggers (httpx, aiosqlite) come out in the same shape.  Each
record carries its level, logger name and an ISO timestamp.  Inside an
orchestration run it also carries the change set id, run id and node that
the current task bound with ``bind_run_context``.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from typing import Any

import structlog
from structlog.types import EventDict, WrappedLogger

# Context variables, injected into log records when set.
_ctx_change_set_id: ContextVar[str | None] = ContextVar("change_set_id", default=None)
_ctx_run_id: ContextVar[str | None] = ContextVar("run_id", default=None)
_ctx_node: ContextVar[str | None] = ContextVar("node", default=None)


def bind_run_context(
    change_set_id: str | None = None,
    run_id: str | None = None,
    node: str | None = None,
) -> None:
    """Attach run identifiers to every record logged from this task onward.

    Arguments left as None keep whatever value was bound before.
    """
    if change_set_id is not None:
        _ctx_change_set_id.set(change_set_id)
    if run_id is not None:
        _ctx_run_id.set(run_id)
    if node is not None:
        _ctx_node.set(node)


def clear_run_context() -> None:
    _ctx_change_set_id.set(None)
    _ctx_run_id.set(None)
    _ctx_node.set(None)


# ---------------------------------------------------------------------------
# Custom processors
# ---------------------------------------------------------------------------


def _inject_context_vars(
    _logger: WrappedLogger, _method: str, event_dict: EventDict
) -> EventDict:
    """Copy the bound run identifiers into the record unless the call set them."""
    if (change_set_id := _ctx_change_set_id.get()) is not None:
        event_dict.setdefault("change_set_id", change_set_id)
    if (run_id := _ctx_run_id.get()) is not None:
        event_dict.setdefault("run_id", run_id)
    if (node := _ctx_node.get()) is not None:
        event_dict.setdefault("node", node)
    return event_dict


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def configure_logging(
    level: str = "info",
    format: str = "console",
    log_file: str | None = None,
) -> None:
    """Route structlog and stdlib records to stderr (and *log_file* if given).

    The CLI calls this after settings are loaded; calling it again replaces
    the root handlers.

    Args:
        level:    Minimum level name, e.g. ``"info"``.
        format:   ``"json"`` emits one JSON object per line; anything else
                  uses the coloured key=value console renderer.
        log_file: Extra destination receiving the same rendered lines.
    """
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        _inject_context_vars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handlers: list[logging.Handler] = []

    # stdout is reserved for command output.
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    root_logger.handlers = handlers
    root_logger.setLevel(level.upper())

    for noisy in ("httpx", "httpcore", "asyncio", "aiosqlite"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Module-level logger; pass ``__name__``.

    Usage::

        log = get_logger(__name__)
        log.info("run_started", change_set_id="feature-x", node_count=5)
    """
    return structlog.get_logger(name)
