"""Structured logging for birthday-sync.

Uses structlog's ProcessorFormatter to upgrade every plain
``logging.getLogger(__name__)`` call site. Two output formats:

- ``text``: colored, human-readable console output (dev default)
- ``json``: machine-parseable JSON lines (production / log aggregation)

The record and owner currently being synchronized are carried in a
ContextVar and injected into every log line, together with the OTel trace
context of the current span.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Any

import structlog
from opentelemetry import trace

# ---------------------------------------------------------------------------
# Sync context (asyncio-safe via ContextVar)
# ---------------------------------------------------------------------------

_sync_context: ContextVar[dict[str, str] | None] = ContextVar("sync_context", default=None)


@contextmanager
def sync_context(**values: str | None) -> Iterator[None]:
    """Bind sync identifiers (``record_id``, ``owner_id`` ...) for the enclosed block."""
    current = dict(_sync_context.get() or {})
    current.update({key: value for key, value in values.items() if value is not None})
    token = _sync_context.set(current)
    try:
        yield
    finally:
        _sync_context.reset(token)


def get_sync_context() -> dict[str, str]:
    return dict(_sync_context.get() or {})


# ---------------------------------------------------------------------------
# Processors
# ---------------------------------------------------------------------------


def add_sync_context(_logger: Any, _method: str, event_dict: dict) -> dict:
    """Inject the bound sync identifiers without overriding explicit values."""
    for key, value in (_sync_context.get() or {}).items():
        event_dict.setdefault(key, value)
    return event_dict


def add_otel_context(_logger: Any, _method: str, event_dict: dict) -> dict:
    """Attach ``trace_id``/``span_id`` when a recording span is active."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = trace.format_trace_id(span_context.trace_id)
        event_dict["span_id"] = trace.format_span_id(span_context.span_id)
    return event_dict


_QUIET_LOGGERS = ("httpx", "httpcore", "asyncpg")

_LEVELS = frozenset({"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"})

_RENDERERS = {
    "text": (structlog.dev.ConsoleRenderer, "%H:%M:%S"),
    "json": (structlog.processors.JSONRenderer, "iso"),
}


def _pre_chain(timestamp: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp),
        add_sync_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _handler(handler: logging.Handler, fmt: str) -> logging.Handler:
    renderer_cls, timestamp = _RENDERERS[fmt]
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_pre_chain(timestamp),
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer_cls(),
            ],
        )
    )
    return handler


def configure_logging(level: str = "INFO", fmt: str = "text", log_file: Path | None = None) -> None:
    """Route stdlib and structlog output through one set of handlers.

    ``fmt`` selects the stderr renderer (``text`` or ``json``). When
    ``log_file`` is given, a JSON-lines copy of every record at DEBUG and
    above is appended there as well. Calling this again replaces the
    previously installed handlers.
    """
    if fmt not in _RENDERERS:
        raise ValueError(f"unknown log format {fmt!r}; expected one of {sorted(_RENDERERS)}")

    handlers = [_handler(logging.StreamHandler(sys.stderr), fmt)]
    if log_file is not None:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = _handler(logging.FileHandler(path), "json")
        file_handler.setLevel(logging.DEBUG)
        handlers.append(file_handler)

    root = logging.getLogger()
    root.handlers[:] = handlers
    root.setLevel(level.upper() if level.upper() in _LEVELS else "INFO")
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            *_pre_chain(_RENDERERS[fmt][1]),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
