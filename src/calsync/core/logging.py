"""Structured logging for calsync.

Modules keep logging through ``logging.getLogger(__name__)``; the handlers
installed by ``configure_logging`` format every record with structlog.
``text`` renders coloured console lines, ``json`` renders one object per line.

Each record carries the feed being synced (``feed_id``) and the active
OpenTelemetry ``trace_id``/``span_id``. Bearer tokens, delta/skip tokens and
JSON-style secrets are scrubbed from every string field before rendering.

With ``log_root`` set, JSON copies are written to::

    {log_root}/calsync/{log_name}.log   calsync loggers
    {log_root}/http/{log_name}.log      httpx / httpcore / asyncpg / alembic
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from enum import StrEnum
from pathlib import Path
from typing import Any

import structlog
from opentelemetry import trace

from calsync.errors import redact_credentials

EventDict = dict[str, Any]

_current_feed: ContextVar[str | None] = ContextVar("calsync_current_feed", default=None)

TRANSPORT_LOGGERS = ("httpx", "httpcore", "asyncpg", "alembic.runtime.migration")

_APP_DIR = "calsync"
_TRANSPORT_DIR = "http"
_NO_TRACE = "0" * 32
_NO_SPAN = "0" * 16


class LogFormat(StrEnum):
    text = "text"
    json = "json"


def set_feed_context(feed_id: str | None) -> None:
    _current_feed.set(feed_id)


def get_feed_context() -> str | None:
    return _current_feed.get()


@contextmanager
def feed_context(feed_id: str) -> Iterator[None]:
    """Tag records emitted inside the block with *feed_id*; the outer value comes back after."""
    token = _current_feed.set(feed_id)
    try:
        yield
    finally:
        _current_feed.reset(token)


# ---------------------------------------------------------------------------
# Processors
# ---------------------------------------------------------------------------


def inject_feed_id(_logger: Any, _method: str, event_dict: EventDict) -> EventDict:
    event_dict["feed_id"] = _current_feed.get()
    return event_dict


def inject_trace_ids(_logger: Any, _method: str, event_dict: EventDict) -> EventDict:
    """Copy the current span's ids, zero-filled outside a recording span."""
    ctx = trace.get_current_span().get_span_context()
    valid = bool(ctx and ctx.trace_id)
    event_dict["trace_id"] = format(ctx.trace_id, "032x") if valid else _NO_TRACE
    event_dict["span_id"] = format(ctx.span_id, "016x") if valid else _NO_SPAN
    return event_dict


def scrub_credentials(_logger: Any, _method: str, event_dict: EventDict) -> EventDict:
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = redact_credentials(value)
    return event_dict


def _pre_chain(timestamp_format: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp_format),
        inject_feed_id,
        inject_trace_ids,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(
    renderer: structlog.types.Processor,
    pre_chain: list[structlog.types.Processor],
) -> structlog.stdlib.ProcessorFormatter:
    # Scrubbing runs last before rendering so values added by any processor are covered.
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            scrub_credentials,
            renderer,
        ],
        foreign_pre_chain=pre_chain,
    )


def _json_file_handler(path: Path) -> logging.FileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), _pre_chain("iso")))
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
    log_name: str = "calsync",
) -> None:
    """Install calsync's handlers on the root logger, replacing any present.

    Parameters
    ----------
    level:
        Root level name, case-insensitive; unknown names fall back to INFO.
    fmt:
        ``"text"`` or ``"json"`` for the stderr handler. File output is always JSON.
    log_root:
        Directory for the JSON log files; no files are written when ``None``.
    log_name:
        Stem of the log file names.
    """
    if LogFormat(fmt) is LogFormat.json:
        pre_chain = _pre_chain("iso")
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        pre_chain = _pre_chain("%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(_formatter(renderer, pre_chain))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(stderr_handler)
    root.setLevel(logging.getLevelNamesMapping().get(level.upper(), logging.INFO))

    transport_loggers = [logging.getLogger(name) for name in TRANSPORT_LOGGERS]
    for transport in transport_loggers:
        transport.setLevel(logging.WARNING)

    if log_root is not None:
        root_dir = Path(log_root)
        (root_dir / _TRANSPORT_DIR).mkdir(parents=True, exist_ok=True)
        root.addHandler(_json_file_handler(root_dir / _APP_DIR / f"{log_name}.log"))
        transport_file = _json_file_handler(root_dir / _TRANSPORT_DIR / f"{log_name}.log")
        for transport in transport_loggers:
            transport.addHandler(transport_file)

    # structlog.get_logger() callers share the stdlib handlers above.
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
