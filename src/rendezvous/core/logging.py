"""Logging setup for rendezvous processes.

Every ``logging.getLogger(__name__)`` call site is rendered through
structlog's ``ProcessorFormatter``: colored console lines for ``text``, JSON
lines for ``json``. A sync run binds ``user_id`` (and, while one provider is
being fetched, ``provider``) with :func:`sync_context`, so each record says
whose calendar it concerns. With ``log_root`` set, the same records are also
appended to one JSON lines file, ``{log_root}/{service_name}.jsonl``.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import structlog
from opentelemetry import trace

# Third-party loggers that are only interesting at WARNING and above.
QUIET_LOGGERS = ("httpx", "httpcore", "asyncpg")


@contextmanager
def sync_context(user_id: str, provider: str | None = None) -> Iterator[None]:
    """Tag every record logged inside the block with the user and, if given, the provider.

    Bindings live in structlog's contextvars, so a task started inside the
    block keeps them and concurrent tasks never see each other's.
    """
    fields = {"user_id": user_id}
    if provider is not None:
        fields["provider"] = provider
    with structlog.contextvars.bound_contextvars(**fields):
        yield


def add_trace_ids(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Add ``trace_id`` and ``span_id`` while an OTel span is active."""
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def _formatter(
    renderer: structlog.types.Processor, timestamp_fmt: str
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt=timestamp_fmt),
            add_trace_ids,
        ],
    )


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
    service_name: str = "rendezvous",
) -> Path | None:
    """Route the root logger to stderr (and a JSON lines file under *log_root*).

    Safe to call again; earlier handlers are closed and replaced. Returns the
    log file path, or None when only the console is configured.
    """
    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    console = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        console.setFormatter(_formatter(structlog.processors.JSONRenderer(), "iso"))
    else:
        console.setFormatter(_formatter(structlog.dev.ConsoleRenderer(), "%H:%M:%S"))
    root.addHandler(console)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is None:
        return None
    log_root = Path(log_root)
    log_root.mkdir(parents=True, exist_ok=True)
    path = log_root / f"{service_name}.jsonl"
    file_handler = logging.FileHandler(path)
    file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), "iso"))
    root.addHandler(file_handler)
    return path
