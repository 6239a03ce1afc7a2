"""Log setup for almanac processes.

Call sites keep using ``logging.getLogger(__name__)``; ``configure_logging``
installs a structlog ``ProcessorFormatter`` on the root logger so every
record, ours or a library's, goes through one processor chain.

Records emitted inside :func:`account_context` carry an ``account`` field,
and records emitted inside an OTel span carry ``trace_id`` / ``span_id``.

Console output is either ``text`` (ConsoleRenderer) or ``json`` (one object
per line).  With a ``log_root``, JSON copies go to ``almanac.log``, and the
HTTP client libraries additionally write to ``http.log`` so token and
calendar request traffic can be inspected without raising the global level.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

_current_account: ContextVar[str | None] = ContextVar("almanac_account", default=None)

# Libraries kept out of the console and almanac.log below WARNING.
_QUIET_LOGGERS = ("httpx", "httpcore", "asyncio")
# Libraries whose records are also copied to http.log.
_HTTP_LOGGERS = ("httpx", "httpcore")

APP_LOG_FILENAME = "almanac.log"
HTTP_LOG_FILENAME = "http.log"


@contextmanager
def account_context(account_id: str | None) -> Iterator[None]:
    """Tag every record emitted inside the block with *account_id*."""
    token = _current_account.set(account_id)
    try:
        yield
    finally:
        _current_account.reset(token)


def add_account_field(logger, method_name, event_dict: dict) -> dict:  # noqa: ARG001
    account_id = _current_account.get()
    if account_id is not None:
        event_dict["account"] = account_id
    return event_dict


def add_trace_ids(logger, method_name, event_dict: dict) -> dict:  # noqa: ARG001
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        event_dict["trace_id"] = trace.format_trace_id(ctx.trace_id)
        event_dict["span_id"] = trace.format_span_id(ctx.span_id)
    return event_dict


def _pre_chain(timestamp_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp_fmt, utc=timestamp_fmt == "iso"),
        add_account_field,
        add_trace_ids,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(
    renderer: structlog.types.Processor, pre_chain: list
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


class _QuietLibraries(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        return record.name.partition(".")[0] not in _QUIET_LOGGERS


def _json_file_handler(path: Path) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), _pre_chain("iso")))
    handler.setLevel(logging.DEBUG)
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
) -> None:
    """Route stdlib and structlog records through one formatter.

    Safe to call more than once; handlers from a previous call are replaced.
    """
    if fmt == "json":
        pre_chain = _pre_chain("iso")
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        pre_chain = _pre_chain("%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(renderer, pre_chain))
    console.addFilter(_QuietLibraries())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root.setLevel(logging.getLevelNamesMapping().get(level.upper(), logging.INFO))

    for name in _HTTP_LOGGERS:
        http_logger = logging.getLogger(name)
        for handler in list(http_logger.handlers):
            http_logger.removeHandler(handler)
            handler.close()

    if log_root is not None:
        directory = Path(log_root).expanduser()
        directory.mkdir(parents=True, exist_ok=True)
        app_handler = _json_file_handler(directory / APP_LOG_FILENAME)
        app_handler.addFilter(_QuietLibraries())
        root.addHandler(app_handler)
        http_handler = _json_file_handler(directory / HTTP_LOG_FILENAME)
        for name in _HTTP_LOGGERS:
            logging.getLogger(name).addHandler(http_handler)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
