"""Structured logging with context propagation.

Provides context-aware structured logging for the gateway:
- Request context binding (request_id, server_id, tool) via ContextVar
- Human-readable dev output, JSON Lines for production
- Capture renderer for asserting on emitted events in tests

Quick Start:
    >>> from toolbridge.observability import get_logger, configure_logging
    >>>
    >>> # Configure (once at startup)
    >>> configure_logging(format="console")  # or "json" for production
    >>>
    >>> log = get_logger("toolbridge.router")
    >>> log.info("invoke.completed", tool="create_task", latency_ms=12.5)
    >>>
    >>> # Bind request context for everything logged in scope
    >>> with log_context(request_id="abc123", server_id="jira"):
    ...     log.warning("retry.scheduled", attempt=1, delay=0.8)
"""

from __future__ import annotations

import logging
import sys
import threading
import time
import traceback
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol, TextIO, runtime_checkable

import orjson

from toolbridge.foundation.errors import JsonDict

# Scoped context, task-local under asyncio
_log_context: ContextVar[JsonDict] = ContextVar("log_context", default={})


# ─────────────────────────────────────────────────────────────────────────────
# Core Logger
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(slots=True)
class BoundLogger:
    """Logger carrying a fixed context; ``bind`` derives a child with more keys.

    ``_level`` of None defers to the globally configured level at emit time,
    so module-level loggers follow later ``configure_logging`` calls.

    Example:
        >>> log = BoundLogger(context={"component": "pool"})
        >>> log.info("pool.reclaimed", server_id="jira", clients=1)
        # => 10:30:45.120 info  pool.reclaimed @jira clients=1 component="pool"
    """

    context: JsonDict = field(default_factory=dict)
    _renderer: LogRenderer | None = None
    _level: int | None = None

    def bind(self, **kw: Any) -> BoundLogger:
        return BoundLogger({**self.context, **kw}, self._renderer, self._level)

    def is_enabled_for(self, level: int) -> bool:
        return level >= (self._level if self._level is not None else _state.level)

    def _log(self, level: int, event: str, **kw: Any) -> None:
        if not self.is_enabled_for(level):
            return
        # Call-site keys win over bound keys, which win over the scoped context
        merged = _redact({**_log_context.get(), **self.context, **kw})
        (self._renderer or _state.renderer).render(LogEntry(time.time(), _level_name(level), event, merged))

    def debug(self, event: str, **kw: Any) -> None: self._log(logging.DEBUG, event, **kw)
    def info(self, event: str, **kw: Any) -> None: self._log(logging.INFO, event, **kw)
    def warning(self, event: str, **kw: Any) -> None: self._log(logging.WARNING, event, **kw)
    def error(self, event: str, **kw: Any) -> None: self._log(logging.ERROR, event, **kw)

    def exception(self, event: str, **kw: Any) -> None:
        self._log(logging.ERROR, event, exc_info=traceback.format_exc(), **kw)


@dataclass(slots=True)
class LogEntry:
    """One emitted event with its merged, redacted context."""

    timestamp: float
    level: str
    event: str
    context: JsonDict

    @property
    def when(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, tz=UTC)


# ─────────────────────────────────────────────────────────────────────────────
# Renderers
# ─────────────────────────────────────────────────────────────────────────────


@runtime_checkable
class LogRenderer(Protocol):
    """Receives every entry that passes the level check."""

    def render(self, entry: LogEntry) -> None: ...


@dataclass(slots=True)
class ConsoleRenderer:
    """Single-line human output for development.

    Request coordinates are pulled out of the context into a prefix so
    interleaved calls stay readable:

        10:30:45.120 warn  retry.scheduled @jira/create_task #3f9c1a2b attempt=1 delay=0.8
    """

    output: TextIO = field(default_factory=lambda: sys.stderr)
    colors: bool | None = None
    show_timestamp: bool = True

    def __post_init__(self) -> None:
        if self.colors is None:
            self.colors = bool(getattr(self.output, "isatty", lambda: False)())

    def render(self, entry: LogEntry) -> None:
        paint = _paint if self.colors else _plain
        ctx = dict(entry.context)
        trace = ctx.pop("exc_info", None)
        head = [paint("dim", entry.when.strftime("%H:%M:%S.%f")[:-3])] if self.show_timestamp else []
        head.append(paint(_LEVEL_STYLE.get(entry.level, "dim"), f"{_LEVEL_TAG.get(entry.level, entry.level):<5}"))
        head.append(paint("bold", entry.event))
        if where := _route(ctx):
            head.append(paint("cyan", where))
        head += [f"{k}={_show(v)}" for k, v in sorted(ctx.items())]
        print(" ".join(head), file=self.output)
        if trace:
            print(paint("red", str(trace)), file=self.output)


@dataclass(slots=True)
class JsonRenderer:
    """JSON Lines for log aggregation; one object per event."""

    output: TextIO = field(default_factory=lambda: sys.stdout)

    def render(self, entry: LogEntry) -> None:
        record = {"ts": entry.when.isoformat(), "level": entry.level, "event": entry.event, **entry.context}
        self.output.write(orjson.dumps(record, option=orjson.OPT_NON_STR_KEYS | orjson.OPT_APPEND_NEWLINE,
                                       default=str).decode())


@dataclass(slots=True)
class NoOpRenderer:
    def render(self, entry: LogEntry) -> None:
        pass


@dataclass(slots=True)
class CaptureRenderer:
    """Keeps entries in memory for inspection in tests."""

    entries: list[LogEntry] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def render(self, entry: LogEntry) -> None:
        with self._lock:
            self.entries.append(entry)

    def events(self, prefix: str = "") -> list[str]:
        return [e.event for e in self.entries if e.event.startswith(prefix)]

    def find(self, event: str) -> list[LogEntry]:
        return [e for e in self.entries if e.event == event]

    def clear(self) -> None:
        with self._lock:
            self.entries.clear()


# ─────────────────────────────────────────────────────────────────────────────
# Global Configuration
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(slots=True)
class _LoggingState:
    renderer: LogRenderer = field(default_factory=ConsoleRenderer)
    level: int = logging.INFO


_state = _LoggingState()


def configure_logging(
    format: str = "console",  # noqa: A002 - mirrors LoggingSettings.format
    level: str = "INFO",
    *,
    output: TextIO | None = None,
    colors: bool | None = None,
    renderer: LogRenderer | None = None,
) -> LogRenderer:
    """Install the process-wide renderer and level.

    ``format`` is ``"console"``, ``"json"`` or ``"none"``; an explicit
    ``renderer`` takes precedence over it. Returns the active renderer.
    """
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level!r}")
    _state.level = resolved
    if renderer is None:
        match format:
            case "console": renderer = ConsoleRenderer(output=output or sys.stderr, colors=colors)
            case "json": renderer = JsonRenderer(output=output or sys.stdout)
            case "none": renderer = NoOpRenderer()
            case _: raise ValueError(f"Unknown log format: {format!r} (expected console, json or none)")
    _state.renderer = renderer
    return renderer


def get_logger(name: str | None = None, **initial_context: Any) -> BoundLogger:
    """Logger for a component. ``name`` is recorded under the ``logger`` key."""
    return BoundLogger({**initial_context, "logger": name} if name else dict(initial_context))


@contextmanager
def log_context(**kw: Any) -> Iterator[None]:
    """Add ``kw`` to every entry logged inside the block (task-local).

    Nested blocks layer on top of each other; the outer context is restored
    on exit.
    """
    token = _log_context.set({**_log_context.get(), **kw})
    try:
        yield
    finally:
        _log_context.reset(token)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


_SECRET_HINTS = ("authorization", "token", "secret", "password", "api_key")
_LEVEL_TAG = {"warning": "warn", "critical": "crit"}
_LEVEL_STYLE = {"debug": "dim", "info": "green", "warning": "yellow", "error": "red", "critical": "red"}
_ANSI = {"dim": "2", "bold": "1", "red": "31", "green": "32", "yellow": "33", "cyan": "36"}


def _paint(style: str, text: str) -> str:
    return f"\033[{_ANSI[style]}m{text}\033[0m"


def _plain(style: str, text: str) -> str:
    return text


def _level_name(level: int) -> str:
    return logging.getLevelName(level).lower()


def _redact(ctx: JsonDict) -> JsonDict:
    if not any(any(h in k.lower() for h in _SECRET_HINTS) for k in ctx):
        return ctx
    return {k: "***" if any(h in k.lower() for h in _SECRET_HINTS) and v is not None else v
            for k, v in ctx.items()}


def _route(ctx: JsonDict) -> str:
    """Pop request coordinates into ``@server/tool #request``."""
    server, tool, rid = ctx.pop("server_id", None), ctx.pop("tool", None), ctx.pop("request_id", None)
    where = "/".join(str(p) for p in (server, tool) if p)
    parts = [f"@{where}"] if where else []
    if rid:
        parts.append(f"#{str(rid)[:8]}")
    return " ".join(parts)


def _show(v: object) -> str:
    match v:
        case str(): return f'"{v}"'
        case None: return "null"
        case bool(): return str(v).lower()
        case dict() | list() | tuple(): return orjson.dumps(v, default=str).decode()
        case _: return str(v)
