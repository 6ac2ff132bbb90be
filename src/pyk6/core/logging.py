"""
Logging sinks and formatters for the pyk6 CLI.

The CLI logs through a dedicated ``pyk6`` logger whose handlers are owned by
:class:`LogSinkConfigurator`. The configurator resolves a :class:`LogSettings`
value into a single active handler (stderr, stdout, discard, or remote Loki
delivery) plus a :class:`~pyk6.core.context.SignalHandle` the lifecycle waits
on before exiting. Modules should obtain loggers via :func:`get_logger` so
structured extras are merged consistently.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
from copy import copy
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from logging import Logger, LoggerAdapter
from typing import Any, Iterable, Mapping, MutableMapping, Optional, Sequence, TextIO

import httpx
import typer

from ..adapters.loki import LokiConfig, LokiConfigError, LokiHandler, is_loki_output
from .context import RootContext, SignalHandle

PACKAGE_LOGGER = "pyk6"
FALLBACK_LOGGER = "pyk6-fallback"
DEFAULT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_ENV_COLOR = "K6_LOG_COLOR"
_EXTRA_FOCUS_ORDER: Sequence[str] = (
    "hint",
    "extension",
    "status",
    "duration",
    "url",
    "entries",
    "dropped",
    "error",
)

_LEVEL_STYLES = {
    "DEBUG": "\033[36m",  # Cyan
    "INFO": "\033[32m",  # Green
    "WARNING": "\033[33m",  # Yellow
    "ERROR": "\033[31m",  # Red
    "CRITICAL": "\033[95m",  # Bright magenta
}
_RESET = "\033[0m"

_RESERVED_ATTRS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "message",
    "asctime",
    "taskName",
}


class ConfigurationError(ValueError):
    """Raised when logging settings cannot be turned into a sink."""


class LogOutput(str, Enum):
    """Local log destinations. Remote destinations are free-form descriptors."""

    STDERR = "stderr"
    STDOUT = "stdout"
    NONE = "none"


class LogFormat(str, Enum):
    RAW = "raw"
    JSON = "json"
    TEXT = "text"

    @classmethod
    def parse(cls, value: Optional[str]) -> "LogFormat":
        """Map a flag value to a format; empty or unknown values mean text."""

        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.TEXT


@dataclass(slots=True, frozen=True)
class LogSettings:
    """
    Resolved logging configuration.

    Attributes
    ----------
    output:
        ``stderr``, ``stdout``, ``none`` or a remote descriptor such as
        ``loki=host:3100``.
    format:
        Record layout used by the active handler.
    verbose:
        Enables DEBUG level logging.
    no_color:
        Disables ANSI colours on console output.
    """

    output: str = LogOutput.STDERR.value
    format: LogFormat = LogFormat.TEXT
    verbose: bool = False
    no_color: bool = False


def _coerce_bool(value: str) -> Optional[bool]:
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on", "enabled"}:
        return True
    if lowered in {"0", "false", "no", "off", "disabled"}:
        return False
    return None


def _supports_color(stream: Any) -> bool:
    preference = os.getenv(_ENV_COLOR)
    if preference:
        resolved = _coerce_bool(preference)
        if resolved is not None:
            return resolved
    return hasattr(stream, "isatty") and bool(stream.isatty())


def _iter_extras(record: logging.LogRecord) -> Iterable[tuple[str, Any]]:
    payload = {key: value for key, value in record.__dict__.items() if key not in _RESERVED_ATTRS and not key.startswith("_") and value is not None}

    for key in _EXTRA_FOCUS_ORDER:
        if key in payload:
            yield key, payload.pop(key)

    for key in sorted(payload):
        yield key, payload[key]


def _format_extra_value(value: Any) -> str:
    if isinstance(value, (list, tuple, set)):
        return "[" + ", ".join(_format_extra_value(item) for item in value) + "]"
    if isinstance(value, Mapping):
        try:
            return json.dumps(value, ensure_ascii=False, default=str)
        except TypeError:
            return repr(dict(value))
    if isinstance(value, float):
        return f"{value:.4g}"
    return str(value)


class StructuredLogFormatter(logging.Formatter):
    """Formatter that appends structured extras and supports optional colour output."""

    def __init__(self, *, use_color: bool = False) -> None:
        super().__init__(DEFAULT_FORMAT, datefmt=DEFAULT_DATE_FORMAT)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        working = copy(record)
        if self.use_color:
            working.levelname = self._colourise_level(working.levelname)
        base = super().format(working)
        extras = " ".join(f"{key}={_format_extra_value(value)}" for key, value in _iter_extras(record))
        if extras:
            return f"{base} | {extras}"
        return base

    @staticmethod
    def _colourise_level(levelname: str) -> str:
        style = _LEVEL_STYLES.get(levelname.strip().upper())
        if not style:
            return levelname
        return f"{style}{levelname}{_RESET}"


class RawLogFormatter(logging.Formatter):
    """Emit the message text only."""

    def format(self, record: logging.LogRecord) -> str:
        return record.getMessage()


class JSONLogFormatter(logging.Formatter):
    """One JSON object per record with structured extras as top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        payload: MutableMapping[str, Any] = {
            "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "msg": record.getMessage(),
        }
        for key, value in _iter_extras(record):
            payload.setdefault(key, value)
        if record.exc_info:
            payload["error"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ConsoleWriter:
    """
    Thread-safe wrapper around a console stream.

    Writers for stdout and stderr share one lock so interleaved output stays
    line-atomic. Once colour is disabled ANSI sequences are stripped on write;
    a forced writer keeps them even when the stream is not a terminal.
    """

    def __init__(self, stream: TextIO, lock: Optional[threading.Lock] = None) -> None:
        self.stream = stream
        self.no_color = False
        self.force_color = False
        self._lock = lock or threading.Lock()

    def isatty(self) -> bool:
        return hasattr(self.stream, "isatty") and bool(self.stream.isatty())

    def disable_color(self) -> None:
        self.no_color = True

    def _color(self) -> Optional[bool]:
        if self.no_color:
            return False
        return True if self.force_color else None

    def write(self, text: str) -> int:
        with self._lock:
            typer.echo(text, file=self.stream, nl=False, color=self._color())
        return len(text)

    def flush(self) -> None:
        self.stream.flush()


@dataclass(slots=True)
class LogSink:
    """Outcome of :meth:`LogSinkConfigurator.configure`."""

    settings: LogSettings
    handler: logging.Handler
    signal: SignalHandle
    remote: bool = False

    @property
    def is_remote(self) -> bool:
        return self.remote


class LogSinkConfigurator:
    """
    Bind a logger to the sink described by :class:`LogSettings`.

    Parameters
    ----------
    logger:
        Logger whose handlers, level and formatter are replaced on success.
    fallback_logger:
        Local logger handed to remote sinks for reporting delivery problems.
    stdout, stderr:
        Console streams; default to the process streams.
    transport:
        Optional HTTPX transport passed to remote sinks.
    """

    def __init__(
        self,
        logger: Logger,
        fallback_logger: Logger | LoggerAdapter,
        *,
        stdout: Optional[TextIO] = None,
        stderr: Optional[TextIO] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.logger = logger
        self.fallback_logger = fallback_logger
        console_lock = threading.Lock()
        self.stdout = ConsoleWriter(stdout or sys.stdout, console_lock)
        self.stderr = ConsoleWriter(stderr or sys.stderr, console_lock)
        self._transport = transport

    def disable_color(self) -> None:
        self.stdout.disable_color()
        self.stderr.disable_color()

    def configure(self, ctx: RootContext, settings: LogSettings) -> LogSink:
        """
        Resolve ``settings`` into an active sink.

        Remote outputs force ``raw`` format and disable colour. The returned
        signal is open only for remote outputs; it closes once the delivery
        worker has flushed after ``ctx`` is cancelled.

        Raises
        ------
        ConfigurationError
            If the output is unsupported or the remote descriptor is malformed.
            The logger is left untouched in that case.
        """

        loki_config = self._parse_output(settings.output)
        resolved = settings
        if loki_config is not None:
            resolved = replace(settings, format=LogFormat.RAW, no_color=True)

        signal = SignalHandle() if loki_config is not None else SignalHandle.closed_handle()
        handler = self._build_handler(ctx, resolved, loki_config, signal)
        formatter = self._build_formatter(resolved)
        handler.setFormatter(formatter)

        for existing in list(self.logger.handlers):
            self.logger.removeHandler(existing)
        self.logger.addHandler(handler)
        self.stdout.force_color = self.stderr.force_color = False
        if isinstance(formatter, StructuredLogFormatter) and resolved.output != LogOutput.NONE.value:
            self._destination(resolved).force_color = formatter.use_color
        self.logger.setLevel(logging.DEBUG if resolved.verbose else logging.INFO)
        self.logger.propagate = False
        if isinstance(handler, LokiHandler):
            handler.start()

        self.logger.debug(f"Logger format: {resolved.format.name}")
        return LogSink(settings=resolved, handler=handler, signal=signal, remote=loki_config is not None)

    @staticmethod
    def _parse_output(output: str) -> Optional[LokiConfig]:
        if output in {item.value for item in LogOutput}:
            return None
        if not is_loki_output(output):
            raise ConfigurationError(f"unsupported log output `{output}`")
        try:
            return LokiConfig.from_config_line(output)
        except LokiConfigError as exc:
            raise ConfigurationError(str(exc)) from exc

    def _build_handler(
        self,
        ctx: RootContext,
        settings: LogSettings,
        loki_config: Optional[LokiConfig],
        signal: SignalHandle,
    ) -> logging.Handler:
        if loki_config is not None:
            return LokiHandler(loki_config, ctx, signal, self.fallback_logger, transport=self._transport)
        if settings.output == LogOutput.STDOUT.value:
            return logging.StreamHandler(self.stdout)
        if settings.output == LogOutput.NONE.value:
            return logging.NullHandler()
        return logging.StreamHandler(self.stderr)

    def _build_formatter(self, settings: LogSettings) -> logging.Formatter:
        if settings.format is LogFormat.RAW:
            return RawLogFormatter()
        if settings.format is LogFormat.JSON:
            return JSONLogFormatter()
        return StructuredLogFormatter(use_color=not settings.no_color and _supports_color(self._destination(settings)))

    def _destination(self, settings: LogSettings) -> ConsoleWriter:
        return self.stdout if settings.output == LogOutput.STDOUT.value else self.stderr


class ContextLoggerAdapter(LoggerAdapter):
    """Logger adapter that merges per-call ``extra`` with the bound extras."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        merged = dict(self.extra or {})
        merged.update(kwargs.get("extra") or {})
        kwargs["extra"] = merged
        return msg, kwargs


def get_logger(name: str, *, extra: Optional[Mapping[str, object]] = None) -> ContextLoggerAdapter:
    """
    Return a :class:`ContextLoggerAdapter` for ``name``.

    Parameters
    ----------
    name:
        Logger namespace, typically ``__name__``. Names under ``pyk6`` reach
        the sink configured by :class:`LogSinkConfigurator`.
    extra:
        Structured metadata recorded with each log entry.
    """

    payload = {key: value for key, value in (extra or {}).items() if value is not None}
    return ContextLoggerAdapter(logging.getLogger(name), payload)
