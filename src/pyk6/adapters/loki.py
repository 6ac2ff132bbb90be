"""
Asynchronous Loki log delivery.

:class:`LokiHandler` is a :class:`logging.Handler` that buffers formatted
records and hands them to a background worker thread. The worker pushes a
batch every ``push_period`` seconds and, once the root context is cancelled,
stops accepting new records, flushes whatever is pending and closes the
signal handle it was given. The CLI lifecycle waits on that handle before the
process exits.

The configuration line accepted on the command line looks like::

    loki=http://127.0.0.1:3100/loki/api/v1/push,limit=100,pushPeriod=1s,level=info,label.env=ci
"""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from logging import Logger, LoggerAdapter
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx
from tenacity import RetryError, retry, retry_if_exception, stop_after_attempt, wait_exponential

from ..core.context import RootContext, SignalHandle
from .base import AdapterError

SCHEME = "loki"
DEFAULT_PUSH_PATH = "/loki/api/v1/push"
DEFAULT_ADDRESS = f"http://127.0.0.1:3100{DEFAULT_PUSH_PATH}"
DEFAULT_LIMIT = 100
DEFAULT_PUSH_PERIOD = 1.0
DEFAULT_MSG_MAX_SIZE = 1024 * 1024
DEFAULT_TIMEOUT = 15.0
_TRUNCATED_SUFFIX = "...truncated"

_DURATION_PATTERN = re.compile(r"^(?P<value>\d+(?:\.\d+)?)(?P<unit>ms|s|m|h)$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "critical": logging.CRITICAL,
}


class LokiConfigError(AdapterError, ValueError):
    """Raised when a Loki configuration line cannot be parsed."""


class LokiPushError(AdapterError):
    """Raised when a batch could not be delivered."""


def _parse_duration(raw: str) -> float:
    match = _DURATION_PATTERN.match(raw.strip())
    if not match:
        raise LokiConfigError(f"invalid duration '{raw}', expected a value such as 500ms, 1s or 2m")
    seconds = float(match.group("value")) * _DURATION_UNITS[match.group("unit")]
    if seconds <= 0:
        raise LokiConfigError(f"duration '{raw}' must be positive")
    return seconds


def _parse_positive_int(key: str, raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise LokiConfigError(f"'{key}' must be an integer, got '{raw}'") from None
    if value <= 0:
        raise LokiConfigError(f"'{key}' must be positive, got {value}")
    return value


def _normalise_address(raw: str) -> str:
    address = raw.strip()
    if not address:
        raise LokiConfigError("loki address must not be empty")
    if "://" not in address:
        address = f"http://{address}"
    try:
        url = httpx.URL(address)
    except httpx.InvalidURL as exc:
        raise LokiConfigError(f"invalid loki address '{raw}': {exc}") from exc
    if url.scheme not in {"http", "https"} or not url.host:
        raise LokiConfigError(f"invalid loki address '{raw}'")
    if url.path in {"", "/"}:
        url = url.copy_with(path=DEFAULT_PUSH_PATH)
    return str(url)


@dataclass(slots=True, frozen=True)
class LokiConfig:
    """
    Delivery settings for a Loki sink.

    Attributes
    ----------
    address:
        Push endpoint URL.
    limit:
        Maximum number of records pushed per period; the excess is dropped.
    push_period:
        Seconds between pushes.
    level:
        Minimum level forwarded to Loki.
    msg_max_size:
        Messages longer than this many characters are truncated.
    labels:
        Static stream labels attached to every push.
    """

    address: str = DEFAULT_ADDRESS
    limit: int = DEFAULT_LIMIT
    push_period: float = DEFAULT_PUSH_PERIOD
    level: int = logging.DEBUG
    msg_max_size: int = DEFAULT_MSG_MAX_SIZE
    labels: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_config_line(cls, line: str) -> "LokiConfig":
        """Parse ``loki`` or ``loki=<address>[,key=value...]``."""

        if line == SCHEME:
            return cls()
        scheme, sep, rest = line.partition("=")
        if scheme != SCHEME or not sep:
            raise LokiConfigError(f"log output '{line}' is not a loki configuration")

        address, *options = rest.split(",")
        settings: Dict[str, Any] = {"address": _normalise_address(address)}
        labels: Dict[str, str] = {}
        for option in options:
            key, sep, value = option.partition("=")
            if not sep:
                raise LokiConfigError(f"loki option '{option}' must use key=value format")
            if key.startswith("label."):
                label = key[len("label.") :]
                if not label:
                    raise LokiConfigError(f"loki option '{option}' is missing a label name")
                labels[label] = value
            elif key == "limit":
                settings["limit"] = _parse_positive_int(key, value)
            elif key == "msgMaxSize":
                settings["msg_max_size"] = _parse_positive_int(key, value)
            elif key == "pushPeriod":
                settings["push_period"] = _parse_duration(value)
            elif key == "level":
                level = _LEVELS.get(value.lower())
                if level is None:
                    raise LokiConfigError(f"unknown loki level '{value}'")
                settings["level"] = level
            else:
                raise LokiConfigError(f"unknown loki option '{key}'")
        return cls(labels=labels, **settings)


def is_loki_output(output: str) -> bool:
    return output.startswith(SCHEME)


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, httpx.TransportError)


class LokiHandler(logging.Handler):
    """
    Logging handler that delivers records to Loki from a worker thread.

    Parameters
    ----------
    config:
        Parsed delivery settings.
    ctx:
        Root context; its cancellation stops the worker.
    signal:
        Closed by the worker once it has flushed everything after cancellation.
    fallback_logger:
        Local logger used to report delivery problems.
    transport:
        Optional HTTPX transport, mainly for tests.
    retry_wait:
        Base multiplier in seconds for exponential back-off between attempts.
    """

    def __init__(
        self,
        config: LokiConfig,
        ctx: RootContext,
        signal: SignalHandle,
        fallback_logger: Logger | LoggerAdapter,
        *,
        transport: Optional[httpx.BaseTransport] = None,
        retry_wait: float = 1.0,
    ) -> None:
        super().__init__(level=config.level)
        self.config = config
        self._ctx = ctx
        self._signal = signal
        self._fallback = fallback_logger
        self._transport = transport
        self._retry_wait = retry_wait
        self._pending: List[Tuple[str, str, str]] = []
        self._accepting = True
        self._buffer_lock = threading.Lock()
        self._worker = threading.Thread(target=self._run, name="loki-push", daemon=True)

    def start(self) -> None:
        self._worker.start()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
        except Exception:
            self.handleError(record)
            return
        if len(line) > self.config.msg_max_size:
            line = line[: self.config.msg_max_size] + _TRUNCATED_SUFFIX
        entry = (str(int(record.created * 1e9)), record.levelname.lower(), line)
        with self._buffer_lock:
            if self._accepting:
                self._pending.append(entry)

    def _build_client(self) -> httpx.Client:
        return httpx.Client(timeout=DEFAULT_TIMEOUT, transport=self._transport)

    def _run(self) -> None:
        try:
            with self._build_client() as client:
                while not self._ctx.wait(self.config.push_period):
                    self._flush(client)
                with self._buffer_lock:
                    self._accepting = False
                self._flush(client)
        finally:
            self._signal.close()

    def _take_batch(self) -> List[Tuple[str, str, str]]:
        with self._buffer_lock:
            batch, self._pending = self._pending, []
        if len(batch) > self.config.limit:
            dropped = len(batch) - self.config.limit
            self._fallback.warning(
                "Dropped log entries above the loki push limit",
                extra={"dropped": dropped, "limit": self.config.limit},
            )
            batch = batch[: self.config.limit]
        return batch

    def _flush(self, client: httpx.Client) -> None:
        batch = self._take_batch()
        if not batch:
            return
        try:
            self._push(client, batch)
        except LokiPushError as exc:
            self._fallback.error(
                "Failed to push logs to loki",
                extra={"url": self.config.address, "entries": len(batch), "error": str(exc)},
            )

    def build_payload(self, batch: List[Tuple[str, str, str]]) -> Dict[str, Any]:
        """Group entries into one stream per level."""

        streams: Dict[str, List[List[str]]] = {}
        for timestamp, level, line in batch:
            streams.setdefault(level, []).append([timestamp, line])
        return {
            "streams": [
                {"stream": {**self.config.labels, "level": level}, "values": values}
                for level, values in streams.items()
            ]
        }

    def _push(self, client: httpx.Client, batch: List[Tuple[str, str, str]]) -> None:
        payload = self.build_payload(batch)

        @retry(
            retry=retry_if_exception(_is_retryable),
            wait=wait_exponential(multiplier=self._retry_wait, min=self._retry_wait, max=8 * self._retry_wait),
            stop=stop_after_attempt(3),
            reraise=True,
        )
        def _send() -> httpx.Response:
            response = client.post(self.config.address, json=payload)
            response.raise_for_status()
            return response

        started = time.monotonic()
        try:
            _send()
        except RetryError as exc:
            raise LokiPushError(f"Failed to push to {self.config.address} after multiple attempts: {exc}") from exc
        except httpx.HTTPError as exc:
            raise LokiPushError(f"HTTP error while pushing to {self.config.address}: {exc}") from exc
        self._fallback.debug(
            "Pushed logs to loki",
            extra={"entries": len(batch), "duration": time.monotonic() - started},
        )
