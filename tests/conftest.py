from __future__ import annotations

import io
import json
import logging
import uuid

import httpx
import pytest
from typer.testing import CliRunner

from pyk6.cli.lifecycle import LifecycleController
from pyk6.cli.main import create_app


class TTYStream(io.StringIO):
    def isatty(self) -> bool:
        return True


class ListHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - trivial
        self.records.append(record)


class PushRecorder:
    """Callable for :class:`httpx.MockTransport` that stores decoded push bodies."""

    def __init__(self, status_code: int = 204) -> None:
        self.status_code = status_code
        self.payloads: list[dict] = []
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        self.payloads.append(json.loads(request.read()))
        return httpx.Response(self.status_code)

    def lines(self) -> list[str]:
        return [value[1] for payload in self.payloads for stream in payload["streams"] for value in stream["values"]]


@pytest.fixture(autouse=True)
def _no_color_override(monkeypatch):
    monkeypatch.delenv("K6_LOG_COLOR", raising=False)
    monkeypatch.delenv("K6_LOG_OUTPUT", raising=False)
    monkeypatch.delenv("K6_CONFIG", raising=False)


@pytest.fixture()
def logger() -> logging.Logger:
    return logging.getLogger(f"pyk6-test-{uuid.uuid4().hex}")


@pytest.fixture()
def fallback_logger() -> logging.Logger:
    return logging.getLogger(f"pyk6-test-fallback-{uuid.uuid4().hex}")


@pytest.fixture()
def fallback_records(fallback_logger) -> ListHandler:
    handler = ListHandler()
    fallback_logger.addHandler(handler)
    fallback_logger.setLevel(logging.DEBUG)
    fallback_logger.propagate = False
    return handler


@pytest.fixture()
def push_recorder() -> PushRecorder:
    return PushRecorder()


@pytest.fixture()
def stdout_stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture()
def stderr_stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture()
def cli_app():
    return create_app()


@pytest.fixture()
def controller(cli_app, logger, fallback_logger, stdout_stream, stderr_stream, push_recorder) -> LifecycleController:
    return LifecycleController(
        cli_app,
        logger=logger,
        fallback_logger=fallback_logger,
        stdout=stdout_stream,
        stderr=stderr_stream,
        transport=httpx.MockTransport(push_recorder),
    )


@pytest.fixture()
def cli_runner() -> CliRunner:
    return CliRunner()
