"""
Command execution lifecycle.

:class:`LifecycleController` is built once per process. It owns the root
context and the CLI loggers, configures the log sink from the root command
callback, runs the command tree, and shuts down in a fixed order:

1. log the command error, if any, with its structured fields;
2. cancel the root context;
3. when a remote sink is active, wait for its delivery worker to drain.

The drain wait has no timeout. An unresponsive remote sink therefore keeps the
process alive until its worker gives up retrying.
"""

from __future__ import annotations

import logging
import sys
from enum import Enum
from typing import Any, Dict, Optional, Sequence, TextIO

import click
import httpx
import typer

from .. import __version__
from ..config import GlobalFlags
from ..core.context import RootContext
from ..core.logging import (
    FALLBACK_LOGGER,
    PACKAGE_LOGGER,
    LogSettings,
    LogSink,
    LogSinkConfigurator,
    StructuredLogFormatter,
)

GENERIC_FAILURE_CODE = -1


class CommandExecutionError(RuntimeError):
    """
    Error returned by a command that wants a specific exit status.

    Parameters
    ----------
    message:
        Human-readable error message.
    code:
        Process exit status. Defaults to the generic failure code.
    hint:
        Optional advice for the user, logged as a structured field.
    """

    def __init__(self, message: str, *, code: Optional[int] = None, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = GENERIC_FAILURE_CODE if code is None else code
        self.hint = hint


class LifecycleState(str, Enum):
    INIT = "init"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    DRAINING = "draining"
    TERMINATED = "terminated"


class LifecycleController:
    """
    Drive a typer application from setup to process exit.

    Parameters
    ----------
    app:
        Root typer application. Its callback must call
        :meth:`configure_logging` with the resolved global flags.
    prog_name:
        Program name shown in usage messages.
    logger, fallback_logger:
        Primary logger bound to the configured sink and the local stderr logger
        used to surface errors when the primary sink is remote.
    stdout, stderr:
        Console streams; default to the process streams.
    transport:
        Optional HTTPX transport for remote sinks.
    """

    def __init__(
        self,
        app: typer.Typer,
        *,
        prog_name: str = "k6",
        logger: Optional[logging.Logger] = None,
        fallback_logger: Optional[logging.Logger] = None,
        stdout: Optional[TextIO] = None,
        stderr: Optional[TextIO] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.app = app
        self.prog_name = prog_name
        self.ctx = RootContext()
        self.logger = logger or logging.getLogger(PACKAGE_LOGGER)
        self.fallback_logger = fallback_logger or logging.getLogger(FALLBACK_LOGGER)
        self.flags: Optional[GlobalFlags] = None
        self.state = LifecycleState.INIT
        self._configurator = LogSinkConfigurator(
            self.logger,
            self.fallback_logger,
            stdout=stdout,
            stderr=stderr,
            transport=transport,
        )
        self._setup_fallback_logger()
        self._sink: LogSink = self._configurator.configure(self.ctx, LogSettings())

    def _setup_fallback_logger(self) -> None:
        handler = logging.StreamHandler(self._configurator.stderr)
        handler.setFormatter(StructuredLogFormatter())
        for existing in list(self.fallback_logger.handlers):
            self.fallback_logger.removeHandler(existing)
        self.fallback_logger.addHandler(handler)
        self.fallback_logger.setLevel(logging.INFO)
        self.fallback_logger.propagate = False

    @property
    def sink(self) -> LogSink:
        return self._sink

    @property
    def is_remote(self) -> bool:
        return self._sink.is_remote

    def configure_logging(self, flags: GlobalFlags) -> LogSink:
        """
        Bind the loggers to the sink selected by ``flags``.

        Raises :class:`~pyk6.core.logging.ConfigurationError` without touching
        the current sink when the log output is invalid.
        """

        self._sink = self._configurator.configure(self.ctx, flags.log_settings())
        self.flags = flags
        if self._sink.settings.no_color:
            self._configurator.disable_color()
        self.logger.debug(f"pyk6 version: v{__version__}")
        return self._sink

    def execute(self, args: Sequence[str]) -> int:
        """Run the command tree with ``args`` and return the exit status."""

        try:
            code = self._run_commands(args)
        finally:
            self._shutdown()
        return code

    def run(self, args: Optional[Sequence[str]] = None) -> None:
        """Execute and terminate the process with the computed status."""

        code = self.execute(sys.argv[1:] if args is None else args)
        sys.exit(code)

    def _run_commands(self, args: Sequence[str]) -> int:
        command = typer.main.get_command(self.app)
        state: Dict[str, Any] = {"controller": self}
        self.state = LifecycleState.RUNNING
        try:
            with command.make_context(self.prog_name, list(args), obj=state) as click_ctx:
                command.invoke(click_ctx)
        except (click.exceptions.Exit, typer.Exit) as exc:
            if exc.exit_code:
                return self._fail(f"command exited with status {exc.exit_code}", code=exc.exit_code)
        except CommandExecutionError as exc:
            return self._fail(str(exc), code=exc.code, hint=exc.hint)
        except click.ClickException as exc:
            return self._fail(exc.format_message())
        except Exception as exc:
            return self._fail(str(exc) or exc.__class__.__name__)
        self.state = LifecycleState.SUCCESS
        return 0

    def _fail(self, message: str, *, code: int = GENERIC_FAILURE_CODE, hint: Optional[str] = None) -> int:
        self.state = LifecycleState.FAILURE
        fields = {"hint": hint} if hint else {}
        self.logger.error(message, extra=fields)
        if self.is_remote:
            self.fallback_logger.error(message, extra=fields)
        return code

    def _shutdown(self) -> None:
        self.ctx.cancel()
        if self.is_remote:
            self.state = LifecycleState.DRAINING
            # TODO: decide whether the drain wait needs a deadline for unresponsive remote sinks.
            self._sink.signal.wait()
        self.state = LifecycleState.TERMINATED
