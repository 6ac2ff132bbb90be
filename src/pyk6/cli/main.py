"""
Root Typer application for the pyk6 CLI.

The root callback resolves the persistent flags into a
:class:`~pyk6.config.GlobalFlags` value and asks the
:class:`~pyk6.cli.lifecycle.LifecycleController` to configure logging before
any subcommand runs. Subcommands are contributed by collaborators through
``app.command()`` or ``app.add_typer()`` and can read the resolved flags from
Typer's state.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from .. import __version__
from ..config import DEFAULT_ADDRESS, GlobalFlags
from .lifecycle import LifecycleController

_HELP = "a next-generation load generator"


def _require_controller(ctx: typer.Context) -> LifecycleController:
    state = ctx.ensure_object(dict)
    controller = state.get("controller")
    if not isinstance(controller, LifecycleController):
        raise typer.Exit(code=2)
    return controller


def require_flags(ctx: typer.Context) -> GlobalFlags:
    """Return the flags resolved by the root callback."""

    state = ctx.ensure_object(dict)
    flags = state.get("flags")
    if not isinstance(flags, GlobalFlags):
        raise typer.Exit(code=2)
    return flags


def _root_callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Disable progress updates."),
    no_color: bool = typer.Option(False, "--no-color", help="Disable colored output."),
    log_output: Optional[str] = typer.Option(
        None,
        "--log-output",
        help="Change the output for logs, possible values are stderr, stdout, none, loki[=host:port]. Defaults to K6_LOG_OUTPUT or stderr.",
        show_default=False,
    ),
    log_format: str = typer.Option("", "--logformat", help="Log output format: raw, json or text."),
    address: str = typer.Option(DEFAULT_ADDRESS, "--address", "-a", help="Address for the API server."),
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="JSON config file. Defaults to K6_CONFIG or the user config directory.",
        dir_okay=False,
        show_default=False,
    ),
) -> None:
    """
    Configure logging for the whole command tree.

    The resolved flags are stored in Typer's state so child commands can
    retrieve them via :func:`require_flags`.
    """

    controller = _require_controller(ctx)
    flags = GlobalFlags.resolve(
        verbose=verbose,
        quiet=quiet,
        no_color=no_color,
        log_output=log_output,
        log_format=log_format,
        address=address,
        config_path=config_path,
    )
    controller.configure_logging(flags)
    ctx.ensure_object(dict)["flags"] = flags
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


def _version() -> None:
    """Show the application version."""

    typer.echo(f"pyk6 v{__version__}")


def create_app() -> typer.Typer:
    """Build a root application with the persistent flags and built-in commands."""

    root = typer.Typer(add_completion=False, help=_HELP)
    root.callback(invoke_without_command=True)(_root_callback)
    root.command("version")(_version)
    return root


app = create_app()


def main() -> None:
    """Console entry point."""

    LifecycleController(app).run()
