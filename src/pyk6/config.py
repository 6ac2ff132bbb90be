"""
Global CLI flag resolution.

The root command collects its persistent options once and turns them into an
immutable :class:`GlobalFlags` value that is handed to the lifecycle
controller. Environment variables only fill in options the caller did not pass
explicitly:

1. ``--log-output`` falls back to ``K6_LOG_OUTPUT``, then ``stderr``.
2. ``--config`` falls back to ``K6_CONFIG``, then :func:`default_config_path`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .core.logging import LogFormat, LogSettings

ENV_CONFIG = "K6_CONFIG"
ENV_LOG_OUTPUT = "K6_LOG_OUTPUT"
DEFAULT_CONFIG_FILE_NAME = "config.json"
DEFAULT_LOG_OUTPUT = "stderr"
DEFAULT_ADDRESS = "localhost:6565"


def _user_config_dir(environ: Mapping[str, str]) -> Path:
    xdg = environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg)
    home = environ.get("HOME")
    if home:
        return Path(home) / ".config"
    return Path(".config")


def default_config_path(environ: Optional[Mapping[str, str]] = None) -> Path:
    """Return ``<user config dir>/loadimpact/k6/config.json``."""

    env = os.environ if environ is None else environ
    return _user_config_dir(env) / "loadimpact" / "k6" / DEFAULT_CONFIG_FILE_NAME


@dataclass(slots=True, frozen=True)
class GlobalFlags:
    """
    Persistent options shared by every subcommand.

    Attributes
    ----------
    verbose:
        Enables debug logging.
    quiet:
        Suppresses progress output. Interpreted by subcommands.
    no_color:
        Disables colourised output.
    log_output:
        Log sink descriptor (``stderr``, ``stdout``, ``none``, ``loki[=...]``).
    log_format:
        Raw ``--logformat`` value; empty means the default text layout.
    address:
        Address of the REST API server used by control subcommands.
    config_path:
        Location of the JSON config file, read by the config loader.
    """

    verbose: bool = False
    quiet: bool = False
    no_color: bool = False
    log_output: str = DEFAULT_LOG_OUTPUT
    log_format: str = ""
    address: str = DEFAULT_ADDRESS
    config_path: Path = Path(DEFAULT_CONFIG_FILE_NAME)

    @classmethod
    def resolve(
        cls,
        *,
        verbose: bool = False,
        quiet: bool = False,
        no_color: bool = False,
        log_output: Optional[str] = None,
        log_format: Optional[str] = None,
        address: Optional[str] = None,
        config_path: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "GlobalFlags":
        """
        Build flags from parsed options.

        ``None`` means the option was not given on the command line, which is
        the only case where the matching environment variable is consulted.
        """

        env = os.environ if environ is None else environ
        if log_output is None:
            log_output = env[ENV_LOG_OUTPUT] if ENV_LOG_OUTPUT in env else DEFAULT_LOG_OUTPUT
        if config_path is None:
            env_config = env.get(ENV_CONFIG)
            config_path = Path(env_config).expanduser() if env_config else default_config_path(env)
        return cls(
            verbose=verbose,
            quiet=quiet,
            no_color=no_color,
            log_output=log_output,
            log_format=log_format or "",
            address=address or DEFAULT_ADDRESS,
            config_path=config_path,
        )

    def log_settings(self) -> LogSettings:
        """Project the logging-related flags into :class:`LogSettings`."""

        return LogSettings(
            output=self.log_output,
            format=LogFormat.parse(self.log_format),
            verbose=self.verbose,
            no_color=self.no_color,
        )
