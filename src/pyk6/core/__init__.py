"""
Core infrastructure shared by the pyk6 CLI and its extensions.

The package exposes the extension module registry, the cancellation and
completion primitives used during shutdown, and the logging sinks.
"""

from .context import RootContext, SignalHandle
from .logging import (
    ConfigurationError,
    ConsoleWriter,
    JSONLogFormatter,
    LogFormat,
    LogOutput,
    LogSettings,
    LogSink,
    LogSinkConfigurator,
    RawLogFormatter,
    StructuredLogFormatter,
    get_logger,
)
from .registry import EXTENSION_PREFIX, ModuleRegistry, RegistrationConflict, get_module, register_module

__all__ = [
    "RootContext",
    "SignalHandle",
    "ConfigurationError",
    "ConsoleWriter",
    "JSONLogFormatter",
    "LogFormat",
    "LogOutput",
    "LogSettings",
    "LogSink",
    "LogSinkConfigurator",
    "RawLogFormatter",
    "StructuredLogFormatter",
    "get_logger",
    "EXTENSION_PREFIX",
    "ModuleRegistry",
    "RegistrationConflict",
    "get_module",
    "register_module",
]
