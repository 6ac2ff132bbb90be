"""
pyk6 command line core.

Import extension registration helpers from :mod:`pyk6.core` and the CLI
lifecycle from :mod:`pyk6.cli`.
"""

__version__ = "0.1.0"

from .core import (  # noqa: E402
    ConfigurationError,
    LogSettings,
    RegistrationConflict,
    get_module,
    register_module,
)

__all__ = [
    "__version__",
    "ConfigurationError",
    "LogSettings",
    "RegistrationConflict",
    "get_module",
    "register_module",
]
