"""Command line entry points for pyk6."""

from .lifecycle import CommandExecutionError, LifecycleController, LifecycleState
from .main import app, create_app, main, require_flags

__all__ = [
    "CommandExecutionError",
    "LifecycleController",
    "LifecycleState",
    "app",
    "create_app",
    "main",
    "require_flags",
]
