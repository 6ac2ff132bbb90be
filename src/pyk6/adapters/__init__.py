"""
Network-facing adapters used by the CLI core.

Only remote log delivery lives here for now; see :mod:`pyk6.adapters.loki`.
"""

from .base import AdapterError
from .loki import LokiConfig, LokiConfigError, LokiHandler, LokiPushError

__all__ = [
    "AdapterError",
    "LokiConfig",
    "LokiConfigError",
    "LokiHandler",
    "LokiPushError",
]
