"""
Base errors for network-facing adapters.

Adapters own their steady-state failures: they report them through the
fallback logger they are given instead of propagating them to the command
lifecycle.
"""

from __future__ import annotations


class AdapterError(RuntimeError):
    """Raised when an adapter encounters a non-recoverable error."""
