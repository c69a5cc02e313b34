"""
Error taxonomy for the validator monitor.

TransportError and UpstreamError are per-batch failures: the engine reports
them as API-ERROR alerts and moves on to the next batch. FatalError ends the
pass. DataIntegrityError flags a mismatch between upstream data and the store.
"""

from typing import Any, Optional


class MonitorError(Exception):
    """Base class for all monitor errors."""


class ConfigurationError(MonitorError):
    """Required configuration is missing or malformed."""


class TransportError(MonitorError):
    """Network, DNS, timeout or response-parse failure."""


class UpstreamError(MonitorError):
    """The backend was reachable but reported a non-OK envelope."""

    def __init__(self, message: str, envelope: Optional[Any] = None):
        super().__init__(message)
        self.envelope = envelope


class DataIntegrityError(MonitorError):
    """An expected record was not found or would break a uniqueness rule."""


class FatalError(MonitorError):
    """The pass cannot continue, e.g. the latest epoch is unavailable."""
