"""Error taxonomy for the feed engine.

Lifecycle failures are surfaced to callers through command results; the rest
are logged and degrade the affected enrichment only.
"""

from __future__ import annotations


class FeedError(RuntimeError):
    """Base class for feed engine errors."""


class SessionLifecycleError(FeedError):
    """Raised when a session fails to start or connect."""


class ProtocolShapeError(FeedError):
    """Raised for unrecognized or malformed protocol events."""


class PersistenceError(FeedError):
    """Raised when a storage read or write fails."""


class ConfigMismatch(FeedError):
    """Raised when no provider option matches a requested control."""


__all__ = [
    "ConfigMismatch",
    "FeedError",
    "PersistenceError",
    "ProtocolShapeError",
    "SessionLifecycleError",
]
