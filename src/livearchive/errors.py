"""
Error taxonomy for the live session archiver.

Transient errors come from the upstream clients and are retried. Fatal errors
stop the whole process in an orderly way; everything else is contained by the
component that raised it.
"""

from typing import Optional


class LiveArchiveError(Exception):
    """Base class for all archiver errors."""


class TransientUpstreamError(LiveArchiveError):
    """Network, decoding or upstream-reported failure. Safe to retry."""


class ExhaustionError(LiveArchiveError):
    """The retry executor gave up."""

    def __init__(self, what: str, attempts: int, last_error: Optional[BaseException]):
        super().__init__(f"{what} failed after {attempts} attempts: {last_error}")
        self.what = what
        self.attempts = attempts
        self.last_error = last_error


class EmptyResolutionError(LiveArchiveError):
    """The resolver answered but the descriptor has no usable URL."""


class NotFoundError(LiveArchiveError):
    """No stored rows for the requested owner or session."""


class FatalError(LiveArchiveError):
    """Unrecoverable condition; the application shuts down with a non-zero status."""


class SnapshotUnavailableError(FatalError):
    """The live session listing could not be obtained."""


class PersistenceError(FatalError):
    """Unexpected failure from the session store."""


class PoolError(FatalError):
    """A session slot was released or handed off in the wrong state."""
