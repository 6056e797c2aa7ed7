"""Exception hierarchy for the context engine.

Capacity exhaustion is never an exception; it is reported through
return values (``allocate`` returning False, ``AllocationResult.success``).
"""

from __future__ import annotations


class ContextEngineError(Exception):
    """Base class for engine errors."""


class UnsupportedSessionVersionError(ContextEngineError):
    """Raised when a serialized session is newer than this engine understands."""

    def __init__(self, version: int, supported: int) -> None:
        self.version = version
        self.supported = supported
        super().__init__(
            f"Session format version {version} is newer than the supported "
            f"version {supported}"
        )


class SummarizerUnavailableError(ContextEngineError):
    """Raised by a summarizer that timed out, exhausted retries, or is unconfigured."""


class SessionStorageError(ContextEngineError):
    """Raised when a storage backend cannot read or write a session."""
