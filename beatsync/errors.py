"""
Engine Error Types
Exceptions raised at the engine's API boundary.
"""


class BeatSyncError(Exception):
    """Base class for engine errors."""


class InvalidParameter(BeatSyncError, ValueError):
    """A value was rejected at the API boundary (bad block, NaN tempo, ...)."""


class ContentUnavailable(BeatSyncError):
    """Audio content for a block could not be resolved or decoded."""

    def __init__(self, content_ref, reason: str = ""):
        self.content_ref = content_ref
        self.reason = reason
        message = f"Content unavailable: {content_ref!r}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)
