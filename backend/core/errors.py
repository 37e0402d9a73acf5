"""
Typed errors for the shift tracking core.

Request-path code lets these propagate to the caller (the API maps them to
HTTP statuses). Background workers catch them per machine / per record and
log them with the shift key.
"""

from __future__ import annotations

from typing import Any


class ShiftTrackError(Exception):
    """Base class for every error raised by the shift tracking core."""

    code = "shifttrack_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            **{key: str(value) for key, value in self.context.items()},
        }


class NotFound(ShiftTrackError):
    """A referenced machine, operator, operation or shift record does not exist."""

    code = "not_found"


class AlreadyArchived(ShiftTrackError):
    """Archival (or a write) was attempted on a record that is already archived."""

    code = "already_archived"


class StaleWrite(ShiftTrackError):
    """Optimistic concurrency conflict that survived every retry."""

    code = "stale_write"


class PartialTickFailure(ShiftTrackError):
    """One machine's incremental update failed during a tick."""

    code = "partial_tick_failure"


class ClockAmbiguity(ShiftTrackError):
    """A timestamp could not be classified into a shift (malformed input)."""

    code = "clock_ambiguity"


class OperationConflict(ShiftTrackError):
    """An operation lifecycle precondition failed (machine busy, inactive, ...)."""

    code = "operation_conflict"


class ImmutableArchive(ShiftTrackError):
    """An archive entry was modified after it was written."""

    code = "immutable_archive"
