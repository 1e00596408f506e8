"""Error taxonomy for sync pipelines and orchestration."""

from enum import Enum


class ErrorKind(str, Enum):
    """Whether a failure lets the surrounding run continue."""

    RECOVERABLE = "recoverable"
    FATAL = "fatal"


class SyncError(Exception):
    """Base class for sync errors."""

    kind: ErrorKind = ErrorKind.FATAL

    @property
    def recoverable(self) -> bool:
        return self.kind is ErrorKind.RECOVERABLE


class RecordError(SyncError):
    """A single record failed to map or write. The pipeline keeps going."""

    kind = ErrorKind.RECOVERABLE

    def __init__(self, record_id: str, message: str):
        super().__init__(message)
        self.record_id = record_id
        self.message = message


class PipelineError(SyncError):
    """A pipeline could not run at all (API unreachable, setup query failed)."""


class LibraryNotFoundError(PipelineError):
    """Walking ParentId links did not reach a known library."""


class InvalidTransitionError(SyncError):
    """A sync state transition that the state machine does not allow."""
