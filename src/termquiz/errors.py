"""Exception types raised across termquiz."""

from __future__ import annotations

from enum import Enum

__all__ = [
    "TermquizError",
    "SourceResolutionError",
    "ParseError",
    "TimeWindowReason",
    "TimeWindowError",
    "AlreadySubmittedError",
    "PersistenceCorruptError",
    "AttachmentReason",
    "AttachmentError",
    "PushErrorKind",
    "PushError",
    "SessionError",
]


class TermquizError(RuntimeError):
    """Base class for every error termquiz reports to the user."""


class SourceResolutionError(TermquizError):
    """The quiz file could not be located, cloned or updated."""


class ParseError(TermquizError):
    """The quiz document is malformed at ``line`` (1-based)."""

    def __init__(self, line: int, message: str) -> None:
        super().__init__(f"line {line}: {message}")
        self.line = line
        self.message = message


class TimeWindowReason(Enum):
    NOT_YET_OPEN = "not_yet_open"
    CLOSED = "closed"


class TimeWindowError(TermquizError):
    """The quiz cannot be taken right now."""

    def __init__(self, reason: TimeWindowReason, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class AlreadySubmittedError(TermquizError):
    """The repository history already holds a response for this quiz."""


class PersistenceCorruptError(TermquizError):
    """Saved session state exists but cannot be read back."""


class AttachmentReason(Enum):
    MISSING = "missing"
    TOO_LARGE = "too_large"
    WRONG_TYPE = "wrong_type"
    TOO_MANY = "too_many"


class AttachmentError(TermquizError):
    """A file attachment violates its question's constraints."""

    def __init__(self, reason: AttachmentReason, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class PushErrorKind(Enum):
    NETWORK = "network"
    CONFLICT = "conflict"
    FATAL = "fatal"


class PushError(TermquizError):
    """Submitting the response to the remote failed."""

    def __init__(self, kind: PushErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class SessionError(TermquizError):
    """A session mutation was rejected."""
