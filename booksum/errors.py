"""Error kinds raised by the summarization pipeline and its collaborators."""

from enum import Enum


class ErrorKind(str, Enum):
    PARSE = "parse"
    TRANSFORM = "transform"
    AUTH = "auth"
    ASSEMBLY = "assembly"
    STAGE = "stage"
    CANCELLED = "cancelled"
    BACKUP_FORMAT = "backup_format"


class SummaryError(Exception):
    """Base class. `phase` is the pipeline state the error surfaced in, if any."""

    kind = None

    def __init__(self, message, phase=None):
        super().__init__(message)
        self.message = message
        self.phase = phase

    def __str__(self):
        if self.phase:
            return f"{self.message} (phase: {self.phase})"
        return self.message


class ParseError(SummaryError):
    """The source document could not be read, or yielded too little text."""

    kind = ErrorKind.PARSE


class TransformError(SummaryError):
    """A single LLM call failed."""

    kind = ErrorKind.TRANSFORM

    def __init__(self, message, status_code=None, phase=None):
        super().__init__(message, phase=phase)
        self.status_code = status_code

    @property
    def is_transient(self):
        # No status means a connection-level failure.
        if self.status_code is None:
            return True
        return self.status_code in (408, 429) or self.status_code >= 500


class AuthError(TransformError):
    """The LLM backend rejected the credentials (HTTP 401/403)."""

    kind = ErrorKind.AUTH

    @property
    def is_transient(self):
        return False


class AssemblyError(SummaryError):
    """No chunk produced usable output."""

    kind = ErrorKind.ASSEMBLY


class StageError(SummaryError):
    """Consolidation or polishing failed."""

    kind = ErrorKind.STAGE


class RunCancelledError(SummaryError):
    kind = ErrorKind.CANCELLED


class BackupFormatError(SummaryError):
    """A backup file does not have the expected version/items shape."""

    kind = ErrorKind.BACKUP_FORMAT


AUTH_STATUS_CODES = (401, 403)


def error_for_status(message, status_code):
    """Maps an HTTP status to AuthError or TransformError."""
    if status_code in AUTH_STATUS_CODES:
        return AuthError(message, status_code=status_code)
    return TransformError(message, status_code=status_code)
