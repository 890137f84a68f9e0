"""Error taxonomy for export sessions with recovery suggestions"""

from typing import Any, Dict, List, Optional


# Error categories
FATAL = "fatal"
RECOVERABLE = "recoverable"
CONCURRENCY = "concurrency"

# Status messages are stored on a single line
MAX_STATUS_MESSAGE_LENGTH = 500


# Error code to recovery suggestions mapping
RECOVERY_SUGGESTIONS: Dict[str, List[str]] = {
    "SOURCE_001": [
        "Check that the source directory exists",
        "Ensure the worker process can read and list the directory",
    ],
    "OUTPUT_001": [
        "Check that the export directory exists and is writable",
        "Verify there is free disk space for the archive and dump",
    ],
    "DATABASE_001": [
        "Verify DATABASE_URL points at a reachable server",
        "Check the database credentials and that the user may read all tables",
    ],
    "ARCHIVE_001": [
        "Too many files could not be read; check file permissions in the source tree",
        "Files may have been deleted while the export was running; start a new export",
    ],
    "ARCHIVE_002": [
        "The archive is shorter than the recorded progress; start a new export",
    ],
    "ARCHIVE_003": [
        "Shorten the file or directory name",
    ],
    "CHECKPOINT_001": [
        "Abort the session and start a new export",
    ],
    "VALIDATION_001": [
        "Review the validation problems in the run log",
        "Start a new export once the cause is resolved",
    ],
    "SESSION_001": [
        "Check the session id, or start a new export",
    ],
    "LEASE_001": [
        "Wait for the active export to finish",
        "If it is stuck, wait for its lease to expire or abort it",
    ],
}


class ExportError(Exception):
    """
    Base error raised by export components.

    Attributes:
        message: User-facing error message
        code: Unique error code (e.g., "SOURCE_001")
        category: fatal, recoverable or concurrency
        technical: Technical details for debugging
    """

    code = "EXPORT_000"
    category = FATAL

    def __init__(self, message: str, technical: Optional[str] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.technical = technical
        if code:
            self.code = code

    @property
    def suggestions(self) -> List[str]:
        return RECOVERY_SUGGESTIONS.get(self.code, [])

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization"""
        result = {
            "category": self.category,
            "code": self.code,
            "message": self.message,
            "suggestions": self.suggestions,
        }
        if self.technical:
            result["technical"] = self.technical
        return result


class SourceUnavailableError(ExportError):
    """The content root is missing or unreadable."""
    code = "SOURCE_001"


class OutputUnavailableError(ExportError):
    """An output artifact could not be opened or written."""
    code = "OUTPUT_001"


class DatabaseUnavailableError(ExportError):
    """The database could not be reached or queried."""
    code = "DATABASE_001"


class FailureCeilingExceededError(ExportError):
    """Too many items failed; the export is considered unreliable."""
    code = "ARCHIVE_001"


class IncompleteArchiveError(ExportError):
    """Fewer files were archived than the completion threshold requires."""
    code = "ARCHIVE_001"


class ArchiveCorruptedError(ExportError):
    """The archive on disk does not match the recorded progress."""
    code = "ARCHIVE_002"


class ArchiveHeaderError(ExportError):
    """An entry cannot be represented in a fixed-width header."""
    code = "ARCHIVE_003"
    category = RECOVERABLE


class EntryReadError(ExportError):
    """A source file changed or vanished while being archived."""
    code = "ARCHIVE_004"
    category = RECOVERABLE


class CheckpointCorruptedError(ExportError):
    """The checkpoint record could not be parsed."""
    code = "CHECKPOINT_001"


class ValidationFailedError(ExportError):
    """Finished artifacts failed the completion checks."""
    code = "VALIDATION_001"

    def __init__(self, problems: List[str]):
        super().__init__("Completion validation failed: " + "; ".join(problems))
        self.problems = problems


class SessionNotFoundError(ExportError):
    """No active session matches the given id."""
    code = "SESSION_001"


class LeaseHeldError(ExportError):
    """Another unexpired session holds the export lease."""
    code = "LEASE_001"
    category = CONCURRENCY

    def __init__(self, owner: str, age: float):
        super().__init__(
            f"Another export session is active ({owner}, last renewed {age:.0f}s ago)"
        )
        self.owner = owner
        self.age = age


def format_status_message(exc: BaseException) -> str:
    """
    Build the single-line message stored after ``error:`` in the status token.

    Args:
        exc: The exception caught at the phase boundary

    Returns:
        Message with newlines collapsed and length capped
    """
    if isinstance(exc, ExportError):
        text = exc.message
    else:
        text = f"{type(exc).__name__}: {exc}"
    text = " ".join(text.split())
    if len(text) > MAX_STATUS_MESSAGE_LENGTH:
        text = text[: MAX_STATUS_MESSAGE_LENGTH - 3] + "..."
    return text or type(exc).__name__
