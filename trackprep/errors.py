"""Error types raised by the processing pipeline."""
from typing import Optional


class ProcessError(Exception):
    """Base error for external process invocation."""


class ProcessSpawnError(ProcessError):
    """The binary could not be started (missing or not executable)."""


class ProcessExitError(ProcessError):
    def __init__(self, program: str, code: int, stderr: str = ""):
        super().__init__(f"{program} exited with code {code}")
        self.program = program
        self.code = code
        self.stderr = stderr


class ProcessCancelledError(ProcessError):
    """The process was killed because its task was cancelled."""


class ProcessTimeoutError(ProcessError):
    """The process was killed after running past its deadline."""


class ProcessingError(Exception):
    """Base error for a pipeline phase.

    ``message`` is what the caller gets to see; ``details`` carries optional
    diagnostic text (process output, paths) that is never the primary message.
    """

    retryable = False

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(ProcessingError):
    """Bad format, oversize or over-duration input."""


class DownloadError(ProcessingError):
    retryable = True


class UploadError(ProcessingError):
    """Processed files could not be handed to object storage."""

    retryable = True


class DurationProbeError(ProcessingError):
    pass


class TranscodeError(ProcessingError):
    pass


class TagWriteError(ProcessingError):
    """Tags could not be written. The pipeline continues without them."""


class SegmentationError(ProcessingError):
    def __init__(self, index: int, message: str, details: Optional[str] = None):
        super().__init__(message, details)
        self.index = index


class PlaylistError(ProcessingError):
    pass


class CleanupError(ProcessingError):
    """Working area could not be removed. Logged, never surfaced."""


class TaskCancelled(ProcessingError):
    pass


__all__ = [
    "ProcessError",
    "ProcessSpawnError",
    "ProcessExitError",
    "ProcessCancelledError",
    "ProcessTimeoutError",
    "ProcessingError",
    "ValidationError",
    "DownloadError",
    "UploadError",
    "DurationProbeError",
    "TranscodeError",
    "TagWriteError",
    "SegmentationError",
    "PlaylistError",
    "CleanupError",
    "TaskCancelled",
]
