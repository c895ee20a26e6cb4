"""Error taxonomy for recording processing.

Per-file errors (I/O, resolution) are recorded against the recording and never
stop the daemon. Only ConfigurationError is fatal, and only at startup.
"""

from typing import List, Optional


class DvrManagerError(Exception):
    """Base class for all dvr-manager errors."""

    kind = "error"


class ConfigurationError(DvrManagerError):
    """Configuration is missing, unreadable or invalid."""

    kind = "configuration"


class InvalidTransition(DvrManagerError, ValueError):
    """A recording was asked to move to a state it cannot reach."""

    kind = "invalid_transition"


class RecordingIOError(DvrManagerError):
    """Filesystem failure while handling a recording."""

    kind = "io"
    retryable = True


class TransientIOError(RecordingIOError):
    """Temporary failure (lock, network filesystem blip, source still changing)."""

    kind = "transient_io"
    retryable = True


class PermanentIOError(RecordingIOError):
    """Failure that retrying will not fix (disk full, permission denied)."""

    kind = "permanent_io"
    retryable = False


class VerificationMismatch(RecordingIOError):
    """Copied data does not match the source."""

    kind = "verification_mismatch"
    retryable = True

    def __init__(self, message: str, expected: Optional[str] = None, actual: Optional[str] = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class OperationCancelled(DvrManagerError):
    """A copy or lookup was aborted because the daemon is draining."""

    kind = "cancelled"


class MetadataServiceError(DvrManagerError):
    """The external metadata service failed or timed out."""

    kind = "metadata_service"


class ResolutionError(DvrManagerError):
    """A recording could not be mapped to a single media identity."""

    kind = "resolution"


class ResolutionAmbiguous(ResolutionError):
    """Several candidates share the top confidence.

    Not raised by the resolver: the best candidate is used and this error is
    written to the audit trail so the choice can be reviewed.
    """

    kind = "ambiguous"

    def __init__(self, message: str, candidates: Optional[List] = None):
        super().__init__(message)
        self.candidates = list(candidates or [])


class ResolutionUnresolvable(ResolutionError):
    """No candidate reached the minimum confidence."""

    kind = "unresolvable"
