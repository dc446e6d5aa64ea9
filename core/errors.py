"""
Error taxonomy for the transcode pipeline, plus helpers for the error text
that ends up on job/profile records.

Every failure a worker can hit while handling one queue item maps onto one of
the exception classes below. The worker pool relies on this: anything raised
for a single job is recorded on that job/profile and never stops the loop.
"""

import logging
import re
from typing import Optional

from config import ERROR_DETAIL_MAX_LENGTH

logger = logging.getLogger(__name__)


class TranscodeError(Exception):
    """Base class for all pipeline errors."""


class InvalidPayloadError(TranscodeError):
    """A queue entry could not be decoded into a (video_id, profile_id) pair."""

    def __init__(self, payload, reason: str):
        self.payload = payload
        self.reason = reason
        super().__init__(f"Invalid queue payload {payload!r}: {reason}")


class RecordNotFoundError(TranscodeError):
    """A video or profile referenced by a job does not exist."""

    def __init__(self, kind: str, record_id: int):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} {record_id} not found")


class EncodeError(TranscodeError):
    """The external encoder could not be launched or exited non-zero."""

    def __init__(self, message: str, returncode: Optional[int] = None, output: str = ""):
        self.returncode = returncode
        self.output = output
        super().__init__(message)

    @property
    def diagnostic(self) -> str:
        """Message plus the encoder's own output, as stored on the failed records."""
        if self.output:
            return f"{self}\n{self.output}"
        return str(self)


class OutputError(TranscodeError):
    """Creating an output directory or writing a playlist failed."""


class QueueUnavailableError(TranscodeError):
    """The queue backend could not be reached."""


class InvalidTransitionError(TranscodeError):
    """A status change that the job/profile state machine does not allow."""

    def __init__(self, kind: str, current: str, target: str):
        self.kind = kind
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {kind} from '{current}' to '{target}'")


def truncate_error(error: Optional[str], max_length: int = ERROR_DETAIL_MAX_LENGTH) -> Optional[str]:
    """
    Truncate an error message for storage on a record.

    Keeps the tail of the message, since encoder output puts the actual
    failure reason at the end.
    """
    if error is None:
        return None
    if len(error) <= max_length:
        return error
    marker = "...[truncated] "
    keep = max(max_length - len(marker), 0)
    return marker + error[len(error) - keep:]


# Patterns that indicate internal details
INTERNAL_PATTERNS = [
    r"/home/\w+/",
    r"/mnt/\w+/",
    r"/srv/\w+/",
    r"/tmp/\w+",
    r'File "[^"]+\.py"',
    r"line \d+",
]

# Operator-facing summaries for common failure kinds
ERROR_MESSAGES = {
    "encoder": "Encoding failed. Check the encoder output in the worker log.",
    "timeout": "Encoding timed out.",
    "not_found": "Source video or profile record is missing.",
    "output": "Could not write transcoded output.",
    "queue": "Job queue is unavailable.",
    "general": "Transcoding failed.",
}


def sanitize_error_message(error: Optional[str], context: str = "") -> Optional[str]:
    """
    Reduce a stored error to a one-line summary safe to show outside the worker.

    Args:
        error: The original error message (may contain paths or encoder output)
        context: Additional context for logging (e.g., "profile_id=12")

    Returns:
        A short summary, or None if there was no error
    """
    if error is None:
        return None

    if context:
        logger.debug(f"Sanitizing error ({context}): {error}")

    error_lower = error.lower()

    if "timed out" in error_lower or "timeout" in error_lower:
        return ERROR_MESSAGES["timeout"]
    if "encoder" in error_lower or "ffmpeg" in error_lower:
        return ERROR_MESSAGES["encoder"]
    if "not found" in error_lower:
        return ERROR_MESSAGES["not_found"]
    if "output" in error_lower or "permission" in error_lower:
        return ERROR_MESSAGES["output"]
    if "queue" in error_lower:
        return ERROR_MESSAGES["queue"]

    for pattern in INTERNAL_PATTERNS:
        if re.search(pattern, error, re.IGNORECASE):
            return ERROR_MESSAGES["general"]

    first_line = error.splitlines()[0] if error else error
    if len(first_line) < 100:
        return first_line

    return ERROR_MESSAGES["general"]
