"""
Error taxonomy for the ingestion pipeline.

Every error raised on purpose by the pipeline derives from IngestError so that
callers (CLI, HTTP layer, job boundary) can tell expected failures apart from bugs.
"""
from typing import Optional


class IngestError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(IngestError):
    """Bad input (e.g. a malformed URL); rejected before any work starts."""


class ContentRejected(IngestError):
    """Corrupted or too-short content. The page is skipped, never retried."""

    def __init__(self, reason: str, preview: str = ""):
        self.reason = reason
        self.preview = (preview or "")[:100]
        super().__init__(f"Content rejected: {reason}")


class TransientCallFailure(IngestError):
    """Throttling, timeout, 5xx or connection reset from an outbound call."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class FatalCallFailure(IngestError):
    """Any other outbound call failure. Surfaced immediately."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class CallFailedAfterRetries(IngestError):
    def __init__(self, operation: str, attempts: int, last_error: Optional[BaseException] = None):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempts: {last_error}"
        )


class ReindexConflict(IngestError):
    """The backend is already running a re-index job."""

    DEFAULT_MESSAGE = (
        "Knowledge base is currently processing data. "
        "Please wait for the current job to complete and try again in a few minutes."
    )

    def __init__(self, message: str = DEFAULT_MESSAGE, active_job_id: Optional[str] = None):
        self.active_job_id = active_job_id
        super().__init__(message)


class PipelineJobFailure(IngestError):
    def __init__(self, job_id: str, cause: BaseException):
        self.job_id = job_id
        self.cause = cause
        super().__init__(f"Job {job_id} failed: {cause}")


class JobNotFound(IngestError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class InvalidJobTransition(IngestError):
    def __init__(self, job_id: str, status: str):
        self.job_id = job_id
        self.status = status
        super().__init__(f"Job {job_id} is already {status}; no further transitions allowed")
