"""
Exception Taxonomy

Provider and intake failures are caught at the job boundary and turned into
a FAILED job status; programming errors (illegal transitions, duplicate ids)
propagate to the caller.
"""

from typing import Optional, Dict, Any

from studiostyle.core.logging import job_id_var


class StudioStyleError(Exception):
    """Base exception for StudioStyle."""

    def __init__(
        self,
        message: str,
        job_id: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.job_id = job_id or job_id_var.get()
        self.operation = operation
        self.details = details or {}
        super().__init__(self.message)


class IntakeRejected(StudioStyleError):
    """Raised when a submitted file is not an image."""

    def __init__(self, filename: str, mime_type: Optional[str], **kwargs):
        super().__init__(
            f"'{filename}' is not an image (content type: {mime_type or 'unknown'})",
            **kwargs
        )
        self.details["filename"] = filename
        self.details["mime_type"] = mime_type


class ProviderError(StudioStyleError):
    """Raised when the image-generation provider call fails."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        http_status: Optional[int] = None,
        cause: Optional[BaseException] = None,
        **kwargs
    ):
        super().__init__(message, operation=operation, **kwargs)
        self.cause = cause
        self.details["http_status"] = http_status
        if cause is not None:
            self.details["cause_type"] = type(cause).__name__


class NoImageReturned(StudioStyleError):
    """Raised when a well-formed provider response carries no image part."""

    def __init__(self, message: str = "No image data found in provider response.", **kwargs):
        super().__init__(message, **kwargs)


class JobDeadlineExceeded(StudioStyleError):
    """Raised when a job runs past the configured deadline."""

    def __init__(self, timeout_seconds: float, **kwargs):
        super().__init__(f"Job exceeded its deadline of {timeout_seconds:g}s", **kwargs)
        self.details["timeout_seconds"] = timeout_seconds


class InvalidTransitionError(StudioStyleError):
    """Raised when a job status change is not allowed by the state machine."""

    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(
            f"Job '{job_id}' cannot move from {current} to {target}",
            job_id=job_id
        )
        self.details["current"] = current
        self.details["target"] = target


class DuplicateJobError(StudioStyleError):
    """Raised when a job id is enqueued twice."""

    def __init__(self, job_id: str):
        super().__init__(f"Job '{job_id}' is already queued", job_id=job_id)
