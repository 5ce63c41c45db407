"""
Job Model with Lifecycle Tracking

Job records are immutable: every status change returns a new record, so the
scheduler can replace its collection wholesale and observers can hold on to
a snapshot safely.

State machine:
    PENDING -> PROCESSING -> COMPLETED
                          -> FAILED
"""

import asyncio
import io
import mimetypes
import time
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, ConfigDict, Field, model_validator

from studiostyle.core.exceptions import InvalidTransitionError


class JobStatus(str, Enum):
    """Job status states."""
    PENDING = "PENDING"           # Queued, waiting for a concurrency slot
    PROCESSING = "PROCESSING"     # Admitted, provider calls in flight
    COMPLETED = "COMPLETED"       # Both variants produced
    FAILED = "FAILED"             # Either variant failed

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sniff_mime_type(source: Union[bytes, Path], filename: str = "") -> Optional[str]:
    """Detect an image content type from its header, falling back to the extension."""
    try:
        opened = Image.open(source if isinstance(source, Path) else io.BytesIO(source))
        with opened as image:
            mime_type = Image.MIME.get(image.format or "")
        if mime_type:
            return mime_type
    except (UnidentifiedImageError, OSError):
        pass
    guessed, _ = mimetypes.guess_type(filename)
    return guessed


class SourceFile(BaseModel):
    """
    A user-submitted file: either in-memory bytes or a local path.

    Read-only once created; the bytes are loaded lazily for path-backed files.
    """
    model_config = ConfigDict(frozen=True)

    filename: str
    mime_type: str = ""
    last_modified: int = Field(default_factory=lambda: int(time.time() * 1000))  # epoch ms
    data: Optional[bytes] = Field(default=None, repr=False)
    path: Optional[Path] = None

    @model_validator(mode="after")
    def _check_backing(self) -> "SourceFile":
        if self.data is None and self.path is None:
            raise ValueError("SourceFile needs either data or a path")
        return self

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "SourceFile":
        """Build a path-backed source, sniffing its content type."""
        path = Path(path)
        stat = path.stat()
        return cls(
            filename=path.name,
            mime_type=sniff_mime_type(path, path.name) or "",
            last_modified=int(stat.st_mtime * 1000),
            path=path,
        )

    @classmethod
    def from_bytes(
        cls,
        data: bytes,
        filename: str,
        mime_type: Optional[str] = None,
        last_modified: Optional[int] = None
    ) -> "SourceFile":
        """Build an in-memory source; the content type is sniffed when not given."""
        kwargs = {}
        if last_modified is not None:
            kwargs["last_modified"] = last_modified
        return cls(
            filename=filename,
            mime_type=mime_type or sniff_mime_type(data, filename) or "",
            data=data,
            **kwargs,
        )

    async def read_bytes(self) -> bytes:
        """Return the file's bytes, reading path-backed files off the event loop."""
        if self.data is not None:
            return self.data
        return await asyncio.to_thread(self.path.read_bytes)


class PreviewRef(BaseModel):
    """Revocable local reference used for display; not the authoritative bytes."""
    model_config = ConfigDict(frozen=True)

    uri: str


class JobResults(BaseModel):
    """The two PNG variants produced for a completed job."""
    model_config = ConfigDict(frozen=True)

    transparent: bytes = Field(repr=False)
    white_background: bytes = Field(repr=False)

    @model_validator(mode="after")
    def _check_non_empty(self) -> "JobResults":
        if not self.transparent or not self.white_background:
            raise ValueError("Both result buffers must be non-empty")
        return self


class Job(BaseModel):
    """
    One submitted image's unit of work.

    Tracks:
    - Identity, source file and preview reference
    - Status with validated transitions
    - Results (COMPLETED) or failure reason (FAILED)
    - Timing
    """
    model_config = ConfigDict(frozen=True)

    id: str
    source: SourceFile
    preview: PreviewRef
    status: JobStatus = JobStatus.PENDING
    results: Optional[JobResults] = None
    failure_reason: Optional[str] = None

    # Assigned by the scheduler on enqueue; FIFO admission order
    sequence: Optional[int] = None
    attempts: int = 0

    # Timestamps
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    processing_time_ms: Optional[int] = None

    @model_validator(mode="after")
    def _check_outcome_matches_status(self) -> "Job":
        if self.status == JobStatus.COMPLETED:
            if self.results is None or self.failure_reason is not None:
                raise ValueError("A COMPLETED job carries results and no failure reason")
        elif self.status == JobStatus.FAILED:
            if not self.failure_reason or self.results is not None:
                raise ValueError("A FAILED job carries a failure reason and no results")
        elif self.results is not None or self.failure_reason is not None:
            raise ValueError(f"A {self.status.value} job carries neither results nor a failure reason")
        return self

    @property
    def mime_type(self) -> str:
        return self.source.mime_type

    def _evolve(self, **changes) -> "Job":
        # Re-validate so the outcome/status invariant holds on every record
        return type(self).model_validate({**dict(self), **changes})

    def _transition(self, target: JobStatus, **changes) -> "Job":
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.id, self.status.value, target.value)
        return self._evolve(status=target, **changes)

    def _finished(self) -> dict:
        completed_at = _utcnow()
        elapsed_ms = None
        if self.started_at:
            elapsed_ms = int((completed_at - self.started_at).total_seconds() * 1000)
        return {"completed_at": completed_at, "processing_time_ms": elapsed_ms}

    def with_sequence(self, sequence: int) -> "Job":
        """Stamp the insertion sequence number."""
        return self._evolve(sequence=sequence)

    def with_attempts(self, attempts: int) -> "Job":
        """Record how many processing attempts have been made."""
        return self._evolve(attempts=attempts)

    def mark_processing(self) -> "Job":
        """Mark job as admitted to a concurrency slot."""
        return self._transition(JobStatus.PROCESSING, started_at=_utcnow())

    def mark_completed(self, results: JobResults) -> "Job":
        """Mark job as completed with both variants."""
        return self._transition(JobStatus.COMPLETED, results=results, **self._finished())

    def mark_failed(self, reason: str) -> "Job":
        """Mark job as failed."""
        return self._transition(
            JobStatus.FAILED,
            failure_reason=reason or "Unknown error",
            **self._finished()
        )

    def to_response_dict(self) -> dict:
        """Convert to a display-friendly summary (no image bytes)."""
        return {
            "id": self.id,
            "filename": self.source.filename,
            "mime_type": self.source.mime_type,
            "preview": self.preview.uri,
            "status": self.status.value,
            "error": self.failure_reason,
            "has_results": self.results is not None,
            "attempts": self.attempts,
            "processing_time_ms": self.processing_time_ms,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
