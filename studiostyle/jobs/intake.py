"""
Job Intake

Turns submitted files into PENDING jobs and hands them to the scheduler.
Filtering non-images is the caller's job (see is_image / ensure_image);
intake itself never rejects a file.
"""

import uuid
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from studiostyle.core.exceptions import IntakeRejected
from studiostyle.core.logging import get_logger
from studiostyle.jobs.models import Job, PreviewRef, SourceFile
from studiostyle.jobs.scheduler import JobScheduler

logger = get_logger(__name__)

PREVIEW_SCHEME = "preview://"


def is_image(file: SourceFile) -> bool:
    """True when the file's content type is an image type."""
    return bool(file.mime_type) and file.mime_type.startswith("image/")


def ensure_image(file: SourceFile) -> SourceFile:
    """Return the file unchanged, or raise IntakeRejected if it is not an image."""
    if not is_image(file):
        raise IntakeRejected(file.filename, file.mime_type or None)
    return file


def collect_source_files(paths: Iterable[Union[str, Path]]) -> List[SourceFile]:
    """Expand paths (directories one level deep) into path-backed source files."""
    files: List[SourceFile] = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            files.extend(
                SourceFile.from_path(child)
                for child in sorted(path.iterdir())
                if child.is_file()
            )
        else:
            files.append(SourceFile.from_path(path))
    return files


def generate_job_id(file: SourceFile) -> str:
    """Filename + modification time + random component."""
    return f"{file.filename}-{file.last_modified}-{uuid.uuid4().hex}"


class PreviewRegistry:
    """
    Issues revocable preview references for source files.

    A reference resolves to the source it was issued for until revoked.
    """

    def __init__(self):
        self._entries: Dict[str, SourceFile] = {}

    def create(self, file: SourceFile) -> PreviewRef:
        token = uuid.uuid4().hex
        self._entries[token] = file
        return PreviewRef(uri=f"{PREVIEW_SCHEME}{token}")

    def _token(self, ref: PreviewRef) -> str:
        if not ref.uri.startswith(PREVIEW_SCHEME):
            raise ValueError(f"Not a preview reference: {ref.uri}")
        return ref.uri[len(PREVIEW_SCHEME):]

    def resolve(self, ref: PreviewRef) -> Optional[SourceFile]:
        """The source behind a reference, or None once revoked."""
        return self._entries.get(self._token(ref))

    def revoke(self, ref: PreviewRef) -> bool:
        """Invalidate a reference. Returns False if it was already revoked."""
        return self._entries.pop(self._token(ref), None) is not None

    def __len__(self) -> int:
        return len(self._entries)


class JobIntake:
    """Converts submitted files into queued jobs."""

    def __init__(self, scheduler: JobScheduler, previews: Optional[PreviewRegistry] = None):
        self.scheduler = scheduler
        self.previews = previews or PreviewRegistry()

    def build_job(self, file: SourceFile) -> Job:
        return Job(
            id=generate_job_id(file),
            source=file,
            preview=self.previews.create(file),
        )

    def submit(self, files: Iterable[SourceFile]) -> List[Job]:
        """
        Create a PENDING job per file and enqueue them in the given order.

        Returns the jobs as stored by the scheduler (with sequence numbers);
        the ones that fit into free slots are already PROCESSING.
        """
        new_jobs = [self.build_job(file) for file in files]
        if not new_jobs:
            return []

        logger.info("jobs_submitted", count=len(new_jobs))
        return self.scheduler.enqueue(new_jobs)
