"""
Jobs Module - intake, job model and the concurrency-limited scheduler.
"""

from studiostyle.jobs.models import Job, JobResults, JobStatus, SourceFile, PreviewRef

__all__ = ["Job", "JobResults", "JobStatus", "SourceFile", "PreviewRef"]
