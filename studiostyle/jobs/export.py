"""
Result Export

Writes a completed job's two PNG variants to storage under time-based
filenames, e.g. processed_image_1716199200000_transparent.png.
"""

import time
from typing import Dict, Optional

from studiostyle.core.logging import get_logger
from studiostyle.core.storage import IStorage, get_storage
from studiostyle.jobs.models import Job, JobStatus

logger = get_logger(__name__)

RESULT_FORMAT = "png"


def result_filename(variant: str, timestamp_ms: Optional[int] = None) -> str:
    """processed_image_<epoch ms>_<variant>.png"""
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f"processed_image_{timestamp_ms}_{variant}.{RESULT_FORMAT}"


async def export_job_results(
    job: Job,
    storage: Optional[IStorage] = None,
    folder: str = "results"
) -> Dict[str, str]:
    """
    Store both variants of a COMPLETED job.

    Returns:
        {"transparent": storage_key, "white_background": storage_key}
    """
    if job.status != JobStatus.COMPLETED or job.results is None:
        raise ValueError(f"Job '{job.id}' has no results to export (status {job.status.value})")

    storage = storage or get_storage()
    keys = {}
    for variant, data in (
        ("transparent", job.results.transparent),
        ("white_background", job.results.white_background),
    ):
        keys[variant] = await storage.upload(
            data,
            result_filename(variant),
            folder=folder,
            content_type=f"image/{RESULT_FORMAT}"
        )

    logger.info("job_results_exported", job_id=job.id, storage_keys=keys)
    return keys
