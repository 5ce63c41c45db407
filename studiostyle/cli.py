"""
StudioStyle command line front-end

Usage:
    studiostyle process photos/ extra.jpg --out ./data/output --concurrency 3

Non-image files are skipped with a warning. Results of completed jobs are
exported as PNGs; the exit code is 1 if any job failed, 2 if there was
nothing to process.
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from studiostyle import __version__
from studiostyle.core.config import settings
from studiostyle.core.exceptions import IntakeRejected
from studiostyle.core.logging import get_logger, setup_logging
from studiostyle.core.metrics import get_metrics, serve_metrics, set_app_info
from studiostyle.core.storage import LocalStorage
from studiostyle.jobs.export import export_job_results
from studiostyle.jobs.intake import JobIntake, collect_source_files, ensure_image
from studiostyle.jobs.models import JobStatus, SourceFile
from studiostyle.jobs.scheduler import JobScheduler, Snapshot
from studiostyle.pipeline.provider import GeminiProvider, TransformProvider

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="studiostyle",
        description="Batch background removal and studio-white backgrounds."
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    process = subparsers.add_parser("process", help="Process image files or directories")
    process.add_argument("paths", nargs="+", help="Image files or directories of images")
    process.add_argument("--out", default=settings.OUTPUT_DIR, help="Output directory for result PNGs")
    process.add_argument(
        "--concurrency",
        type=int,
        default=settings.CONCURRENCY_LIMIT,
        help="Maximum number of images processed at once"
    )
    process.add_argument(
        "--job-timeout",
        type=float,
        default=settings.JOB_TIMEOUT_SECONDS,
        help="Fail a job that runs longer than this many seconds"
    )
    process.add_argument("--log-level", default=settings.LOG_LEVEL)
    process.add_argument("--json-logs", action="store_true", default=settings.LOG_FORMAT_JSON)
    process.add_argument("--metrics-port", type=int, help="Expose Prometheus metrics on this port")
    process.add_argument("--metrics-file", help="Write Prometheus metrics to this file when the batch ends")
    return parser


def filter_images(files: Sequence[SourceFile]) -> List[SourceFile]:
    """Keep image files; log and skip the rest."""
    images = []
    for file in files:
        try:
            images.append(ensure_image(file))
        except IntakeRejected as e:
            logger.warning("file_skipped", filename=file.filename, reason=e.message)
    return images


async def run_batch(
    files: Sequence[SourceFile],
    provider: TransformProvider,
    storage: LocalStorage,
    concurrency_limit: int,
    job_timeout: Optional[float] = None
) -> Tuple[Snapshot, Dict[str, Dict[str, str]]]:
    """
    Submit every file, wait for the queue to drain, export completed results.

    Returns:
        Final job snapshot and {job_id: {variant: storage_key}} for exports
    """
    scheduler = JobScheduler(provider, concurrency_limit=concurrency_limit, job_timeout=job_timeout)
    intake = JobIntake(scheduler)
    last_status = {}

    def report_progress(snapshot: Snapshot):
        stats = scheduler.stats()
        status = (stats.pending, stats.processing, stats.completed, stats.failed)
        if status != last_status.get("value"):
            last_status["value"] = status
            logger.info(
                "queue_status",
                pending=stats.pending,
                processing=stats.processing,
                concurrency_limit=stats.concurrency_limit,
                completed=stats.completed,
                failed=stats.failed
            )

    scheduler.subscribe(report_progress)
    intake.submit(files)
    await scheduler.join()

    exports = {}
    # Snapshot is newest-first; export in submission order
    for job in sorted(scheduler.snapshot(), key=lambda j: j.sequence):
        if job.status == JobStatus.COMPLETED:
            exports[job.id] = await export_job_results(job, storage)
        intake.previews.revoke(job.preview)

    return scheduler.snapshot(), exports


async def _process(args: argparse.Namespace, images: List[SourceFile]):
    storage = LocalStorage(base_path=args.out)
    async with GeminiProvider() as provider:
        return await run_batch(
            images,
            provider,
            storage,
            concurrency_limit=args.concurrency,
            job_timeout=args.job_timeout
        )


def print_summary(jobs: Snapshot, exports: Dict[str, Dict[str, str]], out_dir: str):
    for job in sorted(jobs, key=lambda j: j.sequence):
        if job.status == JobStatus.COMPLETED:
            files = ", ".join(exports.get(job.id, {}).values())
            print(f"  OK      {job.source.filename} -> {files}")
        else:
            print(f"  FAILED  {job.source.filename}: {job.failure_reason}")
    completed = sum(1 for job in jobs if job.status == JobStatus.COMPLETED)
    print(f"{completed}/{len(jobs)} images processed, results in {out_dir}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    setup_logging(log_level=args.log_level, json_format=args.json_logs)
    set_app_info(version=__version__, environment=settings.ENVIRONMENT)
    if args.metrics_port:
        serve_metrics(args.metrics_port)
        logger.info("metrics_server_started", port=args.metrics_port)

    if args.concurrency < 1:
        logger.error("invalid_concurrency", concurrency=args.concurrency)
        return 2

    try:
        files = collect_source_files(args.paths)
    except FileNotFoundError as e:
        logger.error("input_not_found", error=str(e))
        return 2

    images = filter_images(files)
    if not images:
        logger.error("no_images_found", paths=args.paths)
        return 2

    if not settings.GEMINI_API_KEY:
        logger.warning("provider_api_key_missing", setting="GEMINI_API_KEY")

    jobs, exports = asyncio.run(_process(args, images))
    print_summary(jobs, exports, args.out)
    if args.metrics_file:
        Path(args.metrics_file).write_bytes(get_metrics())
        logger.info("metrics_written", path=args.metrics_file)

    return 1 if any(job.status == JobStatus.FAILED for job in jobs) else 0


def run():
    sys.exit(main())


if __name__ == "__main__":
    run()
