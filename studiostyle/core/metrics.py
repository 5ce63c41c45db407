"""
Prometheus Metrics for Observability

Tracks job outcomes, queue depth, and provider call latency.
The CLI can expose these over HTTP for Prometheus scraping.
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    generate_latest,
    start_http_server,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Jobs Counter
jobs_total = Counter(
    "studiostyle_jobs_total",
    "Total number of jobs that reached a terminal status",
    labelnames=["status"]
)

# Active Jobs
active_jobs_gauge = Gauge(
    "studiostyle_active_jobs",
    "Number of jobs currently occupying a concurrency slot"
)

# Pending Jobs
pending_jobs_gauge = Gauge(
    "studiostyle_pending_jobs",
    "Number of jobs waiting for a concurrency slot"
)

# Provider Calls
provider_calls_total = Counter(
    "provider_calls_total",
    "Total number of image-generation provider calls",
    labelnames=["operation", "status"]
)

provider_latency_seconds = Histogram(
    "provider_latency_seconds",
    "Time spent in each provider operation",
    labelnames=["operation", "status"],
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0]
)

# Application Info
app_info = Info(
    "studiostyle_app",
    "Application information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment
    })


@contextmanager
def track_operation_latency(operation: str):
    """
    Context manager to track provider operation latency and outcome.

    Usage:
        with track_operation_latency("remove_background"):
            # call the provider
    """
    start = time.monotonic()
    status = "success"
    try:
        yield
    except BaseException:
        status = "error"
        raise
    finally:
        duration = time.monotonic() - start
        provider_latency_seconds.labels(operation=operation, status=status).observe(duration)
        provider_calls_total.labels(operation=operation, status=status).inc()


def record_queue_depth(pending: int, processing: int):
    """Record the current queue depth."""
    pending_jobs_gauge.set(pending)
    active_jobs_gauge.set(processing)


def record_job_completion(status: str):
    """Record a job reaching a terminal status."""
    jobs_total.labels(status=status).inc()


def serve_metrics(port: int):
    """Expose the default registry on a background HTTP server."""
    start_http_server(port)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)
