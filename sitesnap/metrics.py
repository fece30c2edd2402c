"""Prometheus collectors shared by the API, job manager, and renderer."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

JOBS_SUBMITTED = Counter(
    "sitesnap_jobs_submitted_total",
    "Capture jobs accepted by the API.",
)
JOBS_FINISHED = Counter(
    "sitesnap_jobs_finished_total",
    "Capture jobs that reached a terminal status.",
    ["status"],
)
UNITS_RENDERED = Counter(
    "sitesnap_units_rendered_total",
    "Screenshots captured and uploaded, by device.",
    ["device"],
)
RENDER_FAILURES = Counter(
    "sitesnap_render_failures_total",
    "Render attempts that failed, by failure kind.",
    ["kind"],
)
ARCHIVES_PACKAGED = Counter(
    "sitesnap_archives_packaged_total",
    "Download archives assembled, by format.",
    ["format"],
)
RENDER_SECONDS = Histogram(
    "sitesnap_render_seconds",
    "Wall time spent rendering one page under one device profile.",
    ["device"],
    buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, 90, 120),
)


def record_job_completion(status: str) -> None:
    JOBS_FINISHED.labels(status=status).inc()


def record_job_submitted() -> None:
    JOBS_SUBMITTED.inc()


def observe_render(device: str, seconds: float) -> None:
    RENDER_SECONDS.labels(device=device).observe(seconds)


def record_unit_stored(device: str) -> None:
    UNITS_RENDERED.labels(device=device).inc()


def record_render_failure(kind: str) -> None:
    RENDER_FAILURES.labels(kind=kind).inc()


def record_archive(fmt: str) -> None:
    ARCHIVES_PACKAGED.labels(format=fmt).inc()
