"""Entry point for the FastAPI application."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import StreamingResponse
from prometheus_client import start_http_server
from prometheus_fastapi_instrumentator import Instrumentator

from sitesnap.jobs import DEFAULT_OWNER, JobManager, JobSnapshot
from sitesnap.packager import ArchiveUnavailableError
from sitesnap.schemas import (
    CancelResponse,
    CaptureRequest,
    CaptureResponse,
    FileMappingEntry,
    JobStatusResponse,
    SweepResponse,
)
from sitesnap.settings import settings
from sitesnap.store import TERMINAL_STATUSES, CaptureJob, JobStateError, JobStatus

LOGGER = logging.getLogger(__name__)
_PROMETHEUS_EXPORTER_STARTED = False


async def _start_prometheus_exporter() -> None:
    """Expose Prometheus metrics on the configured auxiliary port."""

    global _PROMETHEUS_EXPORTER_STARTED
    if _PROMETHEUS_EXPORTER_STARTED:
        return
    port = settings.telemetry.prometheus_port
    if port <= 0:
        return
    try:
        start_http_server(port)
    except OSError as exc:  # pragma: no cover - system dependent
        LOGGER.warning("Prometheus exporter failed to bind on port %s: %s", port, exc)
        return
    _PROMETHEUS_EXPORTER_STARTED = True
    LOGGER.info("Prometheus exporter listening on port %s", port)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    await _start_prometheus_exporter()
    JOB_MANAGER.start_watchdog()
    yield
    await JOB_MANAGER.shutdown()


app = FastAPI(title="Sitesnap", lifespan=_lifespan)
instrumentator = Instrumentator(should_instrument_requests_inprogress=True)
instrumentator.instrument(app)
try:
    instrumentator.expose(app, include_in_schema=False, should_gzip=True)
except ValueError:  # pragma: no cover - already registered
    LOGGER.debug("Prometheus /metrics endpoint already exposed")

JOB_MANAGER = JobManager()


def _job_to_response(job: CaptureJob) -> JobStatusResponse:
    return JobStatusResponse(
        job_id=job.id,
        status=job.status.value,
        progress=job.progress,
        seed_url=job.seed_url,
        devices=list(job.devices),
        page_budget=job.page_budget,
        all_pages=job.all_pages,
        exclude_popups=job.exclude_popups,
        error_message=job.error_message,
        discovered_pages=job.discovered_pages,
        download_count=job.download_count,
        created_at=job.created_at,
        expires_at=job.expires_at,
        finished_at=job.finished_at,
        file_mapping=[FileMappingEntry(**entry) for entry in job.file_mapping],
    )


@app.get("/health", tags=["health"])
async def healthcheck() -> dict[str, str]:
    """Return a simple status useful for smoke tests."""

    return {"status": "ok"}


@app.post("/captures", response_model=CaptureResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_capture(
    request: CaptureRequest,
    owner_id: str = Header(default=DEFAULT_OWNER, alias="X-Owner-Id"),
) -> CaptureResponse:
    try:
        job = await JOB_MANAGER.submit(request, owner_id=owner_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return CaptureResponse(job_id=job.id, status=job.status.value, expires_at=job.expires_at)


@app.get("/captures", response_model=list[JobStatusResponse])
async def list_captures(
    owner_id: str = Header(default=DEFAULT_OWNER, alias="X-Owner-Id"),
    limit: int = Query(default=50, ge=1, le=500),
) -> list[JobStatusResponse]:
    jobs = await asyncio.to_thread(JOB_MANAGER.list_jobs, owner_id, limit=limit)
    return [_job_to_response(job) for job in jobs]


@app.get("/captures/{job_id}", response_model=JobStatusResponse)
async def fetch_capture(
    job_id: str,
    owner_id: str = Header(default=DEFAULT_OWNER, alias="X-Owner-Id"),
) -> JobStatusResponse:
    try:
        job = await asyncio.to_thread(JOB_MANAGER.get_job, job_id, owner_id=owner_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc
    return _job_to_response(job)


@app.put("/captures/{job_id}/cancel", response_model=CancelResponse)
async def cancel_capture(
    job_id: str,
    owner_id: str = Header(default=DEFAULT_OWNER, alias="X-Owner-Id"),
) -> CancelResponse:
    try:
        job = await JOB_MANAGER.cancel(job_id, owner_id=owner_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc
    except JobStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return CancelResponse(job_id=job.id, status=job.status.value)


@app.get("/captures/{job_id}/download")
async def download_capture(
    job_id: str,
    fmt: str = Query(default="zip", alias="format"),
    owner_id: str = Header(default=DEFAULT_OWNER, alias="X-Owner-Id"),
) -> Response:
    try:
        archive = await JOB_MANAGER.package(job_id, owner_id=owner_id, fmt=fmt)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc
    except ArchiveUnavailableError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.reason) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    headers = {"Content-Disposition": f'attachment; filename="{archive.filename}"'}
    if archive.skipped:
        headers["X-Skipped-Files"] = str(len(archive.skipped))
    return Response(content=archive.content, media_type=archive.media_type, headers=headers)


@app.get("/captures/{job_id}/stream")
async def capture_stream(
    job_id: str,
    request: Request,
    owner_id: str = Header(default=DEFAULT_OWNER, alias="X-Owner-Id"),
) -> StreamingResponse:
    try:
        queue = JOB_MANAGER.subscribe(job_id, owner_id=owner_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc

    heartbeat_seconds = max(0.1, settings.telemetry.sse_heartbeat_ms / 1000)

    async def event_generator() -> AsyncIterator[str]:
        heartbeat = 0
        try:
            while True:
                try:
                    snapshot = await asyncio.wait_for(queue.get(), timeout=heartbeat_seconds)
                except asyncio.TimeoutError:
                    heartbeat += 1
                    yield f"event: heartbeat\ndata: {heartbeat}\n\n"
                    if await request.is_disconnected():
                        break
                    continue
                for event_name, payload in _snapshot_events(snapshot):
                    yield f"event: {event_name}\ndata: {payload}\n\n"
                if JobStatus(snapshot["status"]) in TERMINAL_STATUSES:
                    break
                if await request.is_disconnected():
                    break
        finally:
            JOB_MANAGER.unsubscribe(job_id, queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@app.post("/maintenance/sweep", response_model=SweepResponse)
async def run_sweep(authorization: str | None = Header(default=None)) -> SweepResponse:
    """Delete expired jobs; guarded by the cron bearer token when one is configured."""

    secret = JOB_MANAGER.settings.jobs.cron_secret
    if secret and authorization != f"Bearer {secret}":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    report = await JOB_MANAGER.sweep()
    return SweepResponse(
        deleted_jobs=report.deleted_jobs,
        deleted_files=report.deleted_files,
        errors=report.errors,
    )


def _snapshot_events(snapshot: JobSnapshot) -> list[tuple[str, str]]:
    events: list[tuple[str, str]] = [("state", snapshot.get("status", "unknown"))]
    events.append(
        (
            "progress",
            json.dumps(
                {
                    "progress": snapshot.get("progress", 0),
                    "discovered_pages": snapshot.get("discovered_pages"),
                }
            ),
        )
    )
    error = snapshot.get("error_message")
    if error:
        events.append(("error", error))
    return events
