"""Job orchestration helpers for capture requests."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, TypedDict

from sitesnap import metrics
from sitesnap.artifacts import ArtifactStorage, build_storage, is_valid_segment
from sitesnap.orchestrator import CaptureOrchestrator, SessionFactory
from sitesnap.packager import ArtifactPackager, PackagedArchive
from sitesnap.schemas import CaptureRequest
from sitesnap.settings import Settings, get_settings
from sitesnap.store import CaptureJob, JobInputs, JobStatus, JobStore, StorageConfig, build_store
from sitesnap.sweeper import ExpirySweeper, SweepReport

LOGGER = logging.getLogger(__name__)

DEFAULT_OWNER = "anonymous"
TIMED_OUT_MESSAGE = "capture timed out"


class JobSnapshot(TypedDict, total=False):
    """Serialized view of a job for API responses and SSE events."""

    job_id: str
    status: str
    progress: int
    seed_url: str
    devices: list[str]
    page_budget: int
    all_pages: bool
    exclude_popups: bool
    error_message: str | None
    discovered_pages: int | None
    download_count: int
    created_at: str
    expires_at: str
    finished_at: str | None
    file_mapping: list[dict[str, Any]]


def build_snapshot(job: CaptureJob) -> JobSnapshot:
    return JobSnapshot(
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
        created_at=job.created_at.isoformat(),
        expires_at=job.expires_at.isoformat(),
        finished_at=job.finished_at.isoformat() if job.finished_at else None,
        file_mapping=[dict(entry) for entry in job.file_mapping],
    )


def resolve_page_budget(request: CaptureRequest, *, max_page_budget: int) -> int:
    if request.options.all_pages:
        return max_page_budget
    if request.options.max_pages > max_page_budget:
        msg = f"max_pages must be <= {max_page_budget}"
        raise ValueError(msg)
    return request.options.max_pages


class JobManager:
    """Dispatch capture jobs as background tasks and fan out their updates."""

    def __init__(
        self,
        *,
        store: JobStore | None = None,
        storage: ArtifactStorage | None = None,
        session_factory: SessionFactory | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store or build_store(StorageConfig.from_settings(self.settings))
        self.storage = storage or build_storage(self.settings.storage.artifact_root)
        self.packager = ArtifactPackager(store=self.store, storage=self.storage)
        self.sweeper = ExpirySweeper(store=self.store, storage=self.storage)
        self._session_factory = session_factory
        self._tasks: Dict[str, asyncio.Task[None]] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._subscribers: Dict[str, List[asyncio.Queue[JobSnapshot]]] = {}
        self._watchdog_task: asyncio.Task[None] | None = None
        self._shutdown = False

    async def submit(self, request: CaptureRequest, *, owner_id: str = DEFAULT_OWNER) -> CaptureJob:
        if not is_valid_segment(owner_id):
            msg = f"Invalid owner id '{owner_id}'"
            raise ValueError(msg)
        budget = resolve_page_budget(request, max_page_budget=self.settings.jobs.max_page_budget)
        inputs = JobInputs(
            owner_id=owner_id,
            seed_url=request.url,
            devices=tuple(device.value for device in request.options.devices),
            page_budget=budget,
            all_pages=request.options.all_pages,
            exclude_popups=request.options.exclude_popups,
        )
        job = await asyncio.to_thread(self.store.create, inputs)
        metrics.record_job_submitted()
        LOGGER.info(
            "Accepted job %s for %s (%d pages x %d devices)",
            job.id,
            job.seed_url,
            job.page_budget,
            len(job.devices),
        )
        self._cancel_events[job.id] = asyncio.Event()
        self._tasks[job.id] = asyncio.create_task(self._run_job(job.id))
        return job

    def get_job(self, job_id: str, *, owner_id: str | None = None) -> CaptureJob:
        job = self.store.get(job_id)
        if owner_id is not None and job.owner_id != owner_id:
            raise KeyError(f"Job {job_id} not found")
        return job

    def get_snapshot(self, job_id: str, *, owner_id: str | None = None) -> JobSnapshot:
        return build_snapshot(self.get_job(job_id, owner_id=owner_id))

    def list_jobs(self, owner_id: str, *, limit: int = 50) -> list[CaptureJob]:
        return self.store.list_jobs(owner_id, limit=limit)

    async def cancel(self, job_id: str, *, owner_id: str | None = None) -> CaptureJob:
        await asyncio.to_thread(self.get_job, job_id, owner_id=owner_id)
        cancelled = await asyncio.to_thread(self.store.request_cancel, job_id)
        event = self._cancel_events.get(job_id)
        if event is not None:
            event.set()
        LOGGER.info("Cancellation requested for job %s", job_id)
        self._broadcast(job_id)
        return cancelled

    async def package(
        self,
        job_id: str,
        *,
        owner_id: str | None = None,
        fmt: str = "zip",
    ) -> PackagedArchive:
        await asyncio.to_thread(self.get_job, job_id, owner_id=owner_id)
        archive = await asyncio.to_thread(self.packager.package, job_id, fmt=fmt)
        self._broadcast(job_id)
        return archive

    async def sweep(self, now: datetime | None = None) -> SweepReport:
        running = frozenset(job_id for job_id in self._tasks if self.is_running(job_id))
        return await asyncio.to_thread(self.sweeper.sweep, now, skip=running)

    def subscribe(self, job_id: str, *, owner_id: str | None = None) -> asyncio.Queue[JobSnapshot]:
        snapshot = self.get_snapshot(job_id, owner_id=owner_id)
        queue: asyncio.Queue[JobSnapshot] = asyncio.Queue()
        queue.put_nowait(snapshot)
        self._subscribers.setdefault(job_id, []).append(queue)
        return queue

    def unsubscribe(self, job_id: str, queue: asyncio.Queue[JobSnapshot]) -> None:
        subscribers = self._subscribers.get(job_id)
        if not subscribers:
            return
        if queue in subscribers:
            subscribers.remove(queue)
        if not subscribers:
            self._subscribers.pop(job_id, None)

    def is_running(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    async def wait(self, job_id: str) -> None:
        """Await the background task for ``job_id`` if this process owns one."""

        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def reap_stale_jobs(self, now: datetime | None = None) -> list[str]:
        """Fail processing jobs older than the staleness limit that no task here is driving."""

        current = now or datetime.now(timezone.utc)
        cutoff = current - timedelta(seconds=self.settings.jobs.stale_job_seconds)
        stale = await asyncio.to_thread(self.store.list_stale, cutoff)
        reaped: list[str] = []
        for job in stale:
            if self.is_running(job.id):
                continue
            failed = await asyncio.to_thread(self.store.fail, job.id, TIMED_OUT_MESSAGE)
            if not failed:
                continue
            LOGGER.error("Job %s stuck in processing since %s; marked failed", job.id, job.created_at)
            metrics.record_job_completion(JobStatus.ERROR.value)
            reaped.append(job.id)
            self._broadcast(job.id)
        return reaped

    def start_watchdog(self) -> None:
        """Start the background task that reaps stale jobs and sweeps expired ones."""

        if self._watchdog_task is None or self._watchdog_task.done():
            self._shutdown = False
            self._watchdog_task = asyncio.create_task(self._watchdog_loop())
            LOGGER.info(
                "Job watchdog started (stale after %ds, sweep every %ds)",
                self.settings.jobs.stale_job_seconds,
                self.settings.jobs.sweep_interval_seconds,
            )

    async def stop_watchdog(self) -> None:
        self._shutdown = True
        if self._watchdog_task and not self._watchdog_task.done():
            self._watchdog_task.cancel()
            try:
                await self._watchdog_task
            except asyncio.CancelledError:
                pass
            LOGGER.info("Job watchdog stopped")
        self._watchdog_task = None

    async def shutdown(self) -> None:
        await self.stop_watchdog()
        running = [task for task in self._tasks.values() if not task.done()]
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
            LOGGER.info("Interrupted %d running jobs on shutdown", len(running))

    async def _watchdog_loop(self) -> None:
        interval = self.settings.jobs.watchdog_interval_seconds
        sweep_interval = self.settings.jobs.sweep_interval_seconds
        last_sweep = datetime.now(timezone.utc)
        while not self._shutdown:
            try:
                await asyncio.sleep(interval)
                now = datetime.now(timezone.utc)
                await self.reap_stale_jobs(now)
                if sweep_interval > 0 and (now - last_sweep).total_seconds() >= sweep_interval:
                    await self.sweep(now)
                    last_sweep = now
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover
                LOGGER.exception("Watchdog loop error: %s", exc)

    async def _run_job(self, job_id: str) -> None:
        orchestrator = CaptureOrchestrator(
            store=self.store,
            storage=self.storage,
            session_factory=self._session_factory,
            browser_settings=self.settings.browser,
            cancel_event=self._cancel_events.get(job_id),
            on_update=self._broadcast,
        )
        try:
            final = await orchestrator.run(job_id)
            metrics.record_job_completion(final.status.value)
        except KeyError:
            LOGGER.warning("Job %s was deleted while its capture was running", job_id)
        except asyncio.CancelledError:
            metrics.record_job_completion(JobStatus.ERROR.value)
            raise
        finally:
            self._tasks.pop(job_id, None)
            self._cancel_events.pop(job_id, None)

    def _broadcast(self, job_id: str) -> None:
        subscribers = self._subscribers.get(job_id)
        if not subscribers:
            return
        try:
            payload = build_snapshot(self.store.get(job_id))
        except KeyError:
            return
        for queue in list(subscribers):
            queue.put_nowait(payload.copy())
