"""Per-job capture pipeline: discover pages, render each (URL, device) unit, upload."""

from __future__ import annotations

import asyncio
import logging
import math
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Any, Callable, Protocol, Sequence

from sitesnap import metrics
from sitesnap.artifacts import ArtifactStorage, artifact_filename
from sitesnap.crawler import SiteCrawler
from sitesnap.devices import Device, ordered_devices
from sitesnap.renderer import BrowserSession, RenderResult
from sitesnap.settings import BrowserSettings
from sitesnap.store import CaptureJob, JobStateError, JobStatus, JobStore

LOGGER = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "capture interrupted"


class PageRenderer(Protocol):
    async def render(self, url: str, device: Device | str, *, exclude_popups: bool = True) -> RenderResult: ...

    async def extract_links(self, url: str) -> list[str]: ...


SessionFactory = Callable[[], AbstractAsyncContextManager[PageRenderer]]
UpdateCallback = Callable[[str], None]


@dataclass(frozen=True, slots=True)
class CaptureUnit:
    """One page rendered under one device profile."""

    index: int
    page_index: int
    url: str
    device: Device


def plan_units(urls: Sequence[str], devices: Sequence[Device | str]) -> list[CaptureUnit]:
    """Flatten pages × devices into an ordered unit list (page-major)."""

    order = ordered_devices(devices)
    units: list[CaptureUnit] = []
    for page_index, url in enumerate(urls):
        for device in order:
            units.append(CaptureUnit(index=len(units), page_index=page_index, url=url, device=device))
    return units


def progress_percent(completed: int, total: int) -> int:
    if total <= 0:
        return 0
    return math.floor(100 * completed / total)


class CaptureOrchestrator:
    """Run one job to a terminal state.

    Units execute strictly one after another on a single browser session.
    Cancellation is checked before each unit; the first render or upload
    failure fails the whole job and leaves earlier uploads in place.
    """

    def __init__(
        self,
        *,
        store: JobStore,
        storage: ArtifactStorage,
        session_factory: SessionFactory | None = None,
        browser_settings: BrowserSettings | None = None,
        cancel_event: asyncio.Event | None = None,
        on_update: UpdateCallback | None = None,
    ) -> None:
        self.store = store
        self.storage = storage
        self._session_factory = session_factory or (lambda: BrowserSession(browser_settings))
        self._cancel_event = cancel_event or asyncio.Event()
        self._on_update = on_update

    async def run(self, job_id: str) -> CaptureJob:
        job = await asyncio.to_thread(self.store.get, job_id)
        if job.is_terminal:
            LOGGER.info("Job %s is already %s; nothing to run", job_id, job.status.value)
            return job

        stage = "browser"
        try:
            async with self._session_factory() as renderer:
                stage = "crawl"
                urls = await self._discover(job, renderer)
                units = plan_units(urls, job.devices)
                file_mapping: list[dict[str, Any]] = []
                for unit in units:
                    if await self._cancel_requested(job_id):
                        LOGGER.info(
                            "Job %s cancelled after %d/%d units", job_id, len(file_mapping), len(units)
                        )
                        return await self._finish_cancelled(job_id)
                    stage = "render"
                    result = await renderer.render(unit.url, unit.device, exclude_popups=job.exclude_popups)
                    stage = "upload"
                    file_mapping.append(await self._store_result(job, unit, result))
                    await asyncio.to_thread(
                        self.store.set_progress, job_id, progress_percent(len(file_mapping), len(units))
                    )
                    self._notify(job_id)

                stage = "finalize"
                try:
                    finished = await asyncio.to_thread(self.store.complete, job_id, file_mapping)
                except JobStateError as exc:
                    LOGGER.info("Job %s left %s before completion", job_id, exc.status)
                    return await asyncio.to_thread(self.store.get, job_id)
                LOGGER.info("Job %s completed with %d artifacts", job_id, len(file_mapping))
                self._notify(job_id)
                return finished
        except asyncio.CancelledError:
            # Synchronous write: awaiting here could be cancelled again before the status lands.
            self.store.fail(job_id, INTERRUPTED_MESSAGE)
            self._notify(job_id)
            raise
        except Exception as exc:
            LOGGER.exception("Job %s failed during %s", job_id, stage)
            await asyncio.to_thread(self.store.fail, job_id, f"{stage}: {exc}")
            self._notify(job_id)
            return await asyncio.to_thread(self.store.get, job_id)

    async def _discover(self, job: CaptureJob, renderer: PageRenderer) -> list[str]:
        if job.page_budget > 1:
            crawler = SiteCrawler(renderer.extract_links)
            urls = await crawler.discover(job.seed_url, job.page_budget)
        else:
            urls = [job.seed_url]
        await asyncio.to_thread(self.store.record_discovered, job.id, len(urls))
        self._notify(job.id)
        return urls

    async def _store_result(self, job: CaptureJob, unit: CaptureUnit, result: RenderResult) -> dict[str, Any]:
        filename = artifact_filename(unit.device.value, result.extension)
        stored = await asyncio.to_thread(
            self.storage.upload,
            job.storage_path,
            filename,
            result.image_bytes,
            result.content_type,
        )
        metrics.record_unit_stored(unit.device.value)
        return {
            "filename": stored.name,
            "url": unit.url,
            "device": unit.device.value,
            "page_index": unit.page_index,
            "path": stored.path,
            "size": stored.size,
            "capture_ms": result.capture_ms,
        }

    async def _cancel_requested(self, job_id: str) -> bool:
        if self._cancel_event.is_set():
            return True
        current = await asyncio.to_thread(self.store.get, job_id)
        return current.status is not JobStatus.PROCESSING

    async def _finish_cancelled(self, job_id: str) -> CaptureJob:
        current = await asyncio.to_thread(self.store.get, job_id)
        if current.is_terminal:
            return current
        # Only the in-process flag was set; persist the cancellation too.
        try:
            current = await asyncio.to_thread(self.store.request_cancel, job_id)
        except JobStateError:
            current = await asyncio.to_thread(self.store.get, job_id)
        self._notify(job_id)
        return current

    def _notify(self, job_id: str) -> None:
        if self._on_update is not None:
            self._on_update(job_id)
