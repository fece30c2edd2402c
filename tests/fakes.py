"""In-memory stand-ins for the browser layer plus settings/store builders."""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable, Mapping, Sequence

from sitesnap.devices import Device, get_profile
from sitesnap.renderer import RenderError, RenderResult
from sitesnap.settings import (
    DEFAULT_POPUP_BLOCKLIST,
    BrowserSettings,
    JobSettings,
    Settings,
    StorageSettings,
    TelemetrySettings,
)
from sitesnap.store import JobStore, StorageConfig


class FakeRenderer:
    """Renders instantly from a link graph; selected calls can fail or block."""

    def __init__(
        self,
        graph: Mapping[str, Sequence[str]] | None = None,
        *,
        fail_on_call: int | None = None,
        unreachable: Sequence[str] = (),
        before_render: Callable[[int], object] | None = None,
    ) -> None:
        self.graph = dict(graph or {})
        self.fail_on_call = fail_on_call
        self.unreachable = set(unreachable)
        self.before_render = before_render
        self.render_calls: list[tuple[str, str]] = []
        self.link_calls: list[str] = []

    async def render(self, url: str, device: Device | str, *, exclude_popups: bool = True) -> RenderResult:
        profile = get_profile(device)
        self.render_calls.append((url, profile.device.value))
        call_number = len(self.render_calls)
        if self.before_render is not None:
            pending = self.before_render(call_number)
            if hasattr(pending, "__await__"):
                await pending  # type: ignore[misc]
        if self.fail_on_call == call_number:
            raise RenderError(RenderError.TIMEOUT, "navigation exceeded 60000ms", url=url, device=profile.device.value)
        return RenderResult(
            url=url,
            profile=profile,
            image_bytes=f"{profile.device.value}:{url}".encode(),
            image_format="jpeg",
            capture_ms=5,
            user_agent=profile.user_agent,
        )

    async def extract_links(self, url: str) -> list[str]:
        self.link_calls.append(url)
        if url in self.unreachable:
            raise RenderError(RenderError.NAVIGATION, "net::ERR_NAME_NOT_RESOLVED", url=url)
        return list(self.graph.get(url, ()))


class SessionTracker:
    """Session factory that records enter/exit around a shared renderer."""

    def __init__(self, renderer: FakeRenderer, *, launch_error: Exception | None = None) -> None:
        self.renderer = renderer
        self.launch_error = launch_error
        self.opened = 0
        self.closed = 0

    def __call__(self):  # noqa: ANN204
        return self._session()

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[FakeRenderer]:
        if self.launch_error is not None:
            raise self.launch_error
        self.opened += 1
        try:
            yield self.renderer
        finally:
            self.closed += 1


def make_browser_settings(**overrides) -> BrowserSettings:  # noqa: ANN003
    values = dict(
        playwright_channel="chromium",
        headless=True,
        launch_args=("--no-sandbox",),
        navigation_timeout_ms=60_000,
        settle_ms=0,
        image_format="jpeg",
        image_quality=85,
        popup_blocklist_path=DEFAULT_POPUP_BLOCKLIST,
        popup_z_index_threshold=1000,
    )
    values.update(overrides)
    return BrowserSettings(**values)


def make_settings(tmp_path: Path, **job_overrides) -> Settings:  # noqa: ANN003
    jobs = dict(
        retention_hours=48,
        max_page_budget=300,
        stale_job_seconds=3600,
        watchdog_interval_seconds=60,
        sweep_interval_seconds=0,
        cron_secret=None,
    )
    jobs.update(job_overrides)
    return Settings(
        env_path=str(tmp_path / ".env"),
        browser=make_browser_settings(),
        storage=StorageSettings(artifact_root=tmp_path / "artifacts", db_path=tmp_path / "jobs.db"),
        jobs=JobSettings(**jobs),
        telemetry=TelemetrySettings(prometheus_port=0, sse_heartbeat_ms=200),
    )


def make_store(tmp_path: Path) -> JobStore:
    return JobStore(StorageConfig(db_path=tmp_path / "jobs.db"))


def site_graph(origin: str, pages: int) -> dict[str, list[str]]:
    """A site whose every page links to the next few, plus one off-site link."""

    urls = [f"{origin}/"] + [f"{origin}/page-{index}" for index in range(1, pages)]
    graph: dict[str, list[str]] = {}
    for position, url in enumerate(urls):
        graph[url] = urls[position + 1 : position + 4] + ["https://elsewhere.example/"]
    return graph
