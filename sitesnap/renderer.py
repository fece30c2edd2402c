"""Playwright-based rendering: one URL under one device profile per call."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from importlib import metadata
from typing import Any, Awaitable, Callable

from playwright.async_api import Browser, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from sitesnap import metrics
from sitesnap.devices import Device, DeviceProfile, get_profile
from sitesnap.links import extract_anchor_hrefs
from sitesnap.popups import PopupBlocklist, cached_blocklist, suppress_popups
from sitesnap.settings import BrowserSettings, get_settings

LOGGER = logging.getLogger(__name__)

BrowserLauncher = Callable[[Playwright, BrowserSettings], Awaitable[Browser]]

IMAGE_EXTENSIONS = {"jpeg": "jpg", "png": "png"}
IMAGE_CONTENT_TYPES = {"jpeg": "image/jpeg", "png": "image/png"}


class RenderError(Exception):
    """A single (URL, device) render that could not produce an image."""

    TIMEOUT = "timeout"
    NAVIGATION = "navigation"
    EMPTY_CAPTURE = "empty_capture"

    def __init__(self, kind: str, message: str, *, url: str, device: str | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.url = url
        self.device = device

    def __str__(self) -> str:
        target = f"{self.url} ({self.device})" if self.device else self.url
        return f"{self.kind} while rendering {target}: {self.args[0]}"


@dataclass(slots=True)
class RenderResult:
    """Image bytes plus the emulation metadata they were captured under."""

    url: str
    profile: DeviceProfile
    image_bytes: bytes
    image_format: str
    capture_ms: int
    user_agent: str
    popup_hits: dict[str, int] = field(default_factory=dict)

    @property
    def device(self) -> Device:
        return self.profile.device

    @property
    def extension(self) -> str:
        return IMAGE_EXTENSIONS[self.image_format]

    @property
    def content_type(self) -> str:
        return IMAGE_CONTENT_TYPES[self.image_format]


class Renderer:
    """Drive one browser through navigation, emulation, popup suppression, capture.

    Each call opens a fresh context (cookies, storage, scroll position) and
    closes it on every exit path. Browser-process failures raised while
    creating contexts propagate unchanged.
    """

    def __init__(
        self,
        browser: Browser,
        *,
        settings: BrowserSettings | None = None,
        blocklist: PopupBlocklist | None = None,
    ) -> None:
        self._browser = browser
        self._settings = settings or get_settings().browser
        self._blocklist = blocklist or cached_blocklist(str(self._settings.popup_blocklist_path))

    async def render(self, url: str, device: Device | str, *, exclude_popups: bool = True) -> RenderResult:
        profile = get_profile(device)
        start = time.perf_counter()
        context = await self._browser.new_context(**profile.context_options())
        try:
            page = await context.new_page()
            await _mask_automation(page)
            await self._navigate(page, url, device=profile.device.value)
            await page.wait_for_timeout(self._settings.settle_ms)
            popup_hits: dict[str, int] = {}
            if exclude_popups:
                popup_hits = await suppress_popups(
                    page,
                    url=url,
                    blocklist=self._blocklist,
                    z_index_threshold=self._settings.popup_z_index_threshold,
                )
            image = await page.screenshot(**self._screenshot_options())
            user_agent = await page.evaluate("navigator.userAgent")
        finally:
            await context.close()

        if not image:
            metrics.record_render_failure(RenderError.EMPTY_CAPTURE)
            raise RenderError(
                RenderError.EMPTY_CAPTURE,
                "screenshot returned no bytes",
                url=url,
                device=profile.device.value,
            )

        elapsed = time.perf_counter() - start
        metrics.observe_render(profile.device.value, elapsed)
        LOGGER.debug("rendered %s as %s (%d bytes)", url, profile.device.value, len(image))
        return RenderResult(
            url=url,
            profile=profile,
            image_bytes=image,
            image_format=self._settings.image_format,
            capture_ms=int(elapsed * 1000),
            user_agent=str(user_agent or profile.user_agent),
            popup_hits=popup_hits,
        )

    async def extract_links(self, url: str) -> list[str]:
        """Navigate with the desktop profile and return absolute anchor hrefs."""

        profile = get_profile(Device.DESKTOP)
        context = await self._browser.new_context(**profile.context_options())
        try:
            page = await context.new_page()
            await self._navigate(page, url, device=None)
            html = await page.content()
            final_url = page.url or url
        except PlaywrightError as exc:
            if not self._browser.is_connected():
                raise
            metrics.record_render_failure(RenderError.NAVIGATION)
            raise RenderError(RenderError.NAVIGATION, exc.message, url=url) from exc
        finally:
            await context.close()
        return extract_anchor_hrefs(html, base_url=final_url)

    async def _navigate(self, page: Page, url: str, *, device: str | None) -> None:
        try:
            await page.goto(
                url,
                wait_until="networkidle",
                timeout=self._settings.navigation_timeout_ms,
            )
        except PlaywrightTimeoutError as exc:
            metrics.record_render_failure(RenderError.TIMEOUT)
            raise RenderError(
                RenderError.TIMEOUT,
                f"navigation exceeded {self._settings.navigation_timeout_ms}ms",
                url=url,
                device=device,
            ) from exc
        except PlaywrightError as exc:
            if not self._browser.is_connected():
                raise
            metrics.record_render_failure(RenderError.NAVIGATION)
            raise RenderError(RenderError.NAVIGATION, exc.message, url=url, device=device) from exc

    def _screenshot_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {
            "type": self._settings.image_format,
            "full_page": True,
            "animations": "disabled",
            "caret": "hide",
        }
        if self._settings.image_format == "jpeg":
            options["quality"] = self._settings.image_quality
        return options


class BrowserSession:
    """Scoped ownership of one Playwright driver + Chromium process.

    ``async with BrowserSession() as renderer`` launches the browser and
    guarantees it is closed when the block exits, however it exits.
    """

    def __init__(
        self,
        settings: BrowserSettings | None = None,
        *,
        launcher: BrowserLauncher | None = None,
    ) -> None:
        self._settings = settings or get_settings().browser
        self._launcher = launcher or _launch_browser
        self._playwright_cm: Any = None
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None

    async def __aenter__(self) -> Renderer:
        self._playwright_cm = async_playwright()
        self._playwright = await self._playwright_cm.__aenter__()
        try:
            self._browser = await self._launcher(self._playwright, self._settings)
        except BaseException:
            await self._playwright_cm.__aexit__(None, None, None)
            raise
        return Renderer(self._browser, settings=self._settings)

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        try:
            if self._browser is not None:
                await self._browser.close()
        except PlaywrightError as close_exc:  # pragma: no cover - browser already gone
            LOGGER.warning("Browser close failed: %s", close_exc)
        finally:
            self._browser = None
            if self._playwright_cm is not None:
                await self._playwright_cm.__aexit__(exc_type, exc, tb)
            self._playwright_cm = None
            self._playwright = None


_CHANNEL_ALIASES = {
    "cft": "chrome",
    "chrome-for-testing": "chrome",
}


async def _launch_browser(playwright: Playwright, settings: BrowserSettings) -> Browser:
    normalized = _normalize_channel(settings.playwright_channel)
    if normalized != settings.playwright_channel:
        LOGGER.warning(
            "Playwright channel '%s' is not supported; falling back to '%s'",
            settings.playwright_channel,
            normalized,
        )
    options: dict[str, Any] = {"headless": settings.headless, "args": list(settings.launch_args)}
    if normalized != "chromium":
        options["channel"] = normalized
    LOGGER.debug("launching chromium", extra={"channel": normalized})
    return await playwright.chromium.launch(**options)


async def _mask_automation(page: Page) -> None:
    await page.add_init_script(
        """
        Object.defineProperty(navigator, 'webdriver', {
            get: () => undefined,
        });
        """
    )


def _normalize_channel(channel: str) -> str:
    if not channel:
        return "chromium"
    lowered = channel.strip().lower()
    return _CHANNEL_ALIASES.get(lowered, lowered)


def playwright_version() -> str:
    try:
        return metadata.version("playwright")
    except metadata.PackageNotFoundError:  # pragma: no cover - dev fallback
        return "unknown"
