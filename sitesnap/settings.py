"""Typed configuration objects backed by python-decouple settings."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final

from decouple import Config as DecoupleConfig, RepositoryEmpty, RepositoryEnv

__all__ = [
    "BrowserSettings",
    "StorageSettings",
    "JobSettings",
    "TelemetrySettings",
    "Settings",
    "load_config",
    "get_settings",
]

DEFAULT_POPUP_BLOCKLIST = Path(__file__).resolve().parent / "data" / "popup_blocklist.json"
_DEFAULT_LAUNCH_ARGS = "--no-sandbox,--disable-setuid-sandbox,--disable-dev-shm-usage,--disable-gpu"


@dataclass(frozen=True, slots=True)
class BrowserSettings:
    """Chromium launch and per-capture rendering knobs."""

    playwright_channel: str
    headless: bool
    launch_args: tuple[str, ...]
    navigation_timeout_ms: int
    settle_ms: int
    image_format: str
    image_quality: int
    popup_blocklist_path: Path
    popup_z_index_threshold: int


@dataclass(frozen=True, slots=True)
class StorageSettings:
    """Filesystem + SQLite layout for job records and screenshots."""

    artifact_root: Path
    db_path: Path


@dataclass(frozen=True, slots=True)
class JobSettings:
    """Lifecycle limits: retention, page budgets, watchdog cadence."""

    retention_hours: int
    max_page_budget: int
    stale_job_seconds: int
    watchdog_interval_seconds: int
    sweep_interval_seconds: int
    cron_secret: str | None


@dataclass(frozen=True, slots=True)
class TelemetrySettings:
    """Ports/intervals for Prometheus + SSE plumbing."""

    prometheus_port: int
    sse_heartbeat_ms: int


@dataclass(frozen=True, slots=True)
class Settings:
    """Top-level immutable configuration container."""

    env_path: str
    browser: BrowserSettings
    storage: StorageSettings
    jobs: JobSettings
    telemetry: TelemetrySettings


def load_config(env_path: str = ".env") -> DecoupleConfig:
    """Return a python-decouple config anchored to the repository .env file.

    A missing file is not an error; values then come from the process
    environment or the defaults passed at each lookup.
    """

    if Path(env_path).is_file():
        return DecoupleConfig(RepositoryEnv(env_path))
    return DecoupleConfig(RepositoryEmpty())


def _int(cfg: DecoupleConfig, key: str, *, default: int) -> int:
    return cfg(key, cast=int, default=default)


def _bool(cfg: DecoupleConfig, key: str, *, default: bool) -> bool:
    return cfg(key, cast=bool, default=default)


def _csv_tuple(cfg: DecoupleConfig, key: str, *, default: str = "") -> tuple[str, ...]:
    raw = cfg(key, default=default)
    if not raw:
        return tuple()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@lru_cache(maxsize=1)
def get_settings(env_path: str = ".env") -> Settings:
    """Load and memoize structured settings for the current process."""

    cfg = load_config(env_path)

    image_format = cfg("CAPTURE_IMAGE_FORMAT", default="jpeg").strip().lower()
    if image_format not in {"jpeg", "png"}:
        msg = "CAPTURE_IMAGE_FORMAT must be 'jpeg' or 'png'"
        raise ValueError(msg)
    image_quality = _int(cfg, "CAPTURE_IMAGE_QUALITY", default=85)
    if not 1 <= image_quality <= 100:
        msg = "CAPTURE_IMAGE_QUALITY must be between 1 and 100"
        raise ValueError(msg)
    navigation_timeout_ms = _int(cfg, "NAVIGATION_TIMEOUT_MS", default=60_000)
    if navigation_timeout_ms <= 0:
        msg = "NAVIGATION_TIMEOUT_MS must be positive"
        raise ValueError(msg)

    browser = BrowserSettings(
        playwright_channel=cfg("PLAYWRIGHT_CHANNEL", default="chromium"),
        headless=_bool(cfg, "PLAYWRIGHT_HEADLESS", default=True),
        launch_args=_csv_tuple(cfg, "CHROMIUM_LAUNCH_ARGS", default=_DEFAULT_LAUNCH_ARGS),
        navigation_timeout_ms=navigation_timeout_ms,
        settle_ms=max(0, _int(cfg, "CAPTURE_SETTLE_MS", default=2_000)),
        image_format=image_format,
        image_quality=image_quality,
        popup_blocklist_path=Path(cfg("POPUP_BLOCKLIST_PATH", default=str(DEFAULT_POPUP_BLOCKLIST))),
        popup_z_index_threshold=_int(cfg, "POPUP_Z_INDEX_THRESHOLD", default=1000),
    )
    storage = StorageSettings(
        artifact_root=Path(cfg("ARTIFACT_ROOT", default=".cache/screenshots")),
        db_path=Path(cfg("JOBS_DB_PATH", default="sitesnap.db")),
    )
    jobs = JobSettings(
        retention_hours=_int(cfg, "RETENTION_HOURS", default=48),
        max_page_budget=_int(cfg, "MAX_PAGE_BUDGET", default=300),
        stale_job_seconds=_int(cfg, "STALE_JOB_SECONDS", default=3_600),
        watchdog_interval_seconds=_int(cfg, "WATCHDOG_INTERVAL_SECONDS", default=60),
        sweep_interval_seconds=_int(cfg, "SWEEP_INTERVAL_SECONDS", default=3_600),
        cron_secret=cfg("CRON_SECRET", default=None),
    )
    if jobs.retention_hours <= 0:
        msg = "RETENTION_HOURS must be positive"
        raise ValueError(msg)
    if jobs.max_page_budget < 1:
        msg = "MAX_PAGE_BUDGET must be >= 1"
        raise ValueError(msg)

    telemetry = TelemetrySettings(
        prometheus_port=_int(cfg, "PROMETHEUS_PORT", default=0),
        sse_heartbeat_ms=_int(cfg, "SSE_HEARTBEAT_MS", default=5_000),
    )

    return Settings(
        env_path=env_path,
        browser=browser,
        storage=storage,
        jobs=jobs,
        telemetry=telemetry,
    )


# Statically importable settings singleton for modules that prefer constants over DI.
settings: Final[Settings] = get_settings()
