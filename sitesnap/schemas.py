"""Pydantic DTOs shared across endpoints."""

from __future__ import annotations

from datetime import datetime
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator

from sitesnap.devices import DEVICE_ORDER, Device, ordered_devices

MAX_PAGE_BUDGET = 300


class CaptureOptions(BaseModel):
    """Per-job capture knobs."""

    devices: list[Device] = Field(
        default_factory=lambda: list(DEVICE_ORDER),
        description="Device profiles to render each page under",
    )
    max_pages: int = Field(default=1, ge=1, le=MAX_PAGE_BUDGET, description="Page budget for discovery")
    all_pages: bool = Field(default=False, description="Use the maximum page budget")
    exclude_popups: bool = Field(default=True, description="Suppress cookie banners and modal overlays")

    @field_validator("devices")
    @classmethod
    def _devices_not_empty(cls, value: list[Device]) -> list[Device]:
        if not value:
            msg = "At least one device is required"
            raise ValueError(msg)
        return ordered_devices(value)


class CaptureRequest(BaseModel):
    """Payload clients submit to kick off a capture job."""

    url: str = Field(description="Seed URL to capture")
    options: CaptureOptions = Field(default_factory=CaptureOptions)

    @field_validator("url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        candidate = value.strip()
        parsed = urlparse(candidate)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            msg = f"URL '{value}' must be an absolute http(s) URL"
            raise ValueError(msg)
        return candidate


class CaptureResponse(BaseModel):
    """Returned immediately after a job is accepted."""

    job_id: str
    status: str
    expires_at: datetime


class FileMappingEntry(BaseModel):
    """One stored screenshot and the page/device it depicts."""

    filename: str
    url: str
    device: str
    page_index: int = 0
    path: str | None = None
    size: int | None = Field(default=None, ge=0)
    capture_ms: int | None = Field(default=None, ge=0)


class JobStatusResponse(BaseModel):
    """Polling view of a job."""

    job_id: str
    status: str
    progress: int = Field(ge=0, le=100)
    seed_url: str
    devices: list[str]
    page_budget: int
    all_pages: bool
    exclude_popups: bool
    error_message: str | None = None
    discovered_pages: int | None = None
    download_count: int = 0
    created_at: datetime
    expires_at: datetime
    finished_at: datetime | None = None
    file_mapping: list[FileMappingEntry] = Field(default_factory=list)


class CancelResponse(BaseModel):
    job_id: str
    status: str


class SweepResponse(BaseModel):
    """Summary of one expiry sweep."""

    deleted_jobs: int
    deleted_files: int
    errors: list[str] = Field(default_factory=list)
