"""Assemble a completed job's screenshots into a downloadable archive."""

from __future__ import annotations

import io
import json
import logging
import tarfile
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable
from urllib.parse import urlparse

import zstandard as zstd

from sitesnap import metrics
from sitesnap.artifacts import ArtifactStorage, StorageError
from sitesnap.renderer import playwright_version
from sitesnap.store import CaptureJob, JobStatus, JobStore

LOGGER = logging.getLogger(__name__)

ARCHIVE_FORMATS = {
    "zip": "application/zip",
    "tar.zst": "application/zstd",
}
MANIFEST_NAME = "manifest.json"
SUMMARY_NAME = "SUMMARY.txt"


class ArchiveUnavailableError(Exception):
    """The job exists but cannot be downloaded right now."""

    def __init__(self, job_id: str, reason: str, *, status_code: int) -> None:
        super().__init__(reason)
        self.job_id = job_id
        self.reason = reason
        self.status_code = status_code


@dataclass(slots=True)
class PackagedArchive:
    filename: str
    content: bytes
    media_type: str
    entries: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


class ArtifactPackager:
    """Best-effort archive assembly: unreadable artifacts are skipped, not fatal."""

    def __init__(self, *, store: JobStore, storage: ArtifactStorage, compression_level: int = 6) -> None:
        self.store = store
        self.storage = storage
        self.compression_level = compression_level

    def package(self, job_id: str, *, fmt: str = "zip", now: datetime | None = None) -> PackagedArchive:
        if fmt not in ARCHIVE_FORMATS:
            msg = f"Unsupported archive format '{fmt}' (expected one of {', '.join(ARCHIVE_FORMATS)})"
            raise ValueError(msg)
        current = now or datetime.now(timezone.utc)
        job = self.store.get(job_id)
        _check_downloadable(job, current)

        stored = self.storage.list(job.storage_path)
        if not stored:
            raise ArchiveUnavailableError(job_id, "No screenshots stored for this job", status_code=404)

        files: list[tuple[str, bytes]] = []
        skipped: list[str] = []
        for artifact in stored:
            try:
                files.append((artifact.name, self.storage.download(job.storage_path, artifact.name)))
            except StorageError as exc:
                LOGGER.warning("Skipping %s while packaging job %s: %s", artifact.name, job_id, exc)
                skipped.append(artifact.name)

        entries = [name for name, _ in files]
        extras = [
            (MANIFEST_NAME, _manifest_bytes(job, entries=entries, skipped=skipped, packaged_at=current)),
            (SUMMARY_NAME, _summary_bytes(job, entries=entries, skipped=skipped)),
        ]
        if fmt == "zip":
            content = _build_zip([*files, *extras], level=self.compression_level)
        else:
            content = _build_tar_zst([*files, *extras], level=self.compression_level, mtime=current)

        self.store.increment_downloads(job_id)
        metrics.record_archive(fmt)
        LOGGER.info(
            "Packaged job %s as %s (%d files, %d skipped)", job_id, fmt, len(entries), len(skipped)
        )
        return PackagedArchive(
            filename=archive_filename(job, fmt),
            content=content,
            media_type=ARCHIVE_FORMATS[fmt],
            entries=entries,
            skipped=skipped,
        )


def archive_filename(job: CaptureJob, fmt: str = "zip") -> str:
    host = urlparse(job.seed_url).hostname or "site"
    return f"screenshots_{host.replace('.', '_')}_{job.id[:8]}.{fmt}"


def _check_downloadable(job: CaptureJob, now: datetime) -> None:
    if job.status is not JobStatus.COMPLETED:
        raise ArchiveUnavailableError(
            job.id, f"Job is {job.status.value}; only completed jobs can be downloaded", status_code=409
        )
    if job.is_expired(now):
        raise ArchiveUnavailableError(job.id, "Job has expired", status_code=410)


def _build_zip(files: Iterable[tuple[str, bytes]], *, level: int) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=level) as archive:
        for name, data in files:
            archive.writestr(name, data)
    return buffer.getvalue()


def _build_tar_zst(files: Iterable[tuple[str, bytes]], *, level: int, mtime: datetime) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(mode="w", fileobj=buffer) as tar:
        for name, data in files:
            info = tarfile.TarInfo(name=name)
            info.size = len(data)
            info.mtime = int(mtime.timestamp())
            tar.addfile(info, io.BytesIO(data))
    compressor = zstd.ZstdCompressor(level=level)
    return compressor.compress(buffer.getvalue())


def _manifest_bytes(
    job: CaptureJob,
    *,
    entries: list[str],
    skipped: list[str],
    packaged_at: datetime,
) -> bytes:
    payload: dict[str, Any] = {
        "job_id": job.id,
        "seed_url": job.seed_url,
        "created_at": job.created_at.isoformat(),
        "captured_at": job.finished_at.isoformat() if job.finished_at else None,
        "packaged_at": packaged_at.isoformat(),
        "settings": {
            "devices": list(job.devices),
            "page_budget": job.page_budget,
            "all_pages": job.all_pages,
            "exclude_popups": job.exclude_popups,
        },
        "discovered_pages": job.discovered_pages,
        "playwright_version": playwright_version(),
        "file_mapping": list(job.file_mapping),
        "entries": entries,
        "skipped": skipped,
    }
    return json.dumps(payload, indent=2).encode("utf-8")


def _summary_bytes(job: CaptureJob, *, entries: list[str], skipped: list[str]) -> bytes:
    present = set(entries)
    lines = [
        f"Screenshots for {job.seed_url}",
        f"Job: {job.id}",
        f"Devices: {', '.join(job.devices)}",
        f"Pages: {job.discovered_pages if job.discovered_pages is not None else '?'}",
        f"Files: {len(entries)}" + (f" ({len(skipped)} unavailable)" if skipped else ""),
        "",
    ]
    mapping = [entry for entry in job.file_mapping if entry.get("filename") in present]
    if mapping:
        device_width = max(len("device"), *(len(str(entry.get("device", ""))) for entry in mapping))
        file_width = max(len("file"), *(len(str(entry.get("filename", ""))) for entry in mapping))
        lines.append(f"{'device':<{device_width}}  {'file':<{file_width}}  url")
        for entry in mapping:
            lines.append(
                f"{entry.get('device', ''):<{device_width}}  {entry.get('filename', ''):<{file_width}}  {entry.get('url', '')}"
            )
    return ("\n".join(lines) + "\n").encode("utf-8")
