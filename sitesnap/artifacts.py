"""Blob storage for screenshot artifacts, keyed by ``{owner}/{job}/{file}``."""

from __future__ import annotations

import itertools
import re
import shutil
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from sitesnap.settings import StorageSettings, get_settings

_SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class StorageError(Exception):
    """Raised when an artifact cannot be written, read, or deleted."""


@dataclass(frozen=True, slots=True)
class StoredArtifact:
    """One object inside a job namespace."""

    name: str
    size: int
    path: str


class ArtifactStorage(Protocol):
    """Capability the orchestrator, packager, and sweeper depend on."""

    def upload(self, namespace: str, filename: str, data: bytes, content_type: str) -> StoredArtifact: ...

    def list(self, namespace: str) -> list[StoredArtifact]: ...

    def download(self, namespace: str, filename: str) -> bytes: ...

    def delete_namespace(self, namespace: str) -> int: ...


def job_namespace(owner_id: str, job_id: str) -> str:
    return f"{owner_id}/{job_id}"


_SEQUENCE = itertools.count()
_SEQUENCE_LOCK = threading.Lock()


def artifact_filename(device: str, extension: str, *, now_ms: int | None = None) -> str:
    """``{device}_{epoch_ms}{seq}.{ext}``; the sequence breaks same-millisecond ties."""

    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    with _SEQUENCE_LOCK:
        seq = next(_SEQUENCE) % 1000
    return f"{device}_{stamp}{seq:03d}.{extension}"


class LocalArtifactStorage:
    """Filesystem-backed object store; one directory per job namespace."""

    def __init__(self, root: Path | None = None, *, config: StorageSettings | None = None) -> None:
        resolved = root or (config or get_settings().storage).artifact_root
        self.root = Path(resolved)
        self.root.mkdir(parents=True, exist_ok=True)

    def upload(self, namespace: str, filename: str, data: bytes, content_type: str) -> StoredArtifact:
        directory = self._namespace_dir(namespace)
        target = directory / _checked_segment(filename)
        if target.exists():
            raise StorageError(f"Artifact {namespace}/{filename} already exists")
        staging = target.with_name(f".{target.name}.partial")
        try:
            directory.mkdir(parents=True, exist_ok=True)
            staging.write_bytes(data)
            staging.replace(target)
        except OSError as exc:
            staging.unlink(missing_ok=True)
            raise StorageError(f"Upload of {namespace}/{filename} failed: {exc}") from exc
        return StoredArtifact(name=target.name, size=len(data), path=f"{namespace}/{target.name}")

    def list(self, namespace: str) -> list[StoredArtifact]:
        directory = self._namespace_dir(namespace)
        if not directory.is_dir():
            return []
        return [
            StoredArtifact(name=entry.name, size=entry.stat().st_size, path=f"{namespace}/{entry.name}")
            for entry in sorted(directory.iterdir(), key=lambda item: item.name)
            if entry.is_file() and not entry.name.startswith(".")
        ]

    def download(self, namespace: str, filename: str) -> bytes:
        target = self._namespace_dir(namespace) / _checked_segment(filename)
        try:
            return target.read_bytes()
        except OSError as exc:
            raise StorageError(f"Download of {namespace}/{filename} failed: {exc}") from exc

    def delete_namespace(self, namespace: str) -> int:
        directory = self._namespace_dir(namespace)
        if not directory.exists():
            return 0
        count = sum(1 for entry in directory.iterdir() if entry.is_file())
        try:
            shutil.rmtree(directory)
        except OSError as exc:
            raise StorageError(f"Delete of {namespace} failed: {exc}") from exc
        owner_dir = directory.parent
        if owner_dir != self.root and owner_dir.is_dir() and not any(owner_dir.iterdir()):
            owner_dir.rmdir()
        return count

    def _namespace_dir(self, namespace: str) -> Path:
        parts = namespace.strip("/").split("/")
        if not parts or not all(parts):
            raise StorageError(f"Invalid namespace '{namespace}'")
        target = self.root.joinpath(*(_checked_segment(part) for part in parts))
        root = self.root.resolve()
        try:
            target.resolve().relative_to(root)
        except ValueError:
            raise StorageError(f"Namespace '{namespace}' escapes the storage root") from None
        return target


def is_valid_segment(segment: str) -> bool:
    return bool(_SEGMENT_PATTERN.match(segment)) and ".." not in segment


def _checked_segment(segment: str) -> str:
    if not is_valid_segment(segment):
        raise StorageError(f"Invalid path segment '{segment}'")
    return segment


def build_storage(root: Path | None = None) -> LocalArtifactStorage:
    """Convenience wrapper used by FastAPI startup hooks."""

    return LocalArtifactStorage(root)


__all__ = [
    "ArtifactStorage",
    "LocalArtifactStorage",
    "StorageError",
    "StoredArtifact",
    "artifact_filename",
    "build_storage",
    "is_valid_segment",
    "job_namespace",
]
