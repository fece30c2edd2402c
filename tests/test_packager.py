from __future__ import annotations

import io
import json
import tarfile
import zipfile
from datetime import datetime, timedelta, timezone

import pytest
import zstandard as zstd

from sitesnap.artifacts import LocalArtifactStorage, StorageError
from sitesnap.packager import ArchiveUnavailableError, ArtifactPackager, archive_filename
from sitesnap.store import JobInputs
from tests.fakes import make_store

NAMES = ["desktop_1.jpg", "desktop_2.jpg", "mobile_1.jpg", "mobile_2.jpg"]


class _FlakyStorage(LocalArtifactStorage):
    def __init__(self, root, broken: set[str]) -> None:  # noqa: ANN001
        super().__init__(root)
        self.broken = broken

    def download(self, namespace: str, filename: str) -> bytes:
        if filename in self.broken:
            raise StorageError(f"{filename} unreadable")
        return super().download(namespace, filename)


def _completed_job(store, storage, *, names=NAMES):  # noqa: ANN001
    job = store.create(
        JobInputs(
            owner_id="owner",
            seed_url="https://www.example.com/start",
            devices=("desktop", "mobile"),
            page_budget=2,
        )
    )
    mapping = []
    for index, name in enumerate(names):
        storage.upload(job.storage_path, name, f"image-{name}".encode(), "image/jpeg")
        mapping.append(
            {
                "filename": name,
                "url": f"https://www.example.com/p{index // 2}",
                "device": name.split("_")[0],
                "page_index": index // 2,
            }
        )
    store.record_discovered(job.id, 2)
    return store.complete(job.id, mapping)


def test_zip_contains_every_artifact_plus_manifest_and_increments_counter(tmp_path):
    store = make_store(tmp_path)
    storage = LocalArtifactStorage(tmp_path / "blobs")
    job = _completed_job(store, storage)
    packager = ArtifactPackager(store=store, storage=storage)

    archive = packager.package(job.id)

    assert archive.media_type == "application/zip"
    assert archive.filename == f"screenshots_www_example_com_{job.id[:8]}.zip"
    assert archive.entries == NAMES
    with zipfile.ZipFile(io.BytesIO(archive.content)) as bundle:
        names = bundle.namelist()
        assert sorted(names) == sorted(NAMES + ["manifest.json", "SUMMARY.txt"])
        assert bundle.read("mobile_2.jpg") == b"image-mobile_2.jpg"
        assert all(info.compress_type == zipfile.ZIP_DEFLATED for info in bundle.infolist())
        manifest = json.loads(bundle.read("manifest.json"))
        summary = bundle.read("SUMMARY.txt").decode()
    assert manifest["job_id"] == job.id
    assert manifest["settings"]["devices"] == ["desktop", "mobile"]
    assert len(manifest["file_mapping"]) == 4
    assert manifest["playwright_version"]
    assert "https://www.example.com/p1" in summary
    assert store.get(job.id).download_count == 1


def test_tar_zst_archive(tmp_path):
    store = make_store(tmp_path)
    storage = LocalArtifactStorage(tmp_path / "blobs")
    job = _completed_job(store, storage)

    archive = ArtifactPackager(store=store, storage=storage).package(job.id, fmt="tar.zst")

    assert archive.filename.endswith(".tar.zst")
    raw = zstd.ZstdDecompressor().decompress(archive.content)
    with tarfile.open(fileobj=io.BytesIO(raw)) as tar:
        members = tar.getnames()
    assert sorted(members) == sorted(NAMES + ["manifest.json", "SUMMARY.txt"])


def test_unreadable_artifacts_are_skipped(tmp_path):
    store = make_store(tmp_path)
    storage = _FlakyStorage(tmp_path / "blobs", broken={"mobile_1.jpg"})
    job = _completed_job(store, storage)

    archive = ArtifactPackager(store=store, storage=storage).package(job.id)

    assert archive.skipped == ["mobile_1.jpg"]
    with zipfile.ZipFile(io.BytesIO(archive.content)) as bundle:
        assert "mobile_1.jpg" not in bundle.namelist()
        assert "desktop_1.jpg" in bundle.namelist()
    assert store.get(job.id).download_count == 1


def test_processing_job_is_not_downloadable(tmp_path):
    store = make_store(tmp_path)
    storage = LocalArtifactStorage(tmp_path / "blobs")
    job = store.create(JobInputs(owner_id="owner", seed_url="https://example.com/", devices=("desktop",), page_budget=1))

    with pytest.raises(ArchiveUnavailableError) as excinfo:
        ArtifactPackager(store=store, storage=storage).package(job.id)

    assert excinfo.value.status_code == 409
    assert store.get(job.id).download_count == 0


def test_expired_job_is_gone(tmp_path):
    store = make_store(tmp_path)
    storage = LocalArtifactStorage(tmp_path / "blobs")
    job = _completed_job(store, storage)
    later = datetime.now(timezone.utc) + timedelta(hours=49)

    with pytest.raises(ArchiveUnavailableError) as excinfo:
        ArtifactPackager(store=store, storage=storage).package(job.id, now=later)

    assert excinfo.value.status_code == 410


def test_completed_job_without_files_is_not_found(tmp_path):
    store = make_store(tmp_path)
    storage = LocalArtifactStorage(tmp_path / "blobs")
    job = _completed_job(store, storage, names=[])

    with pytest.raises(ArchiveUnavailableError) as excinfo:
        ArtifactPackager(store=store, storage=storage).package(job.id)

    assert excinfo.value.status_code == 404


def test_unknown_format_rejected(tmp_path):
    store = make_store(tmp_path)
    storage = LocalArtifactStorage(tmp_path / "blobs")
    job = _completed_job(store, storage)

    with pytest.raises(ValueError):
        ArtifactPackager(store=store, storage=storage).package(job.id, fmt="rar")


def test_archive_filename_uses_host_and_short_id(tmp_path):
    store = make_store(tmp_path)
    storage = LocalArtifactStorage(tmp_path / "blobs")
    job = _completed_job(store, storage)

    assert archive_filename(job, "tar.zst") == f"screenshots_www_example_com_{job.id[:8]}.tar.zst"
