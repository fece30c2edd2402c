"""Retention enforcement: delete expired jobs and their screenshots."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Collection

from sitesnap.artifacts import ArtifactStorage, StorageError
from sitesnap.store import JobStore

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class SweepReport:
    deleted_jobs: int = 0
    deleted_files: int = 0
    errors: list[str] = field(default_factory=list)


class ExpirySweeper:
    """Scan-and-delete over jobs whose expiry has passed.

    Storage is cleared before the record so a failed delete leaves the job
    visible to the next sweep instead of orphaning its files.
    """

    def __init__(self, *, store: JobStore, storage: ArtifactStorage) -> None:
        self.store = store
        self.storage = storage

    def sweep(self, now: datetime | None = None, *, skip: Collection[str] = ()) -> SweepReport:
        """Delete every expired job except those in ``skip`` (jobs still being captured)."""

        current = now or datetime.now(timezone.utc)
        report = SweepReport()
        for job in self.store.list_expired(current):
            if job.id in skip:
                LOGGER.info("Deferring expired job %s; capture still running", job.id)
                continue
            try:
                removed = self.storage.delete_namespace(job.storage_path)
            except StorageError as exc:
                LOGGER.warning("Keeping expired job %s; storage cleanup failed: %s", job.id, exc)
                report.errors.append(f"{job.id}: {exc}")
                continue
            self.store.delete(job.id)
            report.deleted_jobs += 1
            report.deleted_files += removed
        if report.deleted_jobs or report.errors:
            LOGGER.info(
                "Expiry sweep removed %d jobs (%d files, %d errors)",
                report.deleted_jobs,
                report.deleted_files,
                len(report.errors),
            )
        return report
