"""Durable job records: status, progress, expiry, and the file mapping."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Mapping, Sequence
from uuid import uuid4

from sqlalchemy import Column, update
from sqlalchemy import delete as sql_delete
from sqlalchemy.dialects.sqlite import JSON as SQLITE_JSON
from sqlmodel import Field, Session, SQLModel, col, create_engine, select

from sitesnap.artifacts import job_namespace
from sitesnap.settings import Settings, get_settings


class JobStatus(str, Enum):
    """Externally visible job lifecycle states."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.CANCELLED})


class JobStateError(ValueError):
    """A transition was requested from a state that does not allow it."""

    def __init__(self, job_id: str, status: str, action: str) -> None:
        super().__init__(f"Job {job_id} is {status}; cannot {action}")
        self.job_id = job_id
        self.status = status
        self.action = action


class CaptureJobRecord(SQLModel, table=True):
    """One capture run tracked in SQLite."""

    __tablename__ = "capture_jobs"

    id: str = Field(primary_key=True)
    owner_id: str = Field(index=True)
    seed_url: str
    devices: list[str] = Field(default_factory=list, sa_column=Column(SQLITE_JSON))
    page_budget: int
    all_pages: bool = False
    exclude_popups: bool = True
    status: str = Field(default=JobStatus.PROCESSING.value, index=True)
    progress: int = 0
    error_message: str | None = None
    discovered_pages: int | None = None
    file_mapping: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(SQLITE_JSON))
    download_count: int = 0
    storage_path: str
    created_at: datetime
    expires_at: datetime = Field(index=True)
    finished_at: datetime | None = None


@dataclass(frozen=True)
class JobInputs:
    """Validated submission parameters for a new job."""

    owner_id: str
    seed_url: str
    devices: tuple[str, ...]
    page_budget: int
    all_pages: bool = False
    exclude_popups: bool = True


@dataclass(frozen=True)
class CaptureJob:
    """Detached, timezone-aware view of a job record."""

    id: str
    owner_id: str
    seed_url: str
    devices: tuple[str, ...]
    page_budget: int
    all_pages: bool
    exclude_popups: bool
    status: JobStatus
    progress: int
    error_message: str | None
    discovered_pages: int | None
    download_count: int
    storage_path: str
    created_at: datetime
    expires_at: datetime
    finished_at: datetime | None
    file_mapping: tuple[dict[str, Any], ...] = field(default_factory=tuple)

    @classmethod
    def from_record(cls, record: CaptureJobRecord) -> CaptureJob:
        return cls(
            id=record.id,
            owner_id=record.owner_id,
            seed_url=record.seed_url,
            devices=tuple(record.devices or ()),
            page_budget=record.page_budget,
            all_pages=record.all_pages,
            exclude_popups=record.exclude_popups,
            status=JobStatus(record.status),
            progress=record.progress,
            error_message=record.error_message,
            discovered_pages=record.discovered_pages,
            download_count=record.download_count,
            storage_path=record.storage_path,
            created_at=_as_utc(record.created_at),
            expires_at=_as_utc(record.expires_at),
            finished_at=_as_utc(record.finished_at) if record.finished_at else None,
            file_mapping=tuple(dict(entry) for entry in record.file_mapping or ()),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired(self, now: datetime | None = None) -> bool:
        current = now or datetime.now(timezone.utc)
        return _as_utc(current) >= self.expires_at


@dataclass(frozen=True)
class StorageConfig:
    """Resolved database location and retention window."""

    db_path: Path
    retention: timedelta = timedelta(hours=48)

    @classmethod
    def from_env(cls) -> StorageConfig:
        return cls.from_settings(get_settings())

    @classmethod
    def from_settings(cls, active: Settings) -> StorageConfig:
        return cls(
            db_path=active.storage.db_path,
            retention=timedelta(hours=active.jobs.retention_hours),
        )


class JobStore:
    """Single source of truth for job lifecycle.

    Every mutation is one conditional ``UPDATE`` guarded by
    ``status = 'processing'`` and serialized by a process-level lock, so a
    terminal status can never be overwritten and progress never regresses.
    """

    def __init__(self, config: StorageConfig | None = None) -> None:
        self.config = config or StorageConfig.from_env()
        self.config.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = _create_engine(self.config.db_path)
        SQLModel.metadata.create_all(self.engine)
        self._write_lock = threading.Lock()

    @contextmanager
    def session(self) -> Iterator[Session]:
        with Session(self.engine) as session:
            yield session

    def create(
        self,
        inputs: JobInputs,
        *,
        job_id: str | None = None,
        now: datetime | None = None,
    ) -> CaptureJob:
        created_at = _utc_naive(now or datetime.now(timezone.utc))
        identifier = job_id or uuid4().hex
        record = CaptureJobRecord(
            id=identifier,
            owner_id=inputs.owner_id,
            seed_url=inputs.seed_url,
            devices=list(inputs.devices),
            page_budget=inputs.page_budget,
            all_pages=inputs.all_pages,
            exclude_popups=inputs.exclude_popups,
            status=JobStatus.PROCESSING.value,
            progress=0,
            storage_path=job_namespace(inputs.owner_id, identifier),
            created_at=created_at,
            expires_at=created_at + self.config.retention,
        )
        with self._write_lock, self.session() as session:
            session.add(record)
            session.commit()
            session.refresh(record)
            return CaptureJob.from_record(record)

    def get(self, job_id: str) -> CaptureJob:
        with self.session() as session:
            record = session.get(CaptureJobRecord, job_id)
            if not record:
                raise KeyError(f"Job {job_id} not found")
            return CaptureJob.from_record(record)

    def set_progress(self, job_id: str, percent: int) -> bool:
        """Raise progress while processing; lower values and terminal jobs are ignored."""

        value = max(0, min(100, int(percent)))
        statement = (
            update(CaptureJobRecord)
            .where(col(CaptureJobRecord.id) == job_id)
            .where(col(CaptureJobRecord.status) == JobStatus.PROCESSING.value)
            .where(col(CaptureJobRecord.progress) <= value)
            .values(progress=value)
        )
        return self._execute(statement) > 0

    def record_discovered(self, job_id: str, count: int) -> bool:
        statement = (
            update(CaptureJobRecord)
            .where(col(CaptureJobRecord.id) == job_id)
            .where(col(CaptureJobRecord.status) == JobStatus.PROCESSING.value)
            .values(discovered_pages=count)
        )
        return self._execute(statement) > 0

    def complete(self, job_id: str, file_mapping: Sequence[Mapping[str, Any]]) -> CaptureJob:
        statement = (
            update(CaptureJobRecord)
            .where(col(CaptureJobRecord.id) == job_id)
            .where(col(CaptureJobRecord.status) == JobStatus.PROCESSING.value)
            .values(
                status=JobStatus.COMPLETED.value,
                progress=100,
                file_mapping=[dict(entry) for entry in file_mapping],
                finished_at=_utc_naive(datetime.now(timezone.utc)),
            )
        )
        if not self._execute(statement):
            current = self.get(job_id)
            raise JobStateError(job_id, current.status.value, "complete")
        return self.get(job_id)

    def fail(self, job_id: str, message: str) -> bool:
        """Mark a processing job as errored; returns False when it was already terminal."""

        statement = (
            update(CaptureJobRecord)
            .where(col(CaptureJobRecord.id) == job_id)
            .where(col(CaptureJobRecord.status) == JobStatus.PROCESSING.value)
            .values(
                status=JobStatus.ERROR.value,
                error_message=message or "capture failed",
                finished_at=_utc_naive(datetime.now(timezone.utc)),
            )
        )
        return self._execute(statement) > 0

    def request_cancel(self, job_id: str) -> CaptureJob:
        statement = (
            update(CaptureJobRecord)
            .where(col(CaptureJobRecord.id) == job_id)
            .where(col(CaptureJobRecord.status) == JobStatus.PROCESSING.value)
            .values(
                status=JobStatus.CANCELLED.value,
                finished_at=_utc_naive(datetime.now(timezone.utc)),
            )
        )
        if not self._execute(statement):
            current = self.get(job_id)
            raise JobStateError(job_id, current.status.value, "cancel")
        return self.get(job_id)

    def increment_downloads(self, job_id: str) -> int:
        statement = (
            update(CaptureJobRecord)
            .where(col(CaptureJobRecord.id) == job_id)
            .values(download_count=CaptureJobRecord.download_count + 1)
        )
        if not self._execute(statement):
            raise KeyError(f"Job {job_id} not found")
        return self.get(job_id).download_count

    def list_jobs(self, owner_id: str, *, limit: int = 50) -> list[CaptureJob]:
        with self.session() as session:
            statement = (
                select(CaptureJobRecord)
                .where(CaptureJobRecord.owner_id == owner_id)
                .order_by(col(CaptureJobRecord.created_at).desc())
                .limit(limit)
            )
            return [CaptureJob.from_record(record) for record in session.exec(statement)]

    def list_expired(self, now: datetime | None = None) -> list[CaptureJob]:
        cutoff = _utc_naive(now or datetime.now(timezone.utc))
        with self.session() as session:
            statement = select(CaptureJobRecord).where(col(CaptureJobRecord.expires_at) <= cutoff)
            return [CaptureJob.from_record(record) for record in session.exec(statement)]

    def list_stale(self, cutoff: datetime) -> list[CaptureJob]:
        """Processing jobs created before ``cutoff``."""

        with self.session() as session:
            statement = (
                select(CaptureJobRecord)
                .where(CaptureJobRecord.status == JobStatus.PROCESSING.value)
                .where(col(CaptureJobRecord.created_at) < _utc_naive(cutoff))
            )
            return [CaptureJob.from_record(record) for record in session.exec(statement)]

    def delete(self, job_id: str) -> bool:
        statement = sql_delete(CaptureJobRecord).where(col(CaptureJobRecord.id) == job_id)
        return self._execute(statement) > 0

    def _execute(self, statement: Any) -> int:
        with self._write_lock, self.engine.begin() as conn:
            result = conn.execute(statement)
            return result.rowcount or 0


def build_store(config: StorageConfig | None = None) -> JobStore:
    """Convenience wrapper used by FastAPI startup hooks."""

    return JobStore(config=config)


def _create_engine(db_path: Path):
    return create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )


def _utc_naive(value: datetime) -> datetime:
    # SQLite drops tzinfo; everything is stored as naive UTC.
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.replace(tzinfo=None)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


__all__ = [
    "CaptureJob",
    "CaptureJobRecord",
    "JobInputs",
    "JobStateError",
    "JobStatus",
    "JobStore",
    "StorageConfig",
    "TERMINAL_STATUSES",
    "build_store",
]
