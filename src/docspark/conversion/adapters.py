import copy
import hashlib
import json
import logging
import os
import shutil
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Iterator

from ..config import Settings
from .errors import InvalidTransition, JobNotFound, UploadTooLarge
from .interfaces import FileStorageGateway, JobStoreGateway
from .models import Job, JobStatus, StagedUpload, to_iso

logger = logging.getLogger(__name__)


# ─── File storage ───────────────────────────────────────────────────────────


class LocalFileStorage(FileStorageGateway):
    """Uploads and converted files on the local filesystem.

    Layout under ``data_dir``::

        staging/<random>.part           upload being received, no job yet
        jobs/<job_id>/input/original.*  the adopted upload
        jobs/<job_id>/output/result.*   the converted artifact
    """

    CHUNK = 1024 * 1024

    def __init__(self, data_dir: str | Path) -> None:
        self._base = Path(data_dir).resolve()
        self._staging = self._base / "staging"
        self._jobs = self._base / "jobs"
        self._staging.mkdir(parents=True, exist_ok=True)
        self._jobs.mkdir(parents=True, exist_ok=True)

    def job_dir(self, job_id: str) -> Path:
        return self._jobs / job_id

    async def stage_upload(
        self,
        reader: Callable[[int], Awaitable[bytes]],
        *,
        max_bytes: int,
    ) -> StagedUpload:
        path = self._staging / f"{uuid.uuid4().hex}.part"
        sha256 = hashlib.sha256()
        size_bytes = 0
        try:
            with path.open("wb") as f_out:
                while True:
                    chunk = await reader(self.CHUNK)
                    if not chunk:
                        break
                    b = bytes(chunk)
                    size_bytes += len(b)
                    if size_bytes > max_bytes:
                        raise UploadTooLarge(max_bytes // (1024 * 1024))
                    f_out.write(b)
                    sha256.update(b)
        except BaseException:
            path.unlink(missing_ok=True)
            raise
        return StagedUpload(path=str(path), size_bytes=size_bytes, sha256=sha256.hexdigest())

    def discard(self, staged: StagedUpload) -> None:
        Path(staged.path).unlink(missing_ok=True)

    def adopt(self, staged: StagedUpload, job_id: str, source_format: str) -> str:
        input_dir = self.job_dir(job_id) / "input"
        input_dir.mkdir(parents=True, exist_ok=True)
        suffix = f".{source_format}" if source_format else ""
        dest = input_dir / f"original{suffix}"
        os.replace(staged.path, dest)
        return str(dest)

    def output_path(self, job_id: str, target_format: str) -> str:
        output_dir = self.job_dir(job_id) / "output"
        output_dir.mkdir(parents=True, exist_ok=True)
        return str(output_dir / f"result.{target_format}")

    def remove_job_files(self, job: Job) -> None:
        for p in (job.original_path, job.converted_path):
            if p:
                Path(p).unlink(missing_ok=True)
        shutil.rmtree(self.job_dir(job.id), ignore_errors=True)


# ─── Job stores ─────────────────────────────────────────────────────────────

_NEXT_STATES = {
    JobStatus.QUEUED: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.PROCESSING, JobStatus.DONE, JobStatus.FAILED},
}


def _check_transition(job: Job, status: str) -> None:
    if status not in _NEXT_STATES.get(job.status, set()):
        raise InvalidTransition(f"job {job.id}: {job.status} -> {status} not allowed")


class _RecordStore(JobStoreGateway):
    """State-machine rules shared by every backend.

    Subclasses provide record primitives; every read-modify-write runs under
    one lock so two updates to the same job cannot interleave.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()

    # primitives
    def _insert(self, job: Job) -> None:
        raise NotImplementedError

    def _load(self, job_id: str) -> Job:
        raise NotImplementedError

    def _save(self, job: Job) -> None:
        raise NotImplementedError

    def _remove(self, job_id: str) -> None:
        raise NotImplementedError

    def _all(self) -> Iterator[Job]:
        raise NotImplementedError

    # gateway
    def create(self, job: Job) -> Job:
        with self._lock:
            self._insert(job)
        return job

    def get(self, job_id: str) -> Job:
        with self._lock:
            return self._load(job_id)

    def update_status(self, job_id: str, status: str, progress: int) -> Job:
        with self._lock:
            job = self._load(job_id)
            _check_transition(job, status)
            if progress < job.progress:
                raise InvalidTransition(f"job {job_id}: progress may not go back from {job.progress} to {progress}")
            job.status = status
            job.progress = min(progress, 100)
            self._save(job)
            return job

    def mark_done(self, job_id: str, converted_path: str, engine: str) -> Job:
        with self._lock:
            job = self._load(job_id)
            _check_transition(job, JobStatus.DONE)
            job.status = JobStatus.DONE
            job.progress = 100
            job.converted_path = converted_path
            job.engine = engine
            job.failure_reason = None
            self._save(job)
            return job

    def mark_failed(self, job_id: str, reason: str) -> Job:
        with self._lock:
            job = self._load(job_id)
            _check_transition(job, JobStatus.FAILED)
            job.status = JobStatus.FAILED
            job.failure_reason = reason
            job.converted_path = None
            job.insights = None
            self._save(job)
            return job

    def save_insights(self, job_id: str, insights: dict[str, object]) -> Job:
        with self._lock:
            job = self._load(job_id)
            if job.status != JobStatus.PROCESSING or not job.wants_insights:
                raise InvalidTransition(f"job {job_id}: insights not accepted in state {job.status}")
            job.insights = copy.deepcopy(insights)
            self._save(job)
            return job

    def delete(self, job_id: str) -> Job:
        with self._lock:
            job = self._load(job_id)
            self._remove(job_id)
            return job

    def list_expired(self, now: datetime) -> list[Job]:
        with self._lock:
            return [job for job in self._all() if job.is_expired(now)]


class InMemoryJobStore(_RecordStore):
    """Dictionary-backed store for tests and single-process development."""

    def __init__(self) -> None:
        super().__init__()
        self._jobs: dict[str, Job] = {}

    def _insert(self, job: Job) -> None:
        self._jobs[job.id] = copy.deepcopy(job)

    def _load(self, job_id: str) -> Job:
        try:
            return copy.deepcopy(self._jobs[job_id])
        except KeyError:
            raise JobNotFound(job_id) from None

    def _save(self, job: Job) -> None:
        if job.id not in self._jobs:
            raise JobNotFound(job.id)
        self._jobs[job.id] = copy.deepcopy(job)

    def _remove(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)

    def _all(self) -> Iterator[Job]:
        return iter([copy.deepcopy(j) for j in self._jobs.values()])


class JsonFileJobStore(_RecordStore):
    """One ``<job_id>.json`` document per job under ``records_dir``."""

    def __init__(self, records_dir: str | Path) -> None:
        super().__init__()
        self._base = Path(records_dir).resolve()
        self._base.mkdir(parents=True, exist_ok=True)

    def _path(self, job_id: str) -> Path:
        # ids are uuid4 strings; refuse anything that could escape the directory
        if not job_id or "/" in job_id or "\\" in job_id or job_id.startswith("."):
            raise JobNotFound(job_id)
        return self._base / f"{job_id}.json"

    def _write(self, job: Job) -> None:
        p = self._path(job.id)
        tmp = p.with_suffix(".json.tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(job.to_dict(), f, ensure_ascii=False, indent=2)
        os.replace(tmp, p)

    def _insert(self, job: Job) -> None:
        self._write(job)

    def _load(self, job_id: str) -> Job:
        p = self._path(job_id)
        try:
            with p.open("r", encoding="utf-8") as f:
                return Job.from_dict(json.load(f))
        except FileNotFoundError:
            raise JobNotFound(job_id) from None

    def _save(self, job: Job) -> None:
        if not self._path(job.id).exists():
            raise JobNotFound(job.id)
        self._write(job)

    def _remove(self, job_id: str) -> None:
        self._path(job_id).unlink(missing_ok=True)

    def _all(self) -> Iterator[Job]:
        for p in sorted(self._base.glob("*.json")):
            try:
                with p.open("r", encoding="utf-8") as f:
                    yield Job.from_dict(json.load(f))
            except FileNotFoundError:
                continue


_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    original_name TEXT NOT NULL,
    original_path TEXT NOT NULL,
    source_format TEXT NOT NULL,
    target_format TEXT NOT NULL,
    preset TEXT,
    analysis_mode TEXT NOT NULL,
    analysis_consent INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    progress INTEGER NOT NULL DEFAULT 0,
    converted_path TEXT,
    engine TEXT,
    failure_reason TEXT,
    insights TEXT,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_jobs_expires_at ON jobs(expires_at);
"""

_COLUMNS = (
    "id",
    "original_name",
    "original_path",
    "source_format",
    "target_format",
    "preset",
    "analysis_mode",
    "analysis_consent",
    "status",
    "progress",
    "converted_path",
    "engine",
    "failure_reason",
    "insights",
    "created_at",
    "expires_at",
)


class SqliteJobStore(_RecordStore):
    """SQLite-backed store; one short-lived connection per operation."""

    def __init__(self, db_path: str | Path) -> None:
        super().__init__()
        self._db_path = str(Path(db_path).resolve())
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(_SCHEMA)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _to_row(job: Job) -> tuple[object, ...]:
        data = job.to_dict()
        data["analysis_consent"] = 1 if job.analysis_consent else 0
        data["insights"] = json.dumps(job.insights) if job.insights is not None else None
        return tuple(data[c] for c in _COLUMNS)

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Job:
        data = {c: row[c] for c in _COLUMNS}
        data["insights"] = json.loads(data["insights"]) if data["insights"] else None
        return Job.from_dict(data)

    def _insert(self, job: Job) -> None:
        placeholders = ", ".join("?" for _ in _COLUMNS)
        with self._connect() as conn:
            conn.execute(f"INSERT INTO jobs ({', '.join(_COLUMNS)}) VALUES ({placeholders})", self._to_row(job))

    def _load(self, job_id: str) -> Job:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise JobNotFound(job_id)
        return self._from_row(row)

    def _save(self, job: Job) -> None:
        assignments = ", ".join(f"{c} = ?" for c in _COLUMNS[1:])
        values = self._to_row(job)
        with self._connect() as conn:
            cur = conn.execute(f"UPDATE jobs SET {assignments} WHERE id = ?", (*values[1:], job.id))
            if cur.rowcount == 0:
                raise JobNotFound(job.id)

    def _remove(self, job_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))

    def _all(self) -> Iterator[Job]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM jobs").fetchall()
        return iter([self._from_row(r) for r in rows])

    def list_expired(self, now: datetime) -> list[Job]:
        with self._lock, self._connect() as conn:
            rows = conn.execute("SELECT * FROM jobs WHERE expires_at <= ?", (to_iso(now),)).fetchall()
        return [self._from_row(r) for r in rows]


def build_job_store(settings: Settings) -> JobStoreGateway:
    kind = settings.job_store
    logger.info("Job store backend: %s", kind)
    if kind == "memory":
        return InMemoryJobStore()
    if kind == "sqlite":
        return SqliteJobStore(settings.resolved_sqlite_path)
    if kind == "json":
        return JsonFileJobStore(settings.data_dir / "records")
    raise ValueError(f"unknown JOB_STORE {kind!r}; expected json, sqlite or memory")
