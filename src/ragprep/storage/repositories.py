"""Job store implementations.

The pipeline only needs the narrow ``JobStore`` contract. ``SqlJobStore``
persists through SQLAlchemy (one short session per call, so every
transition is committed before the caller continues); ``MemoryJobStore``
keeps everything in process.
"""

import threading
from typing import Optional, Protocol, Sequence
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload, sessionmaker

from ragprep.models.job import (
    Job,
    JobLogEntry,
    JobStatus,
    LogLevel,
    Phase,
    PhaseRecord,
    PhaseStatus,
    utcnow,
)

from .database import session_scope
from .orm_models import JobLogORM, JobORM, JobPhaseORM


class JobStore(Protocol):
    """Persistence contract used by the orchestrator."""

    def create_job(self, source_path: str, output_dir: str) -> str: ...

    def update_job_phase(
        self, job_id: str, phase: Phase, status: PhaseStatus, error: Optional[str] = None
    ) -> None: ...

    def append_log(self, job_id: str, phase: str, level: LogLevel, message: str) -> None: ...

    def finish_job(self, job_id: str, status: JobStatus, error: Optional[str] = None) -> None: ...


def _apply_phase_status(record, status: PhaseStatus, error: Optional[str]) -> None:
    """Shared timestamp rules for ORM rows and in-memory records."""
    record.status = status
    if status == PhaseStatus.RUNNING:
        record.started_at = utcnow()
        record.completed_at = None
        record.error = None
    elif status in (PhaseStatus.DONE, PhaseStatus.FAILED):
        record.completed_at = utcnow()
        record.error = error


class JobRepository:
    """Repository for job rows."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, source_path: str, output_dir: str) -> JobORM:
        job = JobORM(id=str(uuid4()), source_path=source_path, output_dir=output_dir)
        job.phases = [JobPhaseORM(phase=p) for p in Phase]
        self.session.add(job)
        self.session.flush()
        return job

    def get_by_id(self, job_id: str) -> Optional[JobORM]:
        result = self.session.execute(
            select(JobORM).where(JobORM.id == job_id).options(selectinload(JobORM.phases))
        )
        return result.scalar_one_or_none()

    def require(self, job_id: str) -> JobORM:
        job = self.get_by_id(job_id)
        if job is None:
            raise KeyError(f"Unknown job {job_id}")
        return job

    def set_phase(self, job_id: str, phase: Phase, status: PhaseStatus, error: Optional[str]) -> None:
        job = self.require(job_id)
        record = next(p for p in job.phases if p.phase == phase)
        _apply_phase_status(record, status, error)
        if status == PhaseStatus.RUNNING and job.status == JobStatus.PENDING:
            job.status = JobStatus.RUNNING
        self.session.flush()

    def finish(self, job_id: str, status: JobStatus, error: Optional[str]) -> None:
        job = self.require(job_id)
        job.status = status
        job.error = error
        job.completed_at = utcnow()
        self.session.flush()

    def add_log(self, job_id: str, phase: str, level: LogLevel, message: str) -> None:
        self.session.add(JobLogORM(job_id=job_id, phase=phase, level=level, message=message))
        self.session.flush()

    def list_logs(self, job_id: str, limit: int = 50) -> Sequence[JobLogORM]:
        """Most recent log lines, oldest first."""
        result = self.session.execute(
            select(JobLogORM)
            .where(JobLogORM.job_id == job_id)
            .order_by(JobLogORM.id.desc())
            .limit(limit)
        )
        return list(reversed(result.scalars().all()))


def _job_from_orm(orm_job: JobORM) -> Job:
    return Job(
        id=orm_job.id,
        source_path=orm_job.source_path,
        output_dir=orm_job.output_dir,
        status=orm_job.status,
        error=orm_job.error,
        created_at=orm_job.created_at,
        completed_at=orm_job.completed_at,
        phases={p.phase: PhaseRecord.model_validate(p) for p in orm_job.phases},
    )


class SqlJobStore:
    """SQLAlchemy-backed job store; safe to share between worker threads."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def create_job(self, source_path: str, output_dir: str) -> str:
        with session_scope(self.session_factory) as session:
            return JobRepository(session).create(source_path, output_dir).id

    def update_job_phase(
        self, job_id: str, phase: Phase, status: PhaseStatus, error: Optional[str] = None
    ) -> None:
        with session_scope(self.session_factory) as session:
            JobRepository(session).set_phase(job_id, phase, status, error)

    def append_log(self, job_id: str, phase: str, level: LogLevel, message: str) -> None:
        with session_scope(self.session_factory) as session:
            JobRepository(session).add_log(job_id, phase, level, message)

    def finish_job(self, job_id: str, status: JobStatus, error: Optional[str] = None) -> None:
        with session_scope(self.session_factory) as session:
            JobRepository(session).finish(job_id, status, error)

    def get_job(self, job_id: str) -> Optional[Job]:
        with session_scope(self.session_factory) as session:
            orm_job = JobRepository(session).get_by_id(job_id)
            return _job_from_orm(orm_job) if orm_job else None

    def recent_logs(self, job_id: str, limit: int = 50) -> list[JobLogEntry]:
        with session_scope(self.session_factory) as session:
            return [JobLogEntry.model_validate(row) for row in JobRepository(session).list_logs(job_id, limit)]


class MemoryJobStore:
    """In-process job store; records every phase transition in order."""

    def __init__(self):
        self._lock = threading.Lock()
        self.jobs: dict[str, Job] = {}
        self.logs: dict[str, list[JobLogEntry]] = {}
        self.transitions: list[tuple[str, Phase, PhaseStatus]] = []

    def create_job(self, source_path: str, output_dir: str) -> str:
        job = Job(id=str(uuid4()), source_path=source_path, output_dir=output_dir)
        with self._lock:
            self.jobs[job.id] = job
            self.logs[job.id] = []
        return job.id

    def update_job_phase(
        self, job_id: str, phase: Phase, status: PhaseStatus, error: Optional[str] = None
    ) -> None:
        with self._lock:
            job = self.jobs[job_id]
            _apply_phase_status(job.phases[phase], status, error)
            if status == PhaseStatus.RUNNING and job.status == JobStatus.PENDING:
                job.status = JobStatus.RUNNING
            self.transitions.append((job_id, phase, status))

    def append_log(self, job_id: str, phase: str, level: LogLevel, message: str) -> None:
        with self._lock:
            self.logs.setdefault(job_id, []).append(
                JobLogEntry(job_id=job_id, phase=phase, level=level, message=message)
            )

    def finish_job(self, job_id: str, status: JobStatus, error: Optional[str] = None) -> None:
        with self._lock:
            job = self.jobs[job_id]
            job.status = status
            job.error = error
            job.completed_at = utcnow()

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self.jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def recent_logs(self, job_id: str, limit: int = 50) -> list[JobLogEntry]:
        with self._lock:
            return list(self.logs.get(job_id, [])[-limit:])
