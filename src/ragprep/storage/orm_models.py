"""SQLAlchemy ORM models for job tracking.

One row per job, one row per (job, phase) and an append-only log table.
"""

from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ragprep.models.job import JobStatus, LogLevel, Phase, PhaseStatus, utcnow

from .database import Base


def _enum(enum_cls) -> Enum:
    """Store enum values ('not_started'), not member names."""
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=32,
    )


class JobORM(Base):
    """Job table - one document-processing run."""

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    source_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    output_dir: Mapped[str] = mapped_column(String(1024), nullable=False)

    status: Mapped[JobStatus] = mapped_column(_enum(JobStatus), default=JobStatus.PENDING)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    phases: Mapped[list["JobPhaseORM"]] = relationship(
        back_populates="job", cascade="all, delete-orphan", order_by="JobPhaseORM.phase"
    )
    logs: Mapped[list["JobLogORM"]] = relationship(
        back_populates="job", cascade="all, delete-orphan", order_by="JobLogORM.id"
    )

    __table_args__ = (Index("ix_jobs_status", "status"),)


class JobPhaseORM(Base):
    """Phase status per job."""

    __tablename__ = "job_phases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(36), ForeignKey("jobs.id", ondelete="CASCADE"))
    phase: Mapped[Phase] = mapped_column(_enum(Phase), nullable=False)
    status: Mapped[PhaseStatus] = mapped_column(_enum(PhaseStatus), default=PhaseStatus.NOT_STARTED)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    job: Mapped["JobORM"] = relationship(back_populates="phases")

    __table_args__ = (UniqueConstraint("job_id", "phase", name="uq_job_phases_job_phase"),)


class JobLogORM(Base):
    """Append-only log lines per job."""

    __tablename__ = "job_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(36), ForeignKey("jobs.id", ondelete="CASCADE"))
    phase: Mapped[str] = mapped_column(String(16), nullable=False)
    level: Mapped[LogLevel] = mapped_column(_enum(LogLevel), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    job: Mapped["JobORM"] = relationship(back_populates="logs")

    __table_args__ = (Index("ix_job_logs_job_id", "job_id"),)
