"""Job and phase tracking models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Phase(str, Enum):
    """Pipeline phases, in the order they were introduced."""

    A = "A"  # extraction
    B = "B"  # classification / consolidation
    C = "C"  # export
    D = "D"  # enrichment / captioning


PHASE_NAMES = {
    Phase.A: "extraction",
    Phase.B: "classification",
    Phase.C: "export",
    Phase.D: "enrichment",
}


class PhaseStatus(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class PhaseRecord(BaseModel):
    """Persisted state of one phase of one job."""

    phase: Phase
    status: PhaseStatus = PhaseStatus.NOT_STARTED
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    model_config = {"from_attributes": True}


class JobLogEntry(BaseModel):
    """A log line recorded against a job."""

    job_id: str
    phase: str
    level: LogLevel
    message: str
    created_at: datetime = Field(default_factory=utcnow)

    model_config = {"from_attributes": True}


class Job(BaseModel):
    """A document-processing job as seen by the job store."""

    id: str
    source_path: str
    output_dir: str
    status: JobStatus = JobStatus.PENDING
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    phases: dict[Phase, PhaseRecord] = Field(
        default_factory=lambda: {p: PhaseRecord(phase=p) for p in Phase}
    )

    model_config = {"from_attributes": True}
