"""Tests for job stores."""

import pytest

from ragprep.models import JobStatus, LogLevel, Phase, PhaseStatus
from ragprep.storage import MemoryJobStore, open_job_store


@pytest.fixture(params=["sql", "memory"])
def store(request):
    if request.param == "sql":
        return open_job_store("sqlite://")
    return MemoryJobStore()


class TestJobStore:
    """Both implementations honour the same contract."""

    def test_create_job(self, store):
        """Test a new job is pending with every phase not started."""
        job_id = store.create_job("/in/rules.pdf", "/out/rules-1")

        job = store.get_job(job_id)
        assert job.status == JobStatus.PENDING
        assert job.source_path == "/in/rules.pdf"
        assert set(job.phases) == set(Phase)
        assert all(p.status == PhaseStatus.NOT_STARTED for p in job.phases.values())

    def test_phase_lifecycle(self, store):
        """Test running and done transitions set timestamps."""
        job_id = store.create_job("/in/rules.pdf", "/out/rules-1")

        store.update_job_phase(job_id, Phase.A, PhaseStatus.RUNNING)
        running = store.get_job(job_id)
        assert running.status == JobStatus.RUNNING
        assert running.phases[Phase.A].started_at is not None

        store.update_job_phase(job_id, Phase.A, PhaseStatus.DONE)
        done = store.get_job(job_id).phases[Phase.A]
        assert done.status == PhaseStatus.DONE
        assert done.completed_at is not None
        assert done.error is None

    def test_phase_failure_records_error(self, store):
        """Test a failed phase keeps its error message."""
        job_id = store.create_job("/in/rules.pdf", "/out/rules-1")

        store.update_job_phase(job_id, Phase.A, PhaseStatus.RUNNING)
        store.update_job_phase(job_id, Phase.A, PhaseStatus.FAILED, "HTTP 503")
        store.finish_job(job_id, JobStatus.FAILED, "Phase A: HTTP 503")

        job = store.get_job(job_id)
        assert job.phases[Phase.A].error == "HTTP 503"
        assert job.status == JobStatus.FAILED
        assert job.error == "Phase A: HTTP 503"
        assert job.completed_at is not None

    def test_logs_in_order(self, store):
        """Test logs come back oldest first and respect the limit."""
        job_id = store.create_job("/in/rules.pdf", "/out/rules-1")

        store.append_log(job_id, "A", LogLevel.INFO, "first")
        store.append_log(job_id, "A", LogLevel.WARN, "second")
        store.append_log(job_id, "B", LogLevel.ERROR, "third")

        logs = store.recent_logs(job_id)
        assert [(e.phase, e.level, e.message) for e in logs] == [
            ("A", LogLevel.INFO, "first"),
            ("A", LogLevel.WARN, "second"),
            ("B", LogLevel.ERROR, "third"),
        ]
        assert [e.message for e in store.recent_logs(job_id, limit=2)] == ["second", "third"]

    def test_unknown_job(self, store):
        """Test an unknown job id returns None."""
        assert store.get_job("missing") is None

    def test_update_unknown_job_raises(self, store):
        """Test updating an unknown job raises KeyError."""
        with pytest.raises(KeyError):
            store.update_job_phase("missing", Phase.A, PhaseStatus.RUNNING)


class TestMemoryJobStore:
    """Tests for the in-memory store."""

    def test_transitions_recorded(self):
        """Test phase transitions are recorded in order."""
        store = MemoryJobStore()
        job_id = store.create_job("/in/a.pdf", "/out/a")

        store.update_job_phase(job_id, Phase.A, PhaseStatus.RUNNING)
        store.update_job_phase(job_id, Phase.A, PhaseStatus.DONE)

        assert store.transitions == [
            (job_id, Phase.A, PhaseStatus.RUNNING),
            (job_id, Phase.A, PhaseStatus.DONE),
        ]

    def test_get_job_returns_copy(self):
        """Test callers cannot mutate stored jobs."""
        store = MemoryJobStore()
        job_id = store.create_job("/in/a.pdf", "/out/a")

        store.get_job(job_id).status = JobStatus.DONE

        assert store.get_job(job_id).status == JobStatus.PENDING
