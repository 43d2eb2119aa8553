"""Tests for the phase orchestrator."""

import json
import logging
import threading
from pathlib import Path

import pytest
from PIL import Image

from conftest import FakeLayoutService, FakeRasterizer, FakeVision
from ragprep.errors import JobCancelled, PhaseFailed, TransportError
from ragprep.models import (
    ContentQuality,
    DiagramSource,
    JobStatus,
    LayoutPage,
    LayoutResult,
    LogLevel,
    Phase,
    PhaseStatus,
    TextBlock,
)
from ragprep.pipeline.orchestrator import JobLogHandler, PipelineOrchestrator


def build(settings, job_store, layout_service=None, vision=None, rasterizer=None, **overrides):
    config = settings.model_copy(update=overrides)
    orchestrator = PipelineOrchestrator(
        config,
        job_store,
        layout_service=layout_service,
        vision_client=vision,
    )
    rasterizer = rasterizer or FakeRasterizer()
    orchestrator.rasterizer = rasterizer
    orchestrator.cropper.rasterizer = rasterizer
    return orchestrator


def only_job(job_store):
    (job_id,) = job_store.jobs
    return job_store.get_job(job_id)


class TestPipelineRun:
    """End-to-end runs over the five-page scenario."""

    def test_phase_order_persisted(self, test_settings, job_store, layout_result, sample_pdf_path, tmp_path):
        """Test phases run A, B, D, C and each transition is stored."""
        orchestrator = build(test_settings, job_store, FakeLayoutService(layout_result))

        result = orchestrator.run(sample_pdf_path, tmp_path / "job")

        assert result.status == JobStatus.DONE
        assert [(phase, status) for _, phase, status in job_store.transitions] == [
            (Phase.A, PhaseStatus.RUNNING),
            (Phase.A, PhaseStatus.DONE),
            (Phase.B, PhaseStatus.RUNNING),
            (Phase.B, PhaseStatus.DONE),
            (Phase.D, PhaseStatus.RUNNING),
            (Phase.D, PhaseStatus.DONE),
            (Phase.C, PhaseStatus.RUNNING),
            (Phase.C, PhaseStatus.DONE),
        ]
        job = job_store.get_job(result.job_id)
        assert job.status == JobStatus.DONE
        assert all(record.status == PhaseStatus.DONE for record in job.phases.values())

    def test_scenario_outputs(self, test_settings, job_store, layout_result, sample_pdf_path, tmp_path):
        """Test diagrams, merged table and manifest for the five-page document."""
        vision = FakeVision()
        orchestrator = build(
            test_settings, job_store, FakeLayoutService(layout_result), vision, enable_vision_segmentation=True
        )
        output_dir = tmp_path / "job"

        result = orchestrator.run(sample_pdf_path, output_dir)

        diagrams = {d.source: d for d in result.content.diagrams}
        assert set(diagrams) == {DiagramSource.AZURE_FIGURE, DiagramSource.VISION_SEGMENT}
        assert diagrams[DiagramSource.AZURE_FIGURE].page == 2
        assert diagrams[DiagramSource.VISION_SEGMENT].page == 5
        assert diagrams[DiagramSource.VISION_SEGMENT].quality == ContentQuality.LOW_CONFIDENCE
        assert vision.segment_calls == 1

        (table,) = result.content.tables
        assert table.page_range == (3, 4)
        assert table.row_count == 3

        manifest = json.loads((output_dir / "manifest.json").read_text())
        assert manifest["jobId"] == result.job_id
        assert manifest["buckets"]["tables"] == {table.id: "auto_ok"}
        assert (output_dir / "auto_ok" / "tables" / f"{table.id}.csv").exists()
        assert (output_dir / "diagrams" / "images" / f"{diagrams[DiagramSource.AZURE_FIGURE].id}.png").exists()

    def test_render_failure_degrades_without_failing(
        self, test_settings, job_store, layout_result, sample_pdf_path, tmp_path
    ):
        """Test a page that cannot render is listed for review."""
        orchestrator = build(
            test_settings,
            job_store,
            FakeLayoutService(layout_result),
            FakeVision(),
            rasterizer=FakeRasterizer(fail_pages={5}),
            enable_vision_segmentation=True,
        )
        output_dir = tmp_path / "job"

        result = orchestrator.run(sample_pdf_path, output_dir)

        assert result.status == JobStatus.DONE
        assert [d.page for d in result.content.diagrams] == [2]
        assert result.content.review_pages == {5}
        manifest = json.loads((output_dir / "manifest.json").read_text())
        assert manifest["reviewPages"] == [5]

    def test_default_job_dir_under_output_root(self, test_settings, job_store, layout_result, sample_pdf_path):
        """Test the job directory defaults to output_root."""
        orchestrator = build(test_settings, job_store, FakeLayoutService(layout_result))

        result = orchestrator.run(sample_pdf_path)

        assert result.output_dir.parent == Path(test_settings.output_root)
        assert result.output_dir.name.startswith("rules-")

    def test_captions(self, test_settings, job_store, layout_result, sample_pdf_path, tmp_path):
        """Test diagram captions are filled in phase D."""
        vision = FakeVision(caption_text="Front suspension geometry")
        orchestrator = build(test_settings, job_store, FakeLayoutService(layout_result), vision, caption_diagrams=True)

        result = orchestrator.run(sample_pdf_path, tmp_path / "job")

        (diagram,) = result.content.diagrams
        assert diagram.description == "Front suspension geometry"
        assert vision.segment_calls == 0

    def test_handwritten_image(self, test_settings, job_store, tmp_path):
        """Test a handwritten image is transcribed and sent to review."""
        source = tmp_path / "note.jpg"
        Image.new("RGB", (60, 40), "white").save(source, format="JPEG")
        layout = LayoutResult(
            pages=[LayoutPage(page_number=1, width=60, height=40, unit="pixel")],
            text_blocks=[TextBlock(content="chek brakse", page_number=1, handwritten=True, confidence=0.6)],
        )
        vision = FakeVision(transcription="check brakes")
        orchestrator = build(test_settings, job_store, FakeLayoutService(layout), vision, handwriting_vision=True)

        result = orchestrator.run(source, tmp_path / "job")

        (chunk,) = result.content.narrative_blocks
        assert chunk.text == "check brakes"
        assert chunk.quality == ContentQuality.HANDWRITING
        assert vision.transcribe_calls == [str(tmp_path / "job" / "normalized_note.png")]
        assert result.export_report.buckets["needs_review"] == 1


class TestPipelineFailures:
    """Failed and cancelled runs."""

    def test_layout_error_fails_phase_a(self, test_settings, job_store, sample_pdf_path, tmp_path):
        """Test a layout service error fails phase A and stops the job."""
        layout = FakeLayoutService(error=TransportError("HTTP 503", status_code=503))
        orchestrator = build(test_settings, job_store, layout)

        with pytest.raises(PhaseFailed) as exc_info:
            orchestrator.run(sample_pdf_path, tmp_path / "job")

        assert exc_info.value.phase == "A"
        job = only_job(job_store)
        assert job.status == JobStatus.FAILED
        assert job.phases[Phase.A].status == PhaseStatus.FAILED
        assert job.phases[Phase.A].error == "HTTP 503"
        assert job.phases[Phase.B].status == PhaseStatus.NOT_STARTED
        assert not (tmp_path / "job" / "manifest.json").exists()

    def test_unconfigured_layout_service(self, test_settings, job_store, sample_pdf_path, tmp_path):
        """Test phase A fails when no layout service is set up."""
        orchestrator = build(test_settings, job_store)

        with pytest.raises(PhaseFailed, match="not configured"):
            orchestrator.run(sample_pdf_path, tmp_path / "job")

    def test_cancel_before_start(self, test_settings, job_store, layout_result, sample_pdf_path, tmp_path):
        """Test a job cancelled up front never calls the layout service."""
        layout = FakeLayoutService(layout_result)
        orchestrator = build(test_settings, job_store, layout)
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(JobCancelled):
            orchestrator.run(sample_pdf_path, tmp_path / "job", cancel_event=cancel)

        job = only_job(job_store)
        assert job.status == JobStatus.CANCELLED
        assert job.phases[Phase.A].status == PhaseStatus.FAILED
        assert layout.calls == 0

    def test_cancel_between_phases(self, test_settings, job_store, layout_result, sample_pdf_path, tmp_path):
        """Test cancellation is honoured at the next phase boundary."""
        cancel = threading.Event()

        class CancellingLayout(FakeLayoutService):
            def analyze(self, document_bytes):
                cancel.set()
                return super().analyze(document_bytes)

        orchestrator = build(test_settings, job_store, CancellingLayout(layout_result))

        with pytest.raises(JobCancelled):
            orchestrator.run(sample_pdf_path, tmp_path / "job", cancel_event=cancel)

        job = only_job(job_store)
        assert job.status == JobStatus.CANCELLED
        assert job.phases[Phase.A].status == PhaseStatus.DONE
        assert job.phases[Phase.B].status == PhaseStatus.FAILED
        assert job.phases[Phase.C].status == PhaseStatus.NOT_STARTED

    def test_handler_detached_after_failure(self, test_settings, job_store, sample_pdf_path, tmp_path):
        """Test the job log handler is removed after a failed run."""
        orchestrator = build(test_settings, job_store)

        with pytest.raises(PhaseFailed):
            orchestrator.run(sample_pdf_path, tmp_path / "job")

        assert not any(isinstance(h, JobLogHandler) for h in logging.getLogger("ragprep").handlers)

    def test_logger_level_restored(self, test_settings, job_store, layout_result, sample_pdf_path, tmp_path):
        """Test a quieter package logger level survives a run."""
        package_logger = logging.getLogger("ragprep")
        original = package_logger.level
        package_logger.setLevel(logging.WARNING)
        try:
            orchestrator = build(test_settings, job_store, FakeLayoutService(layout_result))
            result = orchestrator.run(sample_pdf_path, tmp_path / "job")

            assert package_logger.level == logging.WARNING
            assert job_store.recent_logs(result.job_id)
        finally:
            package_logger.setLevel(original)


class TestJobLogs:
    """Log forwarding into the job store."""

    def test_phase_logs_forwarded(self, test_settings, job_store, layout_result, sample_pdf_path, tmp_path):
        """Test phase start and finish messages reach the job log."""
        orchestrator = build(test_settings, job_store, FakeLayoutService(layout_result))

        result = orchestrator.run(sample_pdf_path, tmp_path / "job")

        logs = job_store.recent_logs(result.job_id, limit=500)
        messages = [(e.phase, e.message) for e in logs]
        assert ("A", "ragprep.pipeline.orchestrator: Phase A (extraction) started") in messages
        assert ("C", "ragprep.pipeline.orchestrator: Phase C (export) done") in messages
        assert all(e.level in LogLevel for e in logs)

    def test_failure_logged_as_error(self, test_settings, job_store, sample_pdf_path, tmp_path):
        """Test a phase failure is stored at ERROR level."""
        orchestrator = build(test_settings, job_store, FakeLayoutService(error=TransportError("HTTP 500")))

        with pytest.raises(PhaseFailed):
            orchestrator.run(sample_pdf_path, tmp_path / "job")

        job = only_job(job_store)
        errors = [e for e in job_store.recent_logs(job.id) if e.level == LogLevel.ERROR]
        assert errors and errors[0].phase == "A"

    def test_other_jobs_not_captured(self, job_store):
        """Test records outside a running job are ignored."""
        handler = JobLogHandler(job_store, "job-1")
        record = logging.LogRecord("ragprep.x", logging.INFO, __file__, 1, "stray", None, None)

        handler.handle(record)

        assert job_store.recent_logs("job-1") == []
