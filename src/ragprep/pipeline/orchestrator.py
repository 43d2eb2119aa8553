"""Phase Orchestrator - Drive one document through the pipeline phases.

Phases run strictly in this order, each only once its predecessors are done:

- A extraction      normalize, layout analysis, diagram detection, cropping
- B classification  quality tiers, table consolidation
- D enrichment      handwriting transcription, diagram captions
- C export          bucketed artifacts and manifest

Every phase transition is written to the job store before the pipeline
moves on. While a job runs, INFO+ records from ``ragprep`` loggers are
forwarded to the job log with job and phase attached.
"""

import contextvars
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional
from uuid import uuid4

from ragprep.config import Settings
from ragprep.errors import JobCancelled, PhaseFailed, RagprepError
from ragprep.models import (
    PHASE_NAMES,
    Document,
    IdAllocator,
    JobStatus,
    LogLevel,
    Phase,
    PhaseStatus,
    RoutedContent,
)
from ragprep.pipeline.deadline import call_with_deadline
from ragprep.pipeline.stage_caption import DiagramCaptioner
from ragprep.pipeline.stage_diagrams import DetectionContext, DiagramDetectionChain
from ragprep.pipeline.stage_export import Exporter, ExportReport
from ragprep.pipeline.stage_htr import HandwritingEnricher
from ragprep.pipeline.stage_images import DiagramCropper
from ragprep.pipeline.stage_layout import AzureLayoutClient, LayoutExtractor, LayoutService
from ragprep.pipeline.stage_normalize import normalize_input
from ragprep.pipeline.stage_quality import QualityClassifier
from ragprep.pipeline.stage_render import PageRasterizer, PillowSurface, SurfaceFactory
from ragprep.pipeline.stage_table import TableConsolidator
from ragprep.pipeline.vision import OpenAIVisionClient
from ragprep.storage import JobStore

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "ragprep"

_current_job: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("ragprep_job", default=None)
_current_phase: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("ragprep_phase", default=None)


class JobContextFilter(logging.Filter):
    """Stamps records with the job id and phase of the running context."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.job_id = _current_job.get()
        record.phase = _current_phase.get()
        return True


class JobLogHandler(logging.Handler):
    """Forwards a job's log records to ``job_store.append_log``."""

    def __init__(self, job_store: JobStore, job_id: str, level: int = logging.INFO):
        super().__init__(level=level)
        self.job_store = job_store
        self.job_id = job_id
        self._local = threading.local()
        self.addFilter(JobContextFilter())
        self.setFormatter(logging.Formatter("%(name)s: %(message)s"))

    @staticmethod
    def store_level(levelno: int) -> LogLevel:
        if levelno >= logging.ERROR:
            return LogLevel.ERROR
        if levelno >= logging.WARNING:
            return LogLevel.WARN
        return LogLevel.INFO

    def emit(self, record: logging.LogRecord) -> None:
        if getattr(record, "job_id", None) != self.job_id:
            return
        # A store that logs while writing must not feed back into itself
        if getattr(self._local, "busy", False):
            return
        self._local.busy = True
        try:
            self.job_store.append_log(
                self.job_id,
                record.phase or "-",
                self.store_level(record.levelno),
                self.format(record),
            )
        except Exception:
            self.handleError(record)
        finally:
            self._local.busy = False


@dataclass
class JobRun:
    """Working state of one job, threaded through the phases."""

    job_id: str
    source_path: Path
    output_dir: Path
    ids: IdAllocator = field(default_factory=IdAllocator)
    document: Optional[Document] = None
    content: RoutedContent = field(default_factory=RoutedContent)
    export_report: Optional[ExportReport] = None


@dataclass(frozen=True)
class PhaseSpec:
    phase: Phase
    requires: tuple[Phase, ...]
    run: Callable[[JobRun], None]


@dataclass
class PipelineResult:
    """What a finished (or stopped) job produced."""

    job_id: str
    output_dir: Path
    status: JobStatus
    phases: dict[Phase, PhaseStatus]
    document: Optional[Document] = None
    content: Optional[RoutedContent] = None
    export_report: Optional[ExportReport] = None


class PipelineOrchestrator:
    """Builds every stage from ``Settings`` and runs jobs through them."""

    def __init__(
        self,
        config: Settings,
        job_store: JobStore,
        layout_service: Optional[LayoutService] = None,
        vision_client=None,
        surface_factory: Optional[SurfaceFactory] = PillowSurface,
    ):
        """Initialize orchestrator.

        Args:
            config: Settings loaded once at process start.
            job_store: Where phase transitions and logs are persisted.
            layout_service: Layout client; built from ``config`` if omitted.
            vision_client: Object providing segment/transcribe/caption;
                built from ``config`` if omitted and an API key is set.
            surface_factory: Raster surface for page rendering.

        Raises:
            RenderUnavailable: If no raster surface is available.
        """
        self.config = config
        self.job_store = job_store

        if layout_service is None and config.layout_configured:
            layout_service = AzureLayoutClient(
                endpoint=config.azure_doc_endpoint,
                api_key=config.azure_doc_key,
                api_version=config.azure_api_version,
                model_id=config.azure_model_id,
                poll_interval=config.azure_poll_interval,
                max_poll_seconds=config.azure_max_poll_seconds,
            )
        self.layout_service = layout_service

        if vision_client is None and config.vision_enabled:
            vision_client = OpenAIVisionClient(api_key=config.openai_api_key, model=config.vision_model)
        self.vision_client = vision_client

        timeout = config.service_timeout_seconds
        self.rasterizer = PageRasterizer(surface_factory, dpi=config.render_dpi, max_workers=config.max_workers)
        self.detection_chain = DiagramDetectionChain()
        self.cropper = DiagramCropper(self.rasterizer)
        self.classifier = QualityClassifier(
            low_confidence_threshold=config.low_confidence_threshold,
            diagram_confidence_threshold=config.diagram_confidence_threshold,
        )
        self.consolidator = TableConsolidator(page_gap=config.table_page_gap)
        self.enricher = HandwritingEnricher(vision_client, timeout=timeout)
        self.captioner = DiagramCaptioner(vision_client, timeout=timeout)
        self.exporter = Exporter(
            narrative_max_chars=config.narrative_max_chars,
            narrative_overlap=config.narrative_overlap,
            preview_rows=config.table_preview_rows,
        )

        self.phases = [
            PhaseSpec(Phase.A, (), self._extract),
            PhaseSpec(Phase.B, (Phase.A,), self._classify),
            PhaseSpec(Phase.D, (Phase.B,), self._enrich),
            PhaseSpec(Phase.C, (Phase.B, Phase.D), self._export),
        ]

    def job_dir_for(self, source_path: Path) -> Path:
        return Path(self.config.output_root) / f"{source_path.stem}-{uuid4().hex[:8]}"

    def run(
        self,
        source_path: Path,
        output_dir: Optional[Path] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> PipelineResult:
        """Process one document end to end.

        Args:
            source_path: PDF or image to process.
            output_dir: Job output directory (default: a new one under output_root).
            cancel_event: Checked before each phase.

        Returns:
            PipelineResult for a completed job.

        Raises:
            PhaseFailed: A phase raised; the job is marked failed.
            JobCancelled: ``cancel_event`` was set between phases.
        """
        source_path = Path(source_path)
        output_dir = Path(output_dir) if output_dir else self.job_dir_for(source_path)
        output_dir.mkdir(parents=True, exist_ok=True)

        job_id = self.job_store.create_job(str(source_path), str(output_dir))
        job = JobRun(job_id=job_id, source_path=source_path, output_dir=output_dir)
        statuses = {spec.phase: PhaseStatus.NOT_STARTED for spec in self.phases}

        handler = JobLogHandler(self.job_store, job_id)
        package_logger = logging.getLogger(PACKAGE_LOGGER)
        previous_level = package_logger.level
        if package_logger.getEffectiveLevel() > logging.INFO:
            # Job logs keep INFO records even when the console is quieter
            package_logger.setLevel(logging.INFO)
        package_logger.addHandler(handler)
        job_token = _current_job.set(job_id)
        try:
            logger.info("Job %s started for %s", job_id, source_path.name)
            for spec in self.phases:
                self._check_cancelled(job_id, spec.phase, statuses, cancel_event)
                self._check_predecessors(job_id, spec, statuses)
                self._run_phase(job, spec, statuses)

            self.job_store.finish_job(job_id, JobStatus.DONE)
            logger.info("Job %s done", job_id)
        finally:
            _current_job.reset(job_token)
            package_logger.removeHandler(handler)
            package_logger.setLevel(previous_level)

        return PipelineResult(
            job_id=job_id,
            output_dir=output_dir,
            status=JobStatus.DONE,
            phases=dict(statuses),
            document=job.document,
            content=job.content,
            export_report=job.export_report,
        )

    # ------------------------------------------------------------------
    # Phase control
    # ------------------------------------------------------------------

    def _set_phase(
        self,
        job_id: str,
        phase: Phase,
        status: PhaseStatus,
        statuses: dict[Phase, PhaseStatus],
        error: Optional[str] = None,
    ) -> None:
        self.job_store.update_job_phase(job_id, phase, status, error)
        statuses[phase] = status

    def _check_cancelled(self, job_id, phase, statuses, cancel_event) -> None:
        if cancel_event is None or not cancel_event.is_set():
            return
        message = f"Cancelled before phase {phase.value} ({PHASE_NAMES[phase]})"
        logger.warning("%s", message)
        self._set_phase(job_id, phase, PhaseStatus.FAILED, statuses, error=message)
        self.job_store.finish_job(job_id, JobStatus.CANCELLED, message)
        raise JobCancelled(message)

    def _check_predecessors(self, job_id, spec: PhaseSpec, statuses) -> None:
        missing = [p.value for p in spec.requires if statuses[p] != PhaseStatus.DONE]
        if not missing:
            return
        message = f"predecessor phase(s) {', '.join(missing)} not done"
        self._set_phase(job_id, spec.phase, PhaseStatus.FAILED, statuses, error=message)
        self.job_store.finish_job(job_id, JobStatus.FAILED, message)
        raise PhaseFailed(spec.phase.value, message)

    def _run_phase(self, job: JobRun, spec: PhaseSpec, statuses) -> None:
        phase_token = _current_phase.set(spec.phase.value)
        try:
            self._set_phase(job.job_id, spec.phase, PhaseStatus.RUNNING, statuses)
            logger.info("Phase %s (%s) started", spec.phase.value, PHASE_NAMES[spec.phase])
            try:
                spec.run(job)
            except Exception as exc:
                logger.error(
                    "Phase %s (%s) failed: %s",
                    spec.phase.value,
                    PHASE_NAMES[spec.phase],
                    exc,
                    exc_info=not isinstance(exc, RagprepError),
                )
                self._set_phase(job.job_id, spec.phase, PhaseStatus.FAILED, statuses, error=str(exc))
                self.job_store.finish_job(job.job_id, JobStatus.FAILED, f"Phase {spec.phase.value}: {exc}")
                raise PhaseFailed(spec.phase.value, str(exc)) from exc

            self._set_phase(job.job_id, spec.phase, PhaseStatus.DONE, statuses)
            logger.info("Phase %s (%s) done", spec.phase.value, PHASE_NAMES[spec.phase])
        finally:
            _current_phase.reset(phase_token)

    # ------------------------------------------------------------------
    # Phase bodies
    # ------------------------------------------------------------------

    def _extract(self, job: JobRun) -> None:
        if self.layout_service is None:
            raise RagprepError("Layout service is not configured (set AZURE_DOC_ENDPOINT and AZURE_DOC_KEY)")

        document = normalize_input(job.source_path, job.output_dir)
        job.document = document

        layout = call_with_deadline(
            self.layout_service.analyze,
            document.normalized_path_obj.read_bytes(),
            timeout=self.config.service_timeout_seconds,
            what="Layout analysis",
        )

        extractor = LayoutExtractor(ids=job.ids, caption_pattern=self.config.caption_pattern)
        extraction = extractor.extract(
            layout,
            source_pdf=document.source_filename,
            origin=document.origin,
            source_image_path=document.source_image_path,
        )

        use_vision = self.config.enable_vision_segmentation and self.vision_client is not None
        if self.config.enable_vision_segmentation and not use_vision:
            logger.warning("Vision segmentation enabled but no vision client is configured")

        ctx = DetectionContext(
            document=document,
            extraction=extraction,
            ids=job.ids,
            rasterizer=self.rasterizer,
            segmenter=self.vision_client if use_vision else None,
            vision_enabled=use_vision,
            trigger=self.config.vision_trigger,
            max_vision_pages=self.config.max_vision_pages,
            confirm_confidence=self.config.vision_confirm_confidence,
            timeout=self.config.service_timeout_seconds,
            debug_dir=job.output_dir / "debug" / "vision" if self.config.vision_debug else None,
        )
        diagrams = self.detection_chain.run(ctx)
        diagrams = self.cropper.crop(document, diagrams, job.output_dir, ctx.rendered)

        if ctx.review_pages:
            logger.warning("Diagram fallback could not run on page(s) %s", sorted(ctx.review_pages))

        job.content = extraction.content.model_copy(
            update={"diagrams": diagrams, "review_pages": set(ctx.review_pages)}
        )

    def _classify(self, job: JobRun) -> None:
        content = self.classifier.classify(job.content)
        tables = self.consolidator.consolidate(content.tables)
        job.content = content.model_copy(update={"tables": tables})

    def _enrich(self, job: JobRun) -> None:
        content = job.content

        if job.document is not None and job.document.is_image and self.config.handwriting_vision:
            narrative = self.enricher.enrich(content.narrative_blocks)
            if narrative is not content.narrative_blocks:
                content = content.model_copy(update={"narrative_blocks": narrative})
        else:
            logger.info("Handwriting enrichment skipped")

        if self.config.caption_diagrams:
            diagrams = self.captioner.caption(content.diagrams, job.output_dir)
            content = content.model_copy(update={"diagrams": diagrams})
        else:
            logger.info("Diagram captioning skipped")

        job.content = content

    def _export(self, job: JobRun) -> None:
        job.export_report = self.exporter.export(
            job.content, job.output_dir, document=job.document, job_id=job.job_id
        )
