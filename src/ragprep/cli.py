"""ragprep CLI."""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ragprep.config import Settings, settings
from ragprep.errors import JobCancelled, PhaseFailed, RagprepError
from ragprep.models import PHASE_NAMES, Phase, PhaseStatus
from ragprep.pipeline import PipelineOrchestrator, PipelineResult
from ragprep.pipeline.stage_normalize import is_supported
from ragprep.storage import open_job_store

app = typer.Typer(
    name="ragprep",
    help="Quality-tiered extraction of PDFs and scans for RAG indexing",
    add_completion=False,
)
console = Console()

STATUS_STYLES = {
    PhaseStatus.DONE: "green",
    PhaseStatus.FAILED: "red",
    PhaseStatus.RUNNING: "yellow",
    PhaseStatus.NOT_STARTED: "dim",
}


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def build_orchestrator(config: Settings) -> PipelineOrchestrator:
    job_store = open_job_store(config.database_url, echo=config.log_level.upper() == "DEBUG")
    return PipelineOrchestrator(config, job_store)


def phase_table(phases: dict[Phase, PhaseStatus], title: str = "Phases") -> Table:
    table = Table(title=title)
    table.add_column("Phase")
    table.add_column("Name")
    table.add_column("Status")
    for phase in (Phase.A, Phase.B, Phase.D, Phase.C):
        status = phases.get(phase, PhaseStatus.NOT_STARTED)
        table.add_row(phase.value, PHASE_NAMES[phase], f"[{STATUS_STYLES[status]}]{status.value}[/]")
    return table


def print_result(result: PipelineResult) -> None:
    console.print(phase_table(result.phases, title=f"Job {result.job_id}"))
    content = result.content
    report = result.export_report
    if content is not None:
        console.print(
            f"Narrative blocks: {len(content.narrative_blocks)}  "
            f"Tables: {len(content.tables)}  Diagrams: {len(content.diagrams)}"
        )
        if content.review_pages:
            console.print(f"[yellow]Diagram fallback unavailable on pages {sorted(content.review_pages)}[/yellow]")
    if report is not None:
        console.print(
            f"auto_ok: {report.buckets['auto_ok']}  needs_review: {report.buckets['needs_review']}  "
            f"written: {report.written}  failed: {report.failed}"
        )
    console.print(f"[dim]Output: {result.output_dir}[/dim]")


@app.command()
def process(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="PDF or image to process"),
    output_root: Optional[Path] = typer.Option(None, help="Root directory for job outputs"),
    vision: Optional[bool] = typer.Option(None, "--vision/--no-vision", help="Vision segmentation fallback"),
    handwriting: bool = typer.Option(False, "--handwriting", help="Transcribe handwriting with vision"),
    captions: bool = typer.Option(False, "--captions", help="Caption diagrams with vision"),
) -> None:
    """Process a single document."""
    overrides = {}
    if output_root is not None:
        overrides["output_root"] = str(output_root)
    if vision is not None:
        overrides["enable_vision_segmentation"] = vision
    if handwriting:
        overrides["handwriting_vision"] = True
    if captions:
        overrides["caption_diagrams"] = True
    config = settings.model_copy(update=overrides)
    setup_logging(config.log_level)

    console.print(f"[bold blue]Processing:[/bold blue] {path}")
    try:
        result = build_orchestrator(config).run(path)
    except (PhaseFailed, JobCancelled) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    except RagprepError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=2) from exc
    print_result(result)


@app.command()
def batch(
    directory: Path = typer.Argument(..., exists=True, file_okay=False, help="Directory of PDFs and images"),
    workers: int = typer.Option(4, help="Number of parallel jobs"),
    output_root: Optional[Path] = typer.Option(None, help="Root directory for job outputs"),
) -> None:
    """Process every supported file in a directory concurrently."""
    config = settings if output_root is None else settings.model_copy(update={"output_root": str(output_root)})
    setup_logging(config.log_level)

    files = sorted(p for p in directory.iterdir() if p.is_file() and is_supported(p))
    if not files:
        console.print("[yellow]No PDFs or images found[/yellow]")
        raise typer.Exit()

    orchestrator = build_orchestrator(config)
    console.print(f"[bold blue]Batch processing:[/bold blue] {len(files)} file(s), {workers} worker(s)")

    summary = Table(title="Batch")
    summary.add_column("File")
    summary.add_column("Job")
    summary.add_column("Result")
    failures = 0
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {executor.submit(orchestrator.run, path): path for path in files}
        for future in as_completed(futures):
            path = futures[future]
            try:
                result = future.result()
            except RagprepError as exc:
                failures += 1
                summary.add_row(path.name, "-", f"[red]{exc}[/red]")
                continue
            report = result.export_report
            summary.add_row(
                path.name,
                result.job_id,
                f"[green]done[/green] ({report.written} written, {report.failed} failed)" if report else "done",
            )

    console.print(summary)
    if failures:
        raise typer.Exit(code=1)


@app.command()
def status(job_id: str = typer.Argument(..., help="Job id printed by process/batch")) -> None:
    """Show stored phase states and the latest log lines for a job."""
    store = open_job_store(settings.database_url)
    job = store.get_job(job_id)
    if job is None:
        console.print(f"[red]Unknown job {job_id}[/red]")
        raise typer.Exit(code=1)

    console.print(f"[bold blue]Job {job.id}[/bold blue] {job.status.value}  [dim]{job.source_path}[/dim]")
    if job.error:
        console.print(f"[red]{job.error}[/red]")
    console.print(phase_table({p: r.status for p, r in job.phases.items()}))

    for entry in store.recent_logs(job_id, limit=20):
        console.print(f"[dim]{entry.created_at:%H:%M:%S}[/dim] {entry.phase} {entry.level.value}: {entry.message}")


if __name__ == "__main__":
    app()
