"""Export Stage - Write quality-bucketed artifacts and the manifest.

Output layout under the job directory::

    <bucket>/diagrams/<id>.json
    <bucket>/tables/<id>.csv
    <bucket>/tables_previews/<id>_preview.md
    <bucket>/narrative/<id>.md
    manifest.json

``<bucket>`` is ``auto_ok`` for quality ``ok`` and ``needs_review`` for
everything else. A failed write is logged, counted and skipped; it never
aborts the rest of the export.
"""

import csv
import io
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ragprep.errors import ExportWriteError
from ragprep.models import (
    DiagramAsset,
    Document,
    NarrativeChunk,
    QualityBucket,
    RoutedContent,
    TableAsset,
    worst_quality,
)
from ragprep.models.job import utcnow

logger = logging.getLogger(__name__)

ASSET_DIRS = ("diagrams", "tables", "tables_previews", "narrative")
MANIFEST_NAME = "manifest.json"


def chunk_text(text: str, max_chars: int = 4000, overlap: int = 500) -> list[str]:
    """Split text into windows of ``max_chars`` with ``overlap`` shared chars."""
    if max_chars <= 0:
        raise ValueError("max_chars must be positive")
    overlap = max(0, min(overlap, max_chars - 1))

    chunks = []
    start = 0
    while start < len(text):
        end = min(start + max_chars, len(text))
        piece = text[start:end].strip()
        if piece:
            chunks.append(piece)
        if end == len(text):
            break
        start = end - overlap
    return chunks


def section_slug(section_path: list[str]) -> str:
    slug = re.sub(r"[^\w\d]+", "_", " > ".join(section_path)).strip("_")
    return slug or "document"


def table_to_csv(table: TableAsset) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    if table.header_row:
        writer.writerow(table.header_row)
    writer.writerows(table.rows)
    return buffer.getvalue()


def _page_label(page_range: Optional[tuple[int, int]]) -> str:
    if not page_range:
        return "unknown"
    start, end = page_range
    return str(start) if start == end else f"{start}-{end}"


def table_summary(table: TableAsset) -> str:
    header = table.header_row or []
    lines = [
        f"Table: {table.title or table.id}",
        f"Source: {table.source_pdf}",
        f"Pages: {_page_label(table.page_range)}",
        f"Rows: {table.row_count or 0} data rows, {table.column_count or len(header)} columns",
    ]
    if header:
        lines.append(f"Header: {' | '.join(header)}")
    return "\n".join(lines) + "\n"


def table_preview(table: TableAsset, max_rows: int = 20) -> str:
    """Markdown preview with at most ``max_rows`` data rows."""
    header = table.header_row or [""] * (table.column_count or 0)
    lines = [
        f"# Preview: {table.title or table.id}",
        "",
        f"Source: {table.source_pdf}",
        f"Pages: {_page_label(table.page_range)}",
        f"Rows: {len(table.rows)} data rows, {len(header)} columns",
        "",
    ]
    if header:
        lines.append("| " + " | ".join(h or " " for h in header) + " |")
        lines.append("|" + "|".join("---" for _ in header) + "|")
        for row in table.rows[:max_rows]:
            cells = [c.replace("|", "\\|").replace("\n", " ") or " " for c in row]
            lines.append("| " + " | ".join(cells) + " |")
    if len(table.rows) > max_rows:
        lines.append("")
        lines.append(f"... (showing first {max_rows} of {len(table.rows)} rows)")
    return "\n".join(lines) + "\n"


@dataclass
class ExportReport:
    """Outcome of one export run."""

    written: int = 0
    failed: int = 0
    buckets: dict[str, int] = field(default_factory=lambda: {b.value: 0 for b in QualityBucket})
    failures: list[str] = field(default_factory=list)
    manifest_path: Optional[Path] = None
    narrative_chunks: list[NarrativeChunk] = field(default_factory=list)
    tables: list[TableAsset] = field(default_factory=list)
    diagrams: list[DiagramAsset] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0


class Exporter:
    """Routes assets into bucket trees and writes the manifest."""

    def __init__(
        self,
        narrative_max_chars: int = 4000,
        narrative_overlap: int = 500,
        preview_rows: int = 20,
    ):
        self.narrative_max_chars = narrative_max_chars
        self.narrative_overlap = narrative_overlap
        self.preview_rows = preview_rows

    @staticmethod
    def ensure_bucket_dirs(output_dir: Path) -> None:
        """Create every bucket directory; safe to call repeatedly."""
        for bucket in QualityBucket:
            for sub in ASSET_DIRS:
                (Path(output_dir) / bucket.value / sub).mkdir(parents=True, exist_ok=True)

    def export(
        self,
        content: RoutedContent,
        output_dir: Path,
        document: Optional[Document] = None,
        job_id: Optional[str] = None,
    ) -> ExportReport:
        """Write all artifacts for one document.

        Args:
            content: Classified and consolidated assets.
            output_dir: Job output directory.
            document: Source document, recorded in the manifest.
            job_id: Job id recorded in the manifest.

        Returns:
            ExportReport with written/failed counts and per-bucket totals.
        """
        output_dir = Path(output_dir)
        self.ensure_bucket_dirs(output_dir)
        report = ExportReport()
        bucket_map: dict[str, dict[str, str]] = {"narrative": {}, "tables": {}, "diagrams": {}}

        for diagram in content.diagrams:
            bucket = QualityBucket.for_quality(diagram.quality).value
            path = output_dir / bucket / "diagrams" / f"{diagram.id}.json"
            if self._write(report, path, json.dumps(diagram.to_json_dict(), indent=2)):
                report.buckets[bucket] += 1
            bucket_map["diagrams"][diagram.id] = bucket
            report.diagrams.append(diagram)

        for table in content.tables:
            bucket = QualityBucket.for_quality(table.quality).value
            csv_rel = f"{bucket}/tables/{table.id}.csv"
            table = table.model_copy(update={"csv_path": csv_rel})
            table = table.model_copy(update={"description": table_summary(table)})
            if self._write(report, output_dir / csv_rel, table_to_csv(table)):
                report.buckets[bucket] += 1
            preview = output_dir / bucket / "tables_previews" / f"{table.id}_preview.md"
            self._write(report, preview, table_preview(table, self.preview_rows))
            bucket_map["tables"][table.id] = bucket
            report.tables.append(table)

        for chunk in self.build_narrative_chunks(content.narrative_blocks):
            bucket = QualityBucket.for_quality(chunk.quality).value
            path = output_dir / bucket / "narrative" / f"{chunk.id}.md"
            if self._write(report, path, chunk.text + "\n"):
                report.buckets[bucket] += 1
            bucket_map["narrative"][chunk.id] = bucket
            report.narrative_chunks.append(chunk)

        manifest = self.build_manifest(report, bucket_map, content, document, job_id)
        manifest_path = output_dir / MANIFEST_NAME
        if self._write(report, manifest_path, json.dumps(manifest, indent=2)):
            report.manifest_path = manifest_path

        logger.info(
            "Export finished: %d written, %d failed (auto_ok=%d, needs_review=%d)",
            report.written,
            report.failed,
            report.buckets[QualityBucket.AUTO_OK.value],
            report.buckets[QualityBucket.NEEDS_REVIEW.value],
        )
        return report

    def build_narrative_chunks(self, blocks: list[NarrativeChunk]) -> list[NarrativeChunk]:
        """Group blocks by section and re-chunk; the worst quality in a section wins."""
        sections: dict[tuple[str, ...], list[NarrativeChunk]] = {}
        for block in blocks:
            sections.setdefault(tuple(block.section_path), []).append(block)

        chunks = []
        used_ids: set[str] = set()
        for section, members in sections.items():
            text = "\n\n".join(b.text for b in members)
            quality = worst_quality([b.quality for b in members])
            pages = [b.page_range for b in members if b.page_range]
            page_range = (min(p[0] for p in pages), max(p[1] for p in pages)) if pages else None
            slug = section_slug(list(section))

            for index, piece in enumerate(chunk_text(text, self.narrative_max_chars, self.narrative_overlap), 1):
                chunk_id = f"{slug}_{index}"
                suffix = 2
                while chunk_id in used_ids:
                    chunk_id = f"{slug}_{index}_{suffix}"
                    suffix += 1
                used_ids.add(chunk_id)
                chunks.append(
                    NarrativeChunk(
                        id=chunk_id,
                        section_path=list(section),
                        text=piece,
                        source_pdf=members[0].source_pdf,
                        page_range=page_range,
                        origin=members[0].origin,
                        quality=quality,
                        source_image_path=members[0].source_image_path,
                    )
                )
        return chunks

    @staticmethod
    def build_manifest(
        report: ExportReport,
        bucket_map: dict[str, dict[str, str]],
        content: RoutedContent,
        document: Optional[Document],
        job_id: Optional[str],
    ) -> dict:
        counts = {
            kind: {b.value: sum(1 for v in assigned.values() if v == b.value) for b in QualityBucket}
            for kind, assigned in bucket_map.items()
        }
        return {
            "jobId": job_id,
            "sourcePdf": document.source_filename if document else None,
            "sourceHash": document.source_hash if document else None,
            "origin": document.origin.value if document else None,
            "generatedAt": utcnow().isoformat(),
            "counts": counts,
            "buckets": bucket_map,
            "reviewPages": sorted(content.review_pages),
            "exportFailures": list(report.failures),
            "narrativeChunks": [c.to_json_dict() for c in report.narrative_chunks],
            "tables": [t.to_json_dict() for t in report.tables],
            "diagrams": [d.to_json_dict() for d in report.diagrams],
        }

    @staticmethod
    def _write(report: ExportReport, path: Path, text: str) -> bool:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding="utf-8")
        except OSError as exc:
            error = ExportWriteError(f"Failed to write {path}: {exc}", path=str(path))
            logger.error("%s", error)
            report.failed += 1
            report.failures.append(str(path))
            return False
        report.written += 1
        return True
