"""Layout Extraction Stage - Call the layout service and build asset candidates.

The layout service is Azure Document Intelligence (``prebuilt-layout``)
reached through its REST API. Its JSON payload is normalized into a
``LayoutResult`` by ``parse_analyze_result`` and then mapped onto
``RoutedContent`` plus diagram candidates by ``LayoutExtractor``:

- paragraphs -> NarrativeChunk (headings drive the section path)
- figures -> DiagramAsset(source=azure_figure)
- page images -> DiagramAsset(source=azure_image)
- tables -> TableAsset with header row and dimensions from the grid

Transport failures are fatal to the run; there are no retries here.
"""

import base64
import bisect
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import requests

from ragprep.errors import MalformedAsset, TransportError
from ragprep.models import (
    BoundingBox,
    DiagramAsset,
    DiagramSource,
    DocumentOrigin,
    IdAllocator,
    LayoutCell,
    LayoutPage,
    LayoutRegion,
    LayoutResult,
    LayoutTable,
    NarrativeChunk,
    RoutedContent,
    TableAsset,
    TextBlock,
)

logger = logging.getLogger(__name__)

DEFAULT_CAPTION_PATTERN = r"^(Figure|Fig\.?|Diagram|Image)\s+[\dA-Z][\dA-Z.-]*\s*:?"

TERMINAL_STATUSES = {"succeeded", "failed", "canceled"}


class LayoutService(Protocol):
    """Call contract of the layout-analysis service."""

    def analyze(self, document_bytes: bytes) -> LayoutResult: ...


class AzureLayoutClient:
    """Azure Document Intelligence REST client (analyze + poll)."""

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        api_version: str = "2024-11-30",
        model_id: str = "prebuilt-layout",
        poll_interval: float = 1.0,
        request_timeout: float = 60.0,
        max_poll_seconds: float = 600.0,
        session: Optional[requests.Session] = None,
    ):
        if not endpoint or not api_key:
            raise ValueError("Azure layout client needs an endpoint and an API key")
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key
        self.api_version = api_version
        self.model_id = model_id
        self.poll_interval = poll_interval
        self.request_timeout = request_timeout
        self.max_poll_seconds = max_poll_seconds
        self.session = session or requests.Session()

    @property
    def analyze_url(self) -> str:
        return (
            f"{self.endpoint}/documentintelligence/documentModels/"
            f"{self.model_id}:analyze?api-version={self.api_version}"
        )

    def analyze(self, document_bytes: bytes) -> LayoutResult:
        """Submit a document and wait for the analysis result."""
        body = {"base64Source": base64.b64encode(document_bytes).decode("ascii")}
        response = self._request("POST", self.analyze_url, json=body)

        operation_url = response.headers.get("Operation-Location")
        if not operation_url:
            raise TransportError("Layout service accepted the document but returned no Operation-Location")

        payload = self._poll(operation_url)
        analyze_result = payload.get("analyzeResult")
        if not analyze_result:
            raise TransportError("No analyzeResult in layout service response")

        result = parse_analyze_result(analyze_result)
        logger.info(
            "Layout analysis complete: %d pages, %d paragraphs, %d tables, %d figures",
            result.page_count,
            len(result.text_blocks),
            len(result.tables),
            len(result.figures),
        )
        return result

    def _poll(self, operation_url: str) -> dict:
        deadline = time.monotonic() + self.max_poll_seconds
        while True:
            payload = self._request("GET", operation_url).json()
            status = str(payload.get("status", "")).lower()
            if status in TERMINAL_STATUSES:
                if status != "succeeded":
                    error = payload.get("error") or {}
                    raise TransportError(f"Layout analysis {status}: {error.get('message', 'no details')}")
                return payload
            if time.monotonic() >= deadline:
                raise TransportError(
                    f"Layout analysis still {status or 'pending'} after {self.max_poll_seconds:.0f}s"
                )
            time.sleep(self.poll_interval)

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        headers = {"Ocp-Apim-Subscription-Key": self.api_key}
        try:
            response = self.session.request(
                method, url, headers=headers, timeout=self.request_timeout, **kwargs
            )
        except requests.RequestException as exc:
            raise TransportError(f"Layout service unreachable: {exc}") from exc
        if not response.ok:
            raise TransportError(
                f"Layout service returned HTTP {response.status_code}: {response.text[:300]}",
                status_code=response.status_code,
            )
        return response


# ---------------------------------------------------------------------------
# Payload normalization
# ---------------------------------------------------------------------------


class _WordConfidenceIndex:
    """Minimum word confidence over arbitrary content spans."""

    def __init__(self, pages: list[dict]):
        words = []
        for page in pages:
            for word in page.get("words") or []:
                span = word.get("span") or {}
                confidence = word.get("confidence")
                if confidence is None or "offset" not in span:
                    continue
                words.append((span["offset"], span.get("length", 0), float(confidence)))
        words.sort()
        self._offsets = [w[0] for w in words]
        self._words = words

    def min_confidence(self, spans: list[dict]) -> Optional[float]:
        values = []
        for span in spans or []:
            start = span.get("offset", 0)
            end = start + span.get("length", 0)
            i = bisect.bisect_left(self._offsets, start)
            while i < len(self._words) and self._words[i][0] < end:
                values.append(self._words[i][2])
                i += 1
        return min(values) if values else None


def _spans_overlap(spans: list[dict], ranges: list[tuple[int, int]]) -> bool:
    for span in spans or []:
        start = span.get("offset", 0)
        end = start + span.get("length", 0)
        for r_start, r_end in ranges:
            if r_start < end and r_end > start:
                return True
    return False


def _first_region(item: dict) -> dict:
    regions = item.get("boundingRegions") or []
    return regions[0] if regions else {}


def _region_bbox(region: dict, page_dims: dict[int, tuple[float, float]]) -> Optional[BoundingBox]:
    polygon = region.get("polygon")
    if not polygon:
        return None
    width, height = page_dims.get(region.get("pageNumber", 1), (0.0, 0.0))
    try:
        return BoundingBox.from_polygon(polygon, width or None, height or None).clamped()
    except ValueError:
        logger.warning("Ignoring malformed polygon on page %s", region.get("pageNumber"))
        return None


def parse_analyze_result(payload: dict[str, Any]) -> LayoutResult:
    """Normalize an ``analyzeResult`` payload into a LayoutResult."""
    raw_pages = payload.get("pages") or []
    pages = [
        LayoutPage(
            page_number=p.get("pageNumber", i + 1),
            width=float(p.get("width") or 0.0),
            height=float(p.get("height") or 0.0),
            unit=p.get("unit", "inch"),
        )
        for i, p in enumerate(raw_pages)
    ]
    page_dims = {p.page_number: (p.width, p.height) for p in pages}
    confidences = _WordConfidenceIndex(raw_pages)

    handwriting_ranges = [
        (span.get("offset", 0), span.get("offset", 0) + span.get("length", 0))
        for style in payload.get("styles") or []
        if style.get("isHandwritten")
        for span in style.get("spans") or []
    ]

    text_blocks = []
    for para in payload.get("paragraphs") or []:
        content = (para.get("content") or "").strip()
        if not content:
            continue
        region = _first_region(para)
        spans = para.get("spans") or []
        text_blocks.append(
            TextBlock(
                content=content,
                page_number=region.get("pageNumber", 1),
                role=para.get("role"),
                bbox=_region_bbox(region, page_dims),
                confidence=confidences.min_confidence(spans),
                handwritten=_spans_overlap(spans, handwriting_ranges),
            )
        )

    figures = []
    for fig in payload.get("figures") or []:
        region = _first_region(fig)
        if not region:
            continue
        figures.append(
            LayoutRegion(
                region_id=fig.get("id"),
                page_number=region.get("pageNumber", 1),
                bbox=_region_bbox(region, page_dims),
                caption=((fig.get("caption") or {}).get("content") or None),
                confidence=fig.get("confidence"),
            )
        )

    images = []
    for page in raw_pages:
        for img in page.get("images") or []:
            region = _first_region(img) or {
                "pageNumber": page.get("pageNumber", 1),
                "polygon": img.get("polygon"),
            }
            bbox = _region_bbox(region, page_dims)
            if bbox is None:
                continue
            images.append(
                LayoutRegion(
                    region_id=img.get("id"),
                    page_number=region.get("pageNumber", page.get("pageNumber", 1)),
                    bbox=bbox,
                    confidence=img.get("confidence"),
                )
            )

    tables = []
    for table in payload.get("tables") or []:
        regions = table.get("boundingRegions") or [{}]
        cells = [
            LayoutCell(
                row=cell.get("rowIndex", 0),
                col=cell.get("columnIndex", 0),
                content=cell.get("content") or "",
                kind=cell.get("kind"),
                confidence=cell.get("confidence", confidences.min_confidence(cell.get("spans") or [])),
            )
            for cell in table.get("cells") or []
        ]
        tables.append(
            LayoutTable(
                page_number=regions[0].get("pageNumber", 1),
                end_page_number=regions[-1].get("pageNumber"),
                row_count=table.get("rowCount", 0),
                column_count=table.get("columnCount", 0),
                cells=cells,
                bbox=_region_bbox(regions[0], page_dims),
                caption=((table.get("caption") or {}).get("content") or None),
            )
        )

    return LayoutResult(
        pages=pages,
        text_blocks=text_blocks,
        figures=figures,
        images=images,
        tables=tables,
    )


# ---------------------------------------------------------------------------
# Mapping onto assets
# ---------------------------------------------------------------------------


def build_header_signature(header_row: list[str]) -> Optional[str]:
    """Case/whitespace-folded header key; ``None`` for an empty header."""
    cells = [re.sub(r"\s+", " ", cell.strip().lower()) for cell in header_row]
    if not any(cells):
        return None
    return " | ".join(cells)


@dataclass
class LayoutExtraction:
    """Adapter output: routed content plus the detection-chain inputs."""

    content: RoutedContent
    figure_candidates: list[DiagramAsset] = field(default_factory=list)
    image_candidates: list[DiagramAsset] = field(default_factory=list)
    page_count: int = 0
    page_captions: dict[int, str] = field(default_factory=dict)
    page_sections: dict[int, list[str]] = field(default_factory=dict)
    malformed: list[MalformedAsset] = field(default_factory=list)

    def section_for_page(self, page_number: int) -> list[str]:
        return list(self.page_sections.get(page_number) or [f"Page {page_number}"])


class LayoutExtractor:
    """Maps a LayoutResult onto narrative, table and diagram candidates."""

    def __init__(
        self,
        ids: Optional[IdAllocator] = None,
        caption_pattern: str = DEFAULT_CAPTION_PATTERN,
    ):
        self.ids = ids or IdAllocator()
        self.caption_re = re.compile(caption_pattern, re.IGNORECASE)

    def extract(
        self,
        layout: LayoutResult,
        source_pdf: str,
        origin: DocumentOrigin,
        source_image_path: Optional[str] = None,
    ) -> LayoutExtraction:
        """Build a LayoutExtraction for one document.

        Args:
            layout: Normalized service response.
            source_pdf: Source file name recorded on every asset.
            origin: Document origin inherited by every asset.
            source_image_path: Normalized image for image-origin documents.
        """
        image_path = source_image_path if origin == DocumentOrigin.IMAGE_NORMALIZED else None
        extraction = LayoutExtraction(
            content=RoutedContent(),
            page_count=layout.page_count or max(
                [b.page_number for b in layout.text_blocks] + [1]
            ),
        )

        self._extract_narrative(layout, extraction, source_pdf, origin, image_path)
        self._extract_tables(layout, extraction, source_pdf, origin)

        extraction.figure_candidates = [
            self._figure_asset(fig, extraction, source_pdf, origin, image_path)
            for fig in layout.figures
        ]
        extraction.image_candidates = [
            DiagramAsset(
                id=self.ids.next("diagram"),
                section_path=extraction.section_for_page(img.page_number),
                title=f"Image on page {img.page_number}",
                source_pdf=source_pdf,
                page=img.page_number,
                origin=origin,
                source_image_path=image_path,
                bounding_box=img.bbox,
                confidence=img.confidence,
                source=DiagramSource.AZURE_IMAGE,
            )
            for img in layout.images
        ]

        logger.info(
            "Extracted %d narrative blocks, %d tables, %d figure and %d image candidates",
            len(extraction.content.narrative_blocks),
            len(extraction.content.tables),
            len(extraction.figure_candidates),
            len(extraction.image_candidates),
        )
        return extraction

    def _extract_narrative(self, layout, extraction, source_pdf, origin, image_path) -> None:
        title: Optional[str] = None
        section: list[str] = []
        for block in layout.text_blocks:
            page = block.page_number
            if block.is_furniture:
                continue
            if block.role == "title":
                title = block.content
                section = [block.content]
            elif block.role == "sectionHeading":
                section = ([title] if title else []) + [block.content]

            extraction.page_sections.setdefault(page, list(section) or [f"Page {page}"])
            if page not in extraction.page_captions and self.caption_re.match(block.content):
                extraction.page_captions[page] = block.content

            if block.is_heading:
                continue

            extraction.content.narrative_blocks.append(
                NarrativeChunk(
                    id=self.ids.next("narrative"),
                    section_path=list(section) or [f"Page {page}"],
                    text=block.content,
                    source_pdf=source_pdf,
                    page_range=(page, page),
                    origin=origin,
                    source_image_path=image_path,
                    confidence=block.confidence,
                    handwritten=block.handwritten,
                )
            )

    def _extract_tables(self, layout, extraction, source_pdf, origin) -> None:
        for table in layout.tables:
            table_id = self.ids.next("table")
            grid = table.grid()
            header_row = grid[0] if grid else []
            signature = build_header_signature(header_row)
            if signature is None:
                error = MalformedAsset(
                    f"Table {table_id} on page {table.page_number} has no usable header row",
                    asset_id=table_id,
                )
                extraction.malformed.append(error)
                logger.warning("%s", error)

            rows = grid[1:]
            end_page = max(table.end_page_number or table.page_number, table.page_number)
            extraction.content.tables.append(
                TableAsset(
                    id=table_id,
                    section_path=extraction.section_for_page(table.page_number),
                    title=table.caption or f"Table on page {table.page_number}",
                    description=f"Table from page {table.page_number} of {source_pdf}.",
                    source_pdf=source_pdf,
                    page_range=(table.page_number, end_page),
                    origin=origin,
                    header_signature=signature,
                    header_row=header_row or None,
                    row_count=len(rows),
                    column_count=len(header_row) or table.column_count,
                    rows=rows,
                    confidence=table.confidence,
                )
            )

    def _figure_asset(
        self,
        fig: LayoutRegion,
        extraction: LayoutExtraction,
        source_pdf: str,
        origin: DocumentOrigin,
        image_path: Optional[str],
    ) -> DiagramAsset:
        page = fig.page_number
        caption = fig.caption or extraction.page_captions.get(page)

        title = None
        if caption:
            match = self.caption_re.match(caption)
            if match:
                title = match.group(0).rstrip(": ").strip()
        if title is None and fig.region_id:
            title = f"Figure {fig.region_id}"

        return DiagramAsset(
            id=self.ids.next("diagram"),
            section_path=extraction.section_for_page(page),
            title=title or f"Figure on page {page}",
            source_pdf=source_pdf,
            page=page,
            origin=origin,
            source_image_path=image_path,
            raw_caption_text=caption,
            bounding_box=fig.bbox,
            confidence=fig.confidence,
            source=DiagramSource.AZURE_FIGURE,
        )
