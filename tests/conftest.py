"""Pytest configuration and fixtures."""

from pathlib import Path

import pytest

from ragprep.config import Settings
from ragprep.errors import RenderUnavailable
from ragprep.models import (
    BoundingBox,
    Document,
    DocumentOrigin,
    LayoutCell,
    LayoutPage,
    LayoutRegion,
    LayoutResult,
    LayoutTable,
    TextBlock,
)
from ragprep.pipeline.stage_render import PillowSurface, RenderedPage
from ragprep.pipeline.vision import VisionRegion
from ragprep.storage import MemoryJobStore

MINIMAL_PDF = b"""%PDF-1.4
1 0 obj
<< /Type /Catalog /Pages 2 0 R >>
endobj
2 0 obj
<< /Type /Pages /Kids [3 0 R] /Count 1 >>
endobj
3 0 obj
<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] >>
endobj
trailer
<< /Root 1 0 R >>
%%EOF"""


class FakeLayoutService:
    """Returns a canned LayoutResult and records calls."""

    def __init__(self, result=None, error=None):
        self.result = result or LayoutResult()
        self.error = error
        self.calls = 0

    def analyze(self, document_bytes):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


class FakeVision:
    """Segment/transcribe/caption double with per-call recording."""

    def __init__(self, regions=None, transcription="transcribed text", caption_text="a diagram", error=None):
        self.regions = regions if regions is not None else [
            VisionRegion(bbox=BoundingBox(x=0.1, y=0.2, width=0.5, height=0.4), label="Diagram", confidence=0.8)
        ]
        self.transcription = transcription
        self.caption_text = caption_text
        self.error = error
        self.segment_calls = 0
        self.transcribe_calls = []
        self.caption_calls = []

    def segment(self, page_png):
        self.segment_calls += 1
        if self.error is not None:
            raise self.error
        return list(self.regions)

    def transcribe(self, image_path):
        self.transcribe_calls.append(image_path)
        if self.error is not None:
            raise self.error
        return self.transcription

    def caption(self, image_path, context=None):
        self.caption_calls.append((image_path, context))
        if self.error is not None:
            raise self.error
        return self.caption_text


class FakeRasterizer:
    """Renders blank pages; pages in ``fail_pages`` are unavailable."""

    def __init__(self, fail_pages=(), size=(200, 260)):
        self.fail_pages = set(fail_pages)
        self.size = size
        self.rendered = []

    def render_page(self, document, page_number, debug_dir=None):
        if page_number in self.fail_pages:
            raise RenderUnavailable(f"page {page_number} unavailable", page_number=page_number)
        self.rendered.append(page_number)
        width, height = self.size
        surface = PillowSurface()
        surface.create(width, height)
        surface.load(b"\xff" * (width * height * 3))
        return RenderedPage(page_number=page_number, width=width, height=height, dpi=150, surface=surface)

    def render_pages(self, document, page_numbers, debug_dir=None, parallel=True):
        rendered = {}
        for page in page_numbers:
            try:
                rendered[page] = self.render_page(document, page, debug_dir)
            except RenderUnavailable:
                continue
        return rendered


def make_document(path: Path, origin=DocumentOrigin.PDF_DIGITAL) -> Document:
    return Document(
        source_path=str(path),
        source_filename=path.name,
        source_hash="0" * 64,
        normalized_path=str(path),
        origin=origin,
    )


def scenario_layout() -> LayoutResult:
    """Five pages: figure on page 2, tables on pages 3 and 4, caption only on page 5."""
    header = ["Part", "Min", "Max"]

    def table(page, rows):
        cells = [LayoutCell(row=0, col=c, content=h, kind="columnHeader") for c, h in enumerate(header)]
        for r, row in enumerate(rows, start=1):
            cells += [LayoutCell(row=r, col=c, content=v, confidence=0.98) for c, v in enumerate(row)]
        return LayoutTable(page_number=page, row_count=len(rows) + 1, column_count=3, cells=cells)

    return LayoutResult(
        pages=[LayoutPage(page_number=n, width=8.5, height=11.0) for n in range(1, 6)],
        text_blocks=[
            TextBlock(content="Technical Rules", page_number=1, role="title", confidence=0.99),
            TextBlock(content="General text about the car.", page_number=1, confidence=0.97),
            TextBlock(content="3 Suspension", page_number=2, role="sectionHeading", confidence=0.99),
            TextBlock(content="Suspension overview.", page_number=2, confidence=0.95),
            TextBlock(content="12", page_number=2, role="pageNumber"),
            TextBlock(content="Dimension limits follow.", page_number=3, confidence=0.96),
            TextBlock(content="Figure 3: Rear axle layout", page_number=5, confidence=0.99),
        ],
        figures=[
            LayoutRegion(
                region_id="1.1",
                page_number=2,
                bbox=BoundingBox(x=0.1, y=0.3, width=0.6, height=0.4),
                caption="Figure 1: Front suspension",
                confidence=0.95,
            )
        ],
        images=[
            LayoutRegion(page_number=2, bbox=BoundingBox(x=0.2, y=0.4, width=0.2, height=0.2)),
        ],
        tables=[
            table(3, [["Spring", "10", "20"], ["Damper", "1", "2"]]),
            table(4, [["Bar", "3", "4"]]),
        ],
    )


@pytest.fixture
def sample_pdf_path(tmp_path):
    """Write a minimal one-page PDF."""
    pdf_dir = tmp_path / "pdfs"
    pdf_dir.mkdir()
    path = pdf_dir / "rules.pdf"
    path.write_bytes(MINIMAL_PDF)
    return path


@pytest.fixture
def output_dir(tmp_path):
    """Create a temporary output directory."""
    out_dir = tmp_path / "output"
    out_dir.mkdir()
    return out_dir


@pytest.fixture
def pdf_document(sample_pdf_path):
    return make_document(sample_pdf_path)


@pytest.fixture
def layout_result():
    return scenario_layout()


@pytest.fixture
def job_store():
    return MemoryJobStore()


@pytest.fixture
def test_settings(tmp_path):
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        azure_doc_endpoint="",
        azure_doc_key="",
        openai_api_key=None,
        output_root=str(tmp_path / "jobs"),
        database_url="sqlite://",
        vision_debug=False,
        service_timeout_seconds=5.0,
    )
