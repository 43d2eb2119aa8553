"""Extracted asset models: narrative chunks, tables and diagrams.

Assets are created by the layout adapter and detection chain, re-tagged by
the classifier and consolidator, and serialized once by the exporter.
Stages never mutate an asset in place; they return updated copies.

Fields marked ``exclude=True`` are in-memory signals for classification and
routing and never reach an export artifact.
"""

import itertools
from collections import defaultdict
from typing import Optional

from pydantic import Field

from .base import (
    BoundingBox,
    CamelModel,
    ContentQuality,
    DiagramSource,
    DocumentOrigin,
)

SectionPath = list[str]
PageRange = tuple[int, int]


class NarrativeChunk(CamelModel):
    """A contiguous block of body text before semantic re-chunking."""

    id: str
    section_path: SectionPath = Field(default_factory=list)
    text: str
    source_pdf: str
    page_range: Optional[PageRange] = None
    origin: DocumentOrigin
    quality: ContentQuality = ContentQuality.OK
    source_image_path: Optional[str] = None

    # Classification signals
    confidence: Optional[float] = Field(default=None, exclude=True)
    handwritten: bool = Field(default=False, exclude=True)

    @property
    def start_page(self) -> Optional[int]:
        return self.page_range[0] if self.page_range else None


class TableAsset(CamelModel):
    """A (possibly merged) table region."""

    id: str
    section_path: SectionPath = Field(default_factory=list)
    title: Optional[str] = None
    csv_path: str = ""
    description: str = ""
    source_pdf: str
    page_range: Optional[PageRange] = None
    origin: DocumentOrigin
    quality: ContentQuality = ContentQuality.OK
    header_signature: Optional[str] = None
    header_row: Optional[list[str]] = None
    row_count: Optional[int] = None
    column_count: Optional[int] = None

    # Data rows, header excluded, in page order
    rows: list[list[str]] = Field(default_factory=list, exclude=True)
    confidence: Optional[float] = Field(default=None, exclude=True)

    @property
    def start_page(self) -> int:
        return self.page_range[0] if self.page_range else 0

    @property
    def end_page(self) -> int:
        return self.page_range[1] if self.page_range else 0


class DiagramAsset(CamelModel):
    """A diagram region produced by exactly one detection pass."""

    id: str
    section_path: SectionPath = Field(default_factory=list)
    title: Optional[str] = None
    image_path: str = ""
    description: Optional[str] = None
    source_pdf: str
    page: Optional[int] = None
    origin: DocumentOrigin
    quality: ContentQuality = ContentQuality.OK
    source_image_path: Optional[str] = None
    raw_caption_text: Optional[str] = None
    source: DiagramSource

    # Routing metadata, never exported
    bounding_box: Optional[BoundingBox] = Field(default=None, exclude=True)
    confidence: Optional[float] = Field(default=None, exclude=True)
    confirmed: bool = Field(default=False, exclude=True)


class RoutedContent(CamelModel):
    """Working aggregate passed between phases for one document."""

    narrative_blocks: list[NarrativeChunk] = Field(default_factory=list)
    tables: list[TableAsset] = Field(default_factory=list)
    diagrams: list[DiagramAsset] = Field(default_factory=list)
    # Pages whose diagram fallback could not run
    review_pages: set[int] = Field(default_factory=set)

    def all_assets(self) -> list[CamelModel]:
        return [*self.narrative_blocks, *self.tables, *self.diagrams]


class IdAllocator:
    """Per-run id source: ``narrative_1``, ``table_1``, ``diagram_1``..."""

    def __init__(self):
        self._counters: dict[str, itertools.count] = defaultdict(lambda: itertools.count(1))

    def next(self, prefix: str) -> str:
        return f"{prefix}_{next(self._counters[prefix])}"
