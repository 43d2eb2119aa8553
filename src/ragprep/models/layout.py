"""Normalized response of the layout-analysis service.

All boxes are normalized to 0-1 page coordinates so regions from different
passes can be compared directly.
"""

from typing import Optional

from pydantic import BaseModel, Field

from .base import BoundingBox


class LayoutPage(BaseModel):
    """Page geometry as reported by the service."""

    page_number: int = Field(..., ge=1)
    width: float = 0.0
    height: float = 0.0
    unit: str = "inch"


class TextBlock(BaseModel):
    """A paragraph-level text region."""

    content: str
    page_number: int = Field(default=1, ge=1)
    role: Optional[str] = Field(
        None, description="title, sectionHeading, pageHeader, pageFooter, pageNumber, ..."
    )
    bbox: Optional[BoundingBox] = None
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    handwritten: bool = False

    @property
    def is_heading(self) -> bool:
        return self.role in ("title", "sectionHeading")

    @property
    def is_furniture(self) -> bool:
        """Running headers, footers and page numbers."""
        return self.role in ("pageHeader", "pageFooter", "pageNumber")


class LayoutRegion(BaseModel):
    """A figure or embedded image region."""

    region_id: Optional[str] = None
    page_number: int = Field(default=1, ge=1)
    bbox: Optional[BoundingBox] = None
    caption: Optional[str] = None
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)


class LayoutCell(BaseModel):
    """One cell of a structured table grid."""

    row: int = Field(..., ge=0)
    col: int = Field(..., ge=0)
    content: str = ""
    kind: Optional[str] = None  # "columnHeader", "rowHeader", "content", ...
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)


class LayoutTable(BaseModel):
    """A detected table with its cell grid."""

    page_number: int = Field(default=1, ge=1)
    end_page_number: Optional[int] = None
    row_count: int = Field(default=0, ge=0)
    column_count: int = Field(default=0, ge=0)
    cells: list[LayoutCell] = Field(default_factory=list)
    bbox: Optional[BoundingBox] = None
    caption: Optional[str] = None

    def grid(self) -> list[list[str]]:
        """Dense row-major grid; missing cells are empty strings."""
        grid = [[""] * self.column_count for _ in range(self.row_count)]
        for cell in self.cells:
            if cell.row < self.row_count and cell.col < self.column_count:
                grid[cell.row][cell.col] = cell.content.strip()
        return grid

    @property
    def confidence(self) -> Optional[float]:
        """Minimum cell confidence as a conservative table estimate."""
        values = [c.confidence for c in self.cells if c.confidence is not None]
        return min(values) if values else None


class LayoutResult(BaseModel):
    """Everything the layout service reported for one document."""

    pages: list[LayoutPage] = Field(default_factory=list)
    text_blocks: list[TextBlock] = Field(default_factory=list)
    figures: list[LayoutRegion] = Field(default_factory=list)
    images: list[LayoutRegion] = Field(default_factory=list)
    tables: list[LayoutTable] = Field(default_factory=list)

    @property
    def page_count(self) -> int:
        return len(self.pages)
