"""Base models and common types for the ragprep pipeline."""

from enum import Enum
from typing import Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class DocumentOrigin(str, Enum):
    """Nature of the ingested file, fixed at normalization."""

    PDF_DIGITAL = "pdf_digital"
    IMAGE_NORMALIZED = "image_normalized"


class ContentQuality(str, Enum):
    """Confidence tier driving auto-accept vs review routing."""

    OK = "ok"
    LOW_CONFIDENCE = "low_confidence"
    HANDWRITING = "handwriting"


class DiagramSource(str, Enum):
    """Detection pass that produced a diagram."""

    AZURE_FIGURE = "azure_figure"
    AZURE_IMAGE = "azure_image"
    VISION_SEGMENT = "vision_segment"


class QualityBucket(str, Enum):
    """Export bucket derived from quality."""

    AUTO_OK = "auto_ok"
    NEEDS_REVIEW = "needs_review"

    @classmethod
    def for_quality(cls, quality: ContentQuality) -> "QualityBucket":
        return cls.AUTO_OK if quality == ContentQuality.OK else cls.NEEDS_REVIEW


# Worst first
_QUALITY_RANK = {
    ContentQuality.HANDWRITING: 0,
    ContentQuality.LOW_CONFIDENCE: 1,
    ContentQuality.OK: 2,
}


def worst_quality(qualities: Sequence[ContentQuality]) -> ContentQuality:
    """Combine qualities: handwriting > low_confidence > ok."""
    if not qualities:
        return ContentQuality.OK
    return min(qualities, key=lambda q: _QUALITY_RANK[q])


class CamelModel(BaseModel):
    """Base for models serialized with camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )

    def to_json_dict(self) -> dict:
        """Serialize for export, camelCase keys, enums as values."""
        return self.model_dump(mode="json", by_alias=True)


class BoundingBox(BaseModel):
    """Bounding box coordinates (normalized 0-1 or absolute pixels)."""

    x: float = Field(..., description="Left edge X coordinate")
    y: float = Field(..., description="Top edge Y coordinate")
    width: float = Field(..., ge=0, description="Box width")
    height: float = Field(..., ge=0, description="Box height")
    unit: str = Field(default="normalized", description="'normalized' (0-1) or 'pixels'")

    @property
    def x2(self) -> float:
        """Right edge X coordinate."""
        return self.x + self.width

    @property
    def y2(self) -> float:
        """Bottom edge Y coordinate."""
        return self.y + self.height

    @property
    def area(self) -> float:
        return self.width * self.height

    def to_pixels(self, page_width: int, page_height: int) -> "BoundingBox":
        """Convert normalized coordinates to pixel coordinates."""
        if self.unit == "pixels":
            return self
        return BoundingBox(
            x=self.x * page_width,
            y=self.y * page_height,
            width=self.width * page_width,
            height=self.height * page_height,
            unit="pixels",
        )

    def to_normalized(self, page_width: float, page_height: float) -> "BoundingBox":
        """Convert pixel coordinates to normalized coordinates."""
        if self.unit == "normalized":
            return self
        return BoundingBox(
            x=self.x / page_width,
            y=self.y / page_height,
            width=self.width / page_width,
            height=self.height / page_height,
            unit="normalized",
        )

    def clamped(self) -> "BoundingBox":
        """Clip a normalized box to the unit square."""
        x = min(max(self.x, 0.0), 1.0)
        y = min(max(self.y, 0.0), 1.0)
        return BoundingBox(
            x=x,
            y=y,
            width=max(0.0, min(self.x2, 1.0) - x),
            height=max(0.0, min(self.y2, 1.0) - y),
            unit=self.unit,
        )

    def intersection_area(self, other: "BoundingBox") -> float:
        """Shared area of two boxes in the same coordinate space."""
        if self.unit != other.unit:
            raise ValueError(f"Cannot intersect {self.unit} box with {other.unit} box")
        overlap_w = min(self.x2, other.x2) - max(self.x, other.x)
        overlap_h = min(self.y2, other.y2) - max(self.y, other.y)
        if overlap_w <= 0 or overlap_h <= 0:
            return 0.0
        return overlap_w * overlap_h

    def overlaps(self, other: "BoundingBox") -> bool:
        return self.intersection_area(other) > 0

    @classmethod
    def from_polygon(
        cls,
        polygon: Sequence[float],
        page_width: Optional[float] = None,
        page_height: Optional[float] = None,
    ) -> "BoundingBox":
        """Bounding rectangle of a flat [x1, y1, x2, y2, ...] polygon.

        With page dimensions the result is normalized to 0-1, otherwise the
        polygon is assumed to be normalized already.
        """
        if len(polygon) < 4 or len(polygon) % 2:
            raise ValueError(f"Polygon needs an even number (>=4) of coordinates, got {len(polygon)}")
        xs = polygon[0::2]
        ys = polygon[1::2]
        left, top = min(xs), min(ys)
        box = cls(x=left, y=top, width=max(xs) - left, height=max(ys) - top, unit="pixels")
        if page_width and page_height:
            return box.to_normalized(page_width, page_height)
        return box.model_copy(update={"unit": "normalized"})
