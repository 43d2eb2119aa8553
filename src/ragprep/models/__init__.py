"""IR (Intermediate Representation) models for the ragprep pipeline.

Pydantic models for data flowing between phases. Asset models serialize
with camelCase keys; in-memory signals (bounding boxes, confidences, table
rows) are excluded from serialization.

Model Hierarchy:
- Document → LayoutResult (service response)
- LayoutResult → RoutedContent → NarrativeChunk / TableAsset / DiagramAsset
- Job → PhaseRecord / JobLogEntry
"""

from .asset import (
    DiagramAsset,
    IdAllocator,
    NarrativeChunk,
    PageRange,
    RoutedContent,
    SectionPath,
    TableAsset,
)
from .base import (
    BoundingBox,
    CamelModel,
    ContentQuality,
    DiagramSource,
    DocumentOrigin,
    QualityBucket,
    worst_quality,
)
from .document import Document
from .job import (
    PHASE_NAMES,
    Job,
    JobLogEntry,
    JobStatus,
    LogLevel,
    Phase,
    PhaseRecord,
    PhaseStatus,
)
from .layout import (
    LayoutCell,
    LayoutPage,
    LayoutRegion,
    LayoutResult,
    LayoutTable,
    TextBlock,
)

__all__ = [
    # Base types
    "BoundingBox",
    "CamelModel",
    "ContentQuality",
    "DiagramSource",
    "DocumentOrigin",
    "QualityBucket",
    "worst_quality",
    # Document
    "Document",
    # Assets
    "DiagramAsset",
    "IdAllocator",
    "NarrativeChunk",
    "PageRange",
    "RoutedContent",
    "SectionPath",
    "TableAsset",
    # Layout
    "LayoutCell",
    "LayoutPage",
    "LayoutRegion",
    "LayoutResult",
    "LayoutTable",
    "TextBlock",
    # Jobs
    "PHASE_NAMES",
    "Job",
    "JobLogEntry",
    "JobStatus",
    "LogLevel",
    "Phase",
    "PhaseRecord",
    "PhaseStatus",
]
