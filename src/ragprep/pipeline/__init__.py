"""Pipeline stages for ragprep document extraction.

Stages, in the order the orchestrator runs them:
1. stage_normalize - Detect origin, normalize images to PNG
2. stage_layout - Layout service call and asset candidates
3. stage_diagrams - Diagram detection chain (figures, images, vision)
4. stage_render - Page rasterization for vision passes and crops
5. stage_images - Diagram crops
6. stage_quality - Quality tiers
7. stage_table - Multi-page table consolidation
8. stage_htr - Handwriting transcription
9. stage_caption - Diagram captions
10. stage_export - Bucketed artifacts and manifest

Each stage is independent and can be run separately or
orchestrated through ``PipelineOrchestrator``.
"""

from .deadline import call_with_deadline
from .stage_caption import DiagramCaptioner
from .stage_diagrams import DetectionContext, DetectionPass, DiagramDetectionChain
from .stage_export import Exporter, ExportReport, chunk_text
from .stage_htr import HandwritingEnricher
from .stage_images import DiagramCropper
from .stage_layout import (
    AzureLayoutClient,
    LayoutExtraction,
    LayoutExtractor,
    build_header_signature,
    parse_analyze_result,
)
from .stage_normalize import normalize_input
from .stage_quality import QualityClassifier
from .stage_render import PageRasterizer, PillowSurface, RasterSurface, RenderedPage
from .stage_table import TableConsolidator
from .vision import OpenAIVisionClient, VisionRegion
from .orchestrator import JobLogHandler, PipelineOrchestrator, PipelineResult

__all__ = [
    # Normalize
    "normalize_input",
    # Render
    "PageRasterizer",
    "PillowSurface",
    "RasterSurface",
    "RenderedPage",
    # Layout
    "AzureLayoutClient",
    "LayoutExtraction",
    "LayoutExtractor",
    "build_header_signature",
    "parse_analyze_result",
    # Diagrams
    "DetectionContext",
    "DetectionPass",
    "DiagramDetectionChain",
    "DiagramCropper",
    # Classification
    "QualityClassifier",
    "TableConsolidator",
    # Enrichment
    "HandwritingEnricher",
    "DiagramCaptioner",
    "OpenAIVisionClient",
    "VisionRegion",
    # Export
    "Exporter",
    "ExportReport",
    "chunk_text",
    # Orchestration
    "call_with_deadline",
    "JobLogHandler",
    "PipelineOrchestrator",
    "PipelineResult",
]
