"""Quality Classification Stage - Assign a confidence tier to every asset.

Tiers are derived only from in-memory signals carried by each asset
(confidence, handwriting flag, detection pass, origin) plus the pages whose
diagram fallback could not run. The previous tier is ignored, so
classifying twice yields the same result.
"""

import logging

from ragprep.models import (
    ContentQuality,
    DiagramAsset,
    DiagramSource,
    DocumentOrigin,
    NarrativeChunk,
    RoutedContent,
    TableAsset,
)

logger = logging.getLogger(__name__)


class QualityClassifier:
    """Pure tiering over RoutedContent."""

    def __init__(
        self,
        low_confidence_threshold: float = 0.9,
        diagram_confidence_threshold: float = 0.7,
    ):
        self.low_confidence_threshold = low_confidence_threshold
        self.diagram_confidence_threshold = diagram_confidence_threshold

    def narrative_quality(self, chunk: NarrativeChunk, review_pages: set[int]) -> ContentQuality:
        if chunk.origin == DocumentOrigin.IMAGE_NORMALIZED and chunk.handwritten:
            return ContentQuality.HANDWRITING
        if chunk.confidence is not None and chunk.confidence < self.low_confidence_threshold:
            return ContentQuality.LOW_CONFIDENCE
        if chunk.page_range and any(
            p in review_pages for p in range(chunk.page_range[0], chunk.page_range[1] + 1)
        ):
            return ContentQuality.LOW_CONFIDENCE
        return ContentQuality.OK

    def table_quality(self, table: TableAsset) -> ContentQuality:
        if table.confidence is not None and table.confidence < self.low_confidence_threshold:
            return ContentQuality.LOW_CONFIDENCE
        return ContentQuality.OK

    def diagram_quality(self, diagram: DiagramAsset) -> ContentQuality:
        if diagram.source == DiagramSource.VISION_SEGMENT and not diagram.confirmed:
            return ContentQuality.LOW_CONFIDENCE
        if diagram.confidence is not None and diagram.confidence < self.diagram_confidence_threshold:
            return ContentQuality.LOW_CONFIDENCE
        return ContentQuality.OK

    def classify(self, content: RoutedContent) -> RoutedContent:
        """Return a copy of ``content`` with every asset tiered."""
        review_pages = set(content.review_pages)
        classified = RoutedContent(
            narrative_blocks=[
                c.model_copy(update={"quality": self.narrative_quality(c, review_pages)})
                for c in content.narrative_blocks
            ],
            tables=[t.model_copy(update={"quality": self.table_quality(t)}) for t in content.tables],
            diagrams=[d.model_copy(update={"quality": self.diagram_quality(d)}) for d in content.diagrams],
            review_pages=review_pages,
        )

        flagged = sum(1 for a in classified.all_assets() if a.quality != ContentQuality.OK)
        logger.info(
            "Classified %d asset(s), %d flagged for review",
            len(classified.all_assets()),
            flagged,
        )
        return classified
