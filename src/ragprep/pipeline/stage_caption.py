"""Diagram Captioning Stage - Describe cropped diagrams with a vision model."""

import logging
from pathlib import Path
from typing import Optional

from ragprep.errors import TransportError
from ragprep.models import DiagramAsset
from ragprep.pipeline.deadline import call_with_deadline
from ragprep.pipeline.vision import VisionCaptioner

logger = logging.getLogger(__name__)


class DiagramCaptioner:
    """Fills ``description`` for diagrams that have an image. Fail-open."""

    def __init__(self, captioner: Optional[VisionCaptioner], timeout: Optional[float] = None):
        self.captioner = captioner
        self.timeout = timeout

    def caption(self, diagrams: list[DiagramAsset], output_dir: Path) -> list[DiagramAsset]:
        if self.captioner is None:
            return diagrams

        result = []
        for diagram in diagrams:
            if not diagram.image_path:
                result.append(diagram)
                continue

            image = Path(output_dir) / diagram.image_path
            try:
                description = call_with_deadline(
                    self.captioner.caption,
                    str(image),
                    diagram.raw_caption_text,
                    timeout=self.timeout,
                    what=f"Caption for {diagram.id}",
                )
            except (TransportError, OSError) as exc:
                logger.warning("Captioning failed for %s: %s", diagram.id, exc)
                result.append(diagram)
                continue

            if description:
                diagram = diagram.model_copy(update={"description": description})
            result.append(diagram)

        described = sum(1 for d in result if d.description)
        logger.info("Captioned %d of %d diagram(s)", described, len(diagrams))
        return result
