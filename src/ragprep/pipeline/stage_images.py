"""Diagram Image Stage - Crop detected diagram regions to PNG files."""

import io
import logging
from pathlib import Path
from typing import Optional

from PIL import Image

from ragprep.errors import RenderUnavailable
from ragprep.models import DiagramAsset, Document
from ragprep.pipeline.stage_render import PageRasterizer, RenderedPage

logger = logging.getLogger(__name__)

CROP_PADDING = 0.05
IMAGES_SUBDIR = Path("diagrams") / "images"


def padded_crop_box(diagram: DiagramAsset, width: int, height: int) -> tuple[int, int, int, int]:
    """Pixel crop box for a diagram, padded by 5% of its size."""
    box = diagram.bounding_box.to_pixels(width, height)
    pad_x = box.width * CROP_PADDING
    pad_y = box.height * CROP_PADDING
    left = max(0, int(box.x - pad_x))
    top = max(0, int(box.y - pad_y))
    right = min(width, int(round(box.x2 + pad_x)))
    bottom = min(height, int(round(box.y2 + pad_y)))
    return left, top, max(right, left + 1), max(bottom, top + 1)


class DiagramCropper:
    """Fills ``image_path`` for diagrams with a bounding box."""

    def __init__(self, rasterizer: Optional[PageRasterizer] = None):
        self.rasterizer = rasterizer

    def crop(
        self,
        document: Document,
        diagrams: list[DiagramAsset],
        output_dir: Path,
        rendered: Optional[dict[int, RenderedPage]] = None,
    ) -> list[DiagramAsset]:
        """Crop every locatable diagram; failures leave ``image_path`` empty.

        Args:
            document: Source document.
            diagrams: Accepted diagrams.
            output_dir: Job output directory; crops go to ``diagrams/images``.
            rendered: Pages already rendered by the detection chain.
        """
        output_dir = Path(output_dir)
        pages: dict[int, Optional[Image.Image]] = {}
        rendered = rendered or {}
        result = []

        for diagram in diagrams:
            if diagram.bounding_box is None or diagram.page is None:
                result.append(diagram)
                continue

            if diagram.page not in pages:
                pages[diagram.page] = self._page_image(document, diagram.page, rendered)
            page_image = pages[diagram.page]
            if page_image is None:
                result.append(diagram)
                continue

            relative = IMAGES_SUBDIR / f"{diagram.id}.png"
            target = output_dir / relative
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                crop = page_image.crop(padded_crop_box(diagram, *page_image.size))
                crop.save(target, format="PNG")
            except OSError as exc:
                logger.warning("Could not write crop for %s: %s", diagram.id, exc)
                result.append(diagram)
                continue

            result.append(diagram.model_copy(update={"image_path": relative.as_posix()}))

        cropped = sum(1 for d in result if d.image_path)
        logger.info("Cropped %d of %d diagram(s)", cropped, len(diagrams))
        return result

    def _page_image(
        self,
        document: Document,
        page: int,
        rendered: dict[int, RenderedPage],
    ) -> Optional[Image.Image]:
        try:
            if document.is_image:
                with Image.open(document.normalized_path) as img:
                    return img.convert("RGB")
            if page not in rendered:
                if self.rasterizer is None:
                    raise RenderUnavailable("No page rasterizer configured", page_number=page)
                rendered[page] = self.rasterizer.render_page(document, page)
            with Image.open(io.BytesIO(rendered[page].png_bytes())) as img:
                return img.convert("RGB")
        except (RenderUnavailable, OSError) as exc:
            logger.warning("Diagram crops unavailable for page %d: %s", page, exc)
            return None
