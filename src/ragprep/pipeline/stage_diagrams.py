"""Diagram Detection Stage - Ordered fallback chain of detection passes.

Passes are evaluated in priority order, each with its own applicability
predicate:

1. azure_figure   - native figure regions from the layout service
2. azure_image    - embedded images not overlapping an accepted region
3. vision_segment - vision-model segmentation of rendered pages, only for
                    pages the trigger policy selects

A region proposed by a later pass that overlaps one accepted by an earlier
pass is dropped, so native figures always win.
"""

import io
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from PIL import Image, ImageDraw

from ragprep.errors import TransportError
from ragprep.models import DiagramAsset, DiagramSource, Document, DocumentOrigin, IdAllocator
from ragprep.pipeline.deadline import call_with_deadline
from ragprep.pipeline.stage_layout import LayoutExtraction
from ragprep.pipeline.stage_render import PageRasterizer, RenderedPage, debug_page_path
from ragprep.pipeline.vision import VisionRegion, VisionSegmenter

logger = logging.getLogger(__name__)

OVERLAY_COLOR = (0, 255, 0)


@dataclass
class DetectionContext:
    """Inputs and accumulated state shared by all passes for one document."""

    document: Document
    extraction: LayoutExtraction
    ids: IdAllocator
    rasterizer: Optional[PageRasterizer] = None
    segmenter: Optional[VisionSegmenter] = None
    vision_enabled: bool = False
    trigger: str = "caption"
    max_vision_pages: int = 20
    confirm_confidence: Optional[float] = None
    timeout: Optional[float] = None
    debug_dir: Optional[Path] = None

    accepted: list[DiagramAsset] = field(default_factory=list)
    review_pages: set[int] = field(default_factory=set)
    rendered: dict[int, RenderedPage] = field(default_factory=dict)

    def pages_with_diagrams(self) -> set[int]:
        return {d.page for d in self.accepted if d.page is not None}

    def overlaps_accepted(self, asset: DiagramAsset, accepted: Optional[list[DiagramAsset]] = None) -> bool:
        """True if ``asset`` shares area with an accepted region on its page."""
        if asset.bounding_box is None:
            return False
        for other in self.accepted if accepted is None else accepted:
            if other.page == asset.page and other.bounding_box is not None:
                if asset.bounding_box.overlaps(other.bounding_box):
                    return True
        return False


@dataclass
class DetectionPass:
    """One strategy in the fallback chain."""

    name: DiagramSource
    applies: Callable[[DetectionContext], bool]
    run: Callable[[DetectionContext], list[DiagramAsset]]


# ---------------------------------------------------------------------------
# Pass 3 trigger policies
# ---------------------------------------------------------------------------


def caption_trigger(ctx: DetectionContext) -> list[int]:
    """Pages with ``Figure N``-style caption text but no diagram."""
    return sorted(ctx.extraction.page_captions)


def empty_page_trigger(ctx: DetectionContext) -> list[int]:
    """Every page without a diagram."""
    return list(range(1, ctx.extraction.page_count + 1))


TRIGGER_POLICIES: dict[str, Callable[[DetectionContext], list[int]]] = {
    "caption": caption_trigger,
    "empty_page": empty_page_trigger,
}


def vision_pages(ctx: DetectionContext) -> list[int]:
    """Pages Pass 3 should scan, in page order, capped at ``max_vision_pages``."""
    if ctx.document.origin == DocumentOrigin.IMAGE_NORMALIZED:
        candidates = empty_page_trigger(ctx)
    else:
        try:
            policy = TRIGGER_POLICIES[ctx.trigger]
        except KeyError:
            raise ValueError(
                f"Unknown vision trigger '{ctx.trigger}'. Expected one of {sorted(TRIGGER_POLICIES)}"
            ) from None
        candidates = policy(ctx)

    covered = ctx.pages_with_diagrams()
    pages = [p for p in candidates if p not in covered]
    if len(pages) > ctx.max_vision_pages:
        logger.warning(
            "Vision fallback limited to %d of %d candidate pages", ctx.max_vision_pages, len(pages)
        )
        pages = pages[: ctx.max_vision_pages]
    return pages


# ---------------------------------------------------------------------------
# Passes
# ---------------------------------------------------------------------------


def _run_figures(ctx: DetectionContext) -> list[DiagramAsset]:
    return list(ctx.extraction.figure_candidates)


def _run_images(ctx: DetectionContext) -> list[DiagramAsset]:
    kept = []
    for asset in ctx.extraction.image_candidates:
        if ctx.overlaps_accepted(asset):
            logger.debug("Image on page %s overlaps a figure, skipped", asset.page)
            continue
        kept.append(asset)
    return kept


def _vision_applies(ctx: DetectionContext) -> bool:
    return ctx.vision_enabled and ctx.segmenter is not None and bool(vision_pages(ctx))


def _run_vision(ctx: DetectionContext) -> list[DiagramAsset]:
    pages = vision_pages(ctx)
    if ctx.rasterizer is None:
        logger.warning("No page rasterizer available; vision fallback skipped for pages %s", pages)
        ctx.review_pages.update(pages)
        return []

    pages_dir = ctx.debug_dir / "pages" if ctx.debug_dir else None
    rendered_pages = ctx.rasterizer.render_pages(ctx.document, pages, debug_dir=pages_dir)
    found = []
    for page in pages:
        rendered = rendered_pages.get(page)
        if rendered is None:
            logger.warning("Vision fallback skipped for page %d: page could not be rendered", page)
            ctx.review_pages.add(page)
            continue
        try:
            png = rendered.png_bytes()
        except OSError as exc:
            logger.warning("Vision fallback skipped for page %d: %s", page, exc)
            ctx.review_pages.add(page)
            continue
        ctx.rendered[page] = rendered

        try:
            regions = call_with_deadline(
                ctx.segmenter.segment,
                png,
                timeout=ctx.timeout,
                what=f"Vision segmentation of page {page}",
            )
        except TransportError as exc:
            logger.warning("Vision segmentation failed for page %d: %s", page, exc)
            ctx.review_pages.add(page)
            continue

        assets = [_vision_asset(ctx, page, region) for region in regions]
        logger.info("Vision segmentation found %d diagram(s) on page %d", len(assets), page)
        found.extend(assets)

        if ctx.debug_dir is not None:
            write_vision_debug(ctx.debug_dir, page, png, regions)
    return found


def _vision_asset(ctx: DetectionContext, page: int, region: VisionRegion) -> DiagramAsset:
    confirmed = (
        ctx.confirm_confidence is not None
        and region.confidence is not None
        and region.confidence >= ctx.confirm_confidence
    )
    return DiagramAsset(
        id=ctx.ids.next("diagram"),
        section_path=ctx.extraction.section_for_page(page),
        title=region.label,
        source_pdf=ctx.document.source_filename,
        page=page,
        origin=ctx.document.origin,
        source_image_path=ctx.document.source_image_path,
        raw_caption_text=ctx.extraction.page_captions.get(page),
        bounding_box=region.bbox,
        confidence=region.confidence,
        confirmed=confirmed,
        source=DiagramSource.VISION_SEGMENT,
    )


def write_vision_debug(debug_dir: Path, page: int, png: bytes, regions: list[VisionRegion]) -> None:
    """Write the overlay PNG and segments JSON for a page (best-effort)."""
    overlay_path = debug_page_path(debug_dir / "pages", page).with_name(f"page-{page:03d}_overlay.png")
    segments_path = Path(debug_dir) / "segments" / f"page-{page:03d}_segments.json"
    try:
        with Image.open(io.BytesIO(png)) as base:
            overlay = base.convert("RGB")
        draw = ImageDraw.Draw(overlay)
        width, height = overlay.size
        for i, region in enumerate(regions, start=1):
            box = region.bbox.to_pixels(width, height)
            draw.rectangle([box.x, box.y, box.x2, box.y2], outline=OVERLAY_COLOR, width=4)
            draw.text((box.x + 10, box.y + 10), str(i), fill=OVERLAY_COLOR)
        overlay_path.parent.mkdir(parents=True, exist_ok=True)
        overlay.save(overlay_path, format="PNG")

        segments = {
            "page": page,
            "imageWidth": width,
            "imageHeight": height,
            "regions": [
                {
                    "label": r.label,
                    "confidence": r.confidence,
                    "x": r.bbox.x,
                    "y": r.bbox.y,
                    "width": r.bbox.width,
                    "height": r.bbox.height,
                }
                for r in regions
            ],
        }
        segments_path.parent.mkdir(parents=True, exist_ok=True)
        segments_path.write_text(json.dumps(segments, indent=2), encoding="utf-8")
    except OSError as exc:
        logger.warning("Could not write vision debug artifacts for page %d: %s", page, exc)


DEFAULT_PASSES = [
    DetectionPass(
        name=DiagramSource.AZURE_FIGURE,
        applies=lambda ctx: bool(ctx.extraction.figure_candidates),
        run=_run_figures,
    ),
    DetectionPass(
        name=DiagramSource.AZURE_IMAGE,
        applies=lambda ctx: bool(ctx.extraction.image_candidates),
        run=_run_images,
    ),
    DetectionPass(
        name=DiagramSource.VISION_SEGMENT,
        applies=_vision_applies,
        run=_run_vision,
    ),
]


class DiagramDetectionChain:
    """Runs detection passes in order over one document."""

    def __init__(self, passes: Optional[list[DetectionPass]] = None):
        self.passes = list(passes) if passes is not None else list(DEFAULT_PASSES)

    def run(self, ctx: DetectionContext) -> list[DiagramAsset]:
        """Evaluate every applicable pass and return the accepted diagrams.

        Pages whose fallback could not run are left in ``ctx.review_pages``.
        """
        for detection_pass in self.passes:
            if not detection_pass.applies(ctx):
                logger.debug("Detection pass %s not applicable", detection_pass.name.value)
                continue

            earlier = list(ctx.accepted)
            proposed = detection_pass.run(ctx)
            accepted = 0
            for asset in proposed:
                if asset.source != detection_pass.name:
                    asset = asset.model_copy(update={"source": detection_pass.name})
                if ctx.overlaps_accepted(asset, earlier):
                    logger.info(
                        "Dropped %s region %s on page %s: overlaps an earlier pass",
                        detection_pass.name.value,
                        asset.id,
                        asset.page,
                    )
                    continue
                ctx.accepted.append(asset)
                accepted += 1

            logger.info("Detection pass %s accepted %d diagram(s)", detection_pass.name.value, accepted)

        return list(ctx.accepted)
