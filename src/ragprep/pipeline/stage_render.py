"""Page Rasterization Stage - Render document pages to PNG for vision passes.

PyMuPDF (fitz) produces the pixel samples; a ``RasterSurface`` injected at
construction holds them and encodes PNGs. There is no global canvas hook:
a renderer built without a surface factory fails immediately, and any error
inside rendering surfaces as ``RenderUnavailable`` for that page so callers
can tell "page unavailable" apart from "no diagrams on this page".

Works headless; nothing here touches a display.
"""

import io
import logging
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol

import fitz  # PyMuPDF
from PIL import Image

from ragprep.errors import RenderUnavailable
from ragprep.models import Document

logger = logging.getLogger(__name__)


class RasterSurface(Protocol):
    """Minimal pixel surface the rasterizer draws into."""

    def create(self, width: int, height: int) -> None: ...

    def load(self, samples: bytes) -> None: ...

    def get_pixels(self) -> bytes: ...

    def save_png(self, path: Path) -> None: ...

    def to_png_bytes(self) -> bytes: ...


SurfaceFactory = Callable[[], RasterSurface]


class PillowSurface:
    """RGB surface backed by a Pillow image."""

    mode = "RGB"

    def __init__(self):
        self.image: Optional[Image.Image] = None

    def create(self, width: int, height: int) -> None:
        if width <= 0 or height <= 0:
            raise ValueError(f"Invalid surface size {width}x{height}")
        self.image = Image.new(self.mode, (width, height), "white")

    def load(self, samples: bytes) -> None:
        if self.image is None:
            raise RuntimeError("Surface used before create()")
        self.image = Image.frombytes(self.mode, self.image.size, samples)

    def get_pixels(self) -> bytes:
        if self.image is None:
            raise RuntimeError("Surface used before create()")
        return self.image.tobytes()

    @property
    def size(self) -> tuple[int, int]:
        return self.image.size if self.image is not None else (0, 0)

    def save_png(self, path: Path) -> None:
        self.image.save(str(path), format="PNG")

    def to_png_bytes(self) -> bytes:
        buffer = io.BytesIO()
        self.image.save(buffer, format="PNG")
        return buffer.getvalue()

    def to_image(self) -> Image.Image:
        return self.image.copy()


@dataclass
class RenderedPage:
    """A rasterized page held in memory."""

    page_number: int
    width: int
    height: int
    dpi: int
    surface: RasterSurface
    debug_path: Optional[Path] = None

    def png_bytes(self) -> bytes:
        return self.surface.to_png_bytes()


def debug_page_path(debug_dir: Path, page_number: int) -> Path:
    """Per-page PNG path; unique per page so concurrent writes never collide."""
    return Path(debug_dir) / f"page-{page_number:03d}.png"


def _rasterize(source_path: str, page_number: int, dpi: int) -> tuple[int, int, int, bytes]:
    """Render one page with PyMuPDF.

    Returns:
        Tuple of (page_number, width, height, rgb_samples)
    """
    pdf_doc = fitz.open(source_path)
    try:
        if page_number < 1 or page_number > len(pdf_doc):
            raise IndexError(f"page {page_number} outside 1..{len(pdf_doc)}")
        page = pdf_doc[page_number - 1]

        # PDF base is 72 DPI
        zoom = dpi / 72.0
        pixmap = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
        return page_number, pixmap.width, pixmap.height, bytes(pixmap.samples)
    finally:
        pdf_doc.close()


def _render_page_worker(args: tuple) -> tuple[int, int, int, bytes]:
    """Process-pool entry point; args is (source_path, page_number, dpi)."""
    return _rasterize(*args)


class PageRasterizer:
    """Renders document pages to fixed-resolution rasters.

    PDFs and normalized images both go through PyMuPDF, which opens raster
    images as single-page documents.
    """

    def __init__(
        self,
        surface_factory: Optional[SurfaceFactory],
        dpi: int = 150,
        max_workers: int = 4,
    ):
        """Initialize rasterizer.

        Args:
            surface_factory: Builds the surface each page is drawn into.
            dpi: Rendering resolution.
            max_workers: Process pool size for multi-page rendering.

        Raises:
            RenderUnavailable: If no surface factory is provided.
        """
        if surface_factory is None:
            raise RenderUnavailable("No raster surface configured; page rendering is unavailable")
        self.surface_factory = surface_factory
        self.dpi = dpi
        self.max_workers = max_workers

    def page_count(self, document: Document) -> int:
        try:
            with fitz.open(document.normalized_path) as pdf_doc:
                return len(pdf_doc)
        except Exception as exc:
            raise RenderUnavailable(f"Cannot open {document.normalized_path}: {exc}") from exc

    def render_page(
        self,
        document: Document,
        page_number: int,
        debug_dir: Optional[Path] = None,
    ) -> RenderedPage:
        """Render a single page.

        Args:
            document: Document to render from.
            page_number: 1-indexed page number.
            debug_dir: If set, the PNG is also written there (best-effort).

        Returns:
            RenderedPage with the surface populated.

        Raises:
            RenderUnavailable: If the page could not be rendered.
        """
        try:
            _, width, height, samples = _rasterize(document.normalized_path, page_number, self.dpi)
        except Exception as exc:
            raise RenderUnavailable(
                f"Page {page_number} of {document.source_filename} could not be rendered: {exc}",
                page_number=page_number,
            ) from exc
        return self._finish(page_number, width, height, samples, debug_dir)

    def render_pages(
        self,
        document: Document,
        page_numbers: list[int],
        debug_dir: Optional[Path] = None,
        parallel: bool = True,
    ) -> dict[int, RenderedPage]:
        """Render several pages; pages that fail are logged and left out.

        Uses a process pool for more than four pages.
        """
        rendered: dict[int, RenderedPage] = {}
        if not page_numbers:
            return rendered

        if not parallel or len(page_numbers) <= 4:
            for page_number in page_numbers:
                try:
                    rendered[page_number] = self.render_page(document, page_number, debug_dir)
                except RenderUnavailable as exc:
                    logger.warning("%s", exc)
            return rendered

        work_items = [(document.normalized_path, p, self.dpi) for p in page_numbers]
        with ProcessPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {p: executor.submit(_render_page_worker, item) for p, item in zip(page_numbers, work_items)}
            for page_number, future in futures.items():
                try:
                    _, width, height, samples = future.result()
                    rendered[page_number] = self._finish(page_number, width, height, samples, debug_dir)
                except Exception as exc:
                    logger.warning(
                        "Page %d of %s could not be rendered: %s",
                        page_number,
                        document.source_filename,
                        exc,
                    )
        return rendered

    def _finish(
        self,
        page_number: int,
        width: int,
        height: int,
        samples: bytes,
        debug_dir: Optional[Path],
    ) -> RenderedPage:
        try:
            surface = self.surface_factory()
            surface.create(width, height)
            surface.load(samples)
        except Exception as exc:
            raise RenderUnavailable(
                f"Raster surface failed for page {page_number}: {exc}",
                page_number=page_number,
            ) from exc

        page = RenderedPage(
            page_number=page_number,
            width=width,
            height=height,
            dpi=self.dpi,
            surface=surface,
        )
        if debug_dir is not None:
            page.debug_path = self._write_debug_png(surface, debug_dir, page_number)
        return page

    def _write_debug_png(self, surface: RasterSurface, debug_dir: Path, page_number: int) -> Optional[Path]:
        path = debug_page_path(debug_dir, page_number)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            surface.save_png(path)
            return path
        except OSError as exc:
            logger.warning("Could not write debug page %s: %s", path, exc)
            return None
