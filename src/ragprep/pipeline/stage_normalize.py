"""Input Normalization Stage - Decide document origin and normalize images.

PDFs are used as-is (``pdf_digital``). Raster images are auto-rotated from
EXIF, converted to grayscale, given a mild contrast boost and written as PNG
(``image_normalized``).
"""

import hashlib
import logging
from pathlib import Path

from PIL import Image, ImageEnhance, ImageOps

from ragprep.errors import UnsupportedInput
from ragprep.models import Document, DocumentOrigin

logger = logging.getLogger(__name__)

PDF_EXTENSIONS = {".pdf"}
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".tif", ".tiff", ".bmp"}

CONTRAST_FACTOR = 1.2


def compute_file_hash(file_path: Path, chunk_size: int = 8192) -> str:
    """Compute SHA-256 hash of a file for the manifest."""
    sha256 = hashlib.sha256()
    with open(file_path, "rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def is_supported(path: Path) -> bool:
    return path.suffix.lower() in PDF_EXTENSIONS | IMAGE_EXTENSIONS


def normalize_image(source: Path, output_path: Path) -> Path:
    """Write a grayscale, upright, contrast-boosted PNG copy of ``source``."""
    with Image.open(source) as img:
        upright = ImageOps.exif_transpose(img)
        gray = upright.convert("L")
        boosted = ImageEnhance.Contrast(gray).enhance(CONTRAST_FACTOR)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        boosted.save(output_path, format="PNG")
    return output_path


def normalize_input(input_path: Path, work_dir: Path) -> Document:
    """Create the Document handle for an input file.

    Args:
        input_path: PDF or image to ingest.
        work_dir: Job output directory; normalized images are written here.

    Returns:
        Document with origin and normalized path set.
    """
    input_path = Path(input_path).resolve()
    if not input_path.exists():
        raise FileNotFoundError(f"Input not found: {input_path}")

    ext = input_path.suffix.lower()
    source_hash = compute_file_hash(input_path)

    if ext in PDF_EXTENSIONS:
        logger.info("Detected digital PDF: %s", input_path.name)
        return Document(
            source_path=str(input_path),
            source_filename=input_path.name,
            source_hash=source_hash,
            normalized_path=str(input_path),
            origin=DocumentOrigin.PDF_DIGITAL,
        )

    if ext in IMAGE_EXTENSIONS:
        output_path = Path(work_dir) / f"normalized_{input_path.stem}.png"
        normalize_image(input_path, output_path)
        logger.info("Normalized image %s -> %s", input_path.name, output_path)
        return Document(
            source_path=str(input_path),
            source_filename=input_path.name,
            source_hash=source_hash,
            normalized_path=str(output_path),
            origin=DocumentOrigin.IMAGE_NORMALIZED,
            page_count=1,
        )

    raise UnsupportedInput(
        f"Unsupported file extension '{ext}'. Expected .pdf or one of "
        f"{', '.join(sorted(IMAGE_EXTENSIONS))}"
    )
