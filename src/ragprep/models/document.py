"""Document handle passed to rendering and extraction stages."""

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from .base import DocumentOrigin


class Document(BaseModel):
    """
    An ingested document after input normalization.

    ``normalized_path`` is what the layout service and rasterizer consume:
    the PDF itself, or the normalized PNG for image inputs.
    """

    source_path: str
    source_filename: str
    source_hash: str = Field(..., min_length=64, max_length=64)
    normalized_path: str
    origin: DocumentOrigin
    page_count: Optional[int] = Field(None, ge=0)

    @property
    def normalized_path_obj(self) -> Path:
        return Path(self.normalized_path)

    @property
    def is_image(self) -> bool:
        return self.origin == DocumentOrigin.IMAGE_NORMALIZED

    @property
    def source_image_path(self) -> Optional[str]:
        """Image backing every asset of an image document."""
        return self.normalized_path if self.is_image else None
