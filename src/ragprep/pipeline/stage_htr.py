"""Handwriting Enrichment Stage - Replace handwritten narrative with a transcription.

For image documents dominated by handwriting, the layout service's
paragraph OCR is unreliable. One vision transcription of the normalized
image replaces every image-origin narrative chunk. The step is fail-open:
any problem leaves the input untouched.
"""

import logging
from typing import Optional

from ragprep.errors import TransportError
from ragprep.models import ContentQuality, DocumentOrigin, NarrativeChunk
from ragprep.pipeline.deadline import call_with_deadline
from ragprep.pipeline.vision import VisionTranscriber

logger = logging.getLogger(__name__)

REVIEW_QUALITIES = {ContentQuality.HANDWRITING, ContentQuality.LOW_CONFIDENCE}


class HandwritingEnricher:
    """Single-transcription replacement of image-origin narrative."""

    def __init__(self, transcriber: Optional[VisionTranscriber], timeout: Optional[float] = None):
        self.transcriber = transcriber
        self.timeout = timeout

    def enrich(self, chunks: list[NarrativeChunk]) -> list[NarrativeChunk]:
        """Return ``chunks`` itself when nothing changes, else a new list."""
        image_chunks = [c for c in chunks if c.origin == DocumentOrigin.IMAGE_NORMALIZED]
        if not image_chunks:
            return chunks
        if not any(c.quality in REVIEW_QUALITIES for c in image_chunks):
            logger.info("No handwriting or low-confidence chunks; transcription skipped")
            return chunks
        if self.transcriber is None:
            logger.warning("Handwriting detected but no vision transcriber is configured")
            return chunks

        representative = image_chunks[0]
        if not representative.source_image_path:
            logger.warning("Chunk %s has no source image; transcription skipped", representative.id)
            return chunks

        try:
            text = call_with_deadline(
                self.transcriber.transcribe,
                representative.source_image_path,
                timeout=self.timeout,
                what="Handwriting transcription",
            )
        except (TransportError, OSError) as exc:
            logger.warning("Handwriting transcription failed, keeping OCR text: %s", exc)
            return chunks

        if not text or not text.strip():
            logger.warning("Handwriting transcription returned no text, keeping OCR text")
            return chunks

        pages = [c.page_range for c in image_chunks if c.page_range]
        replacement = NarrativeChunk(
            id=f"{representative.id}_vision",
            section_path=list(representative.section_path),
            text=text.strip(),
            source_pdf=representative.source_pdf,
            page_range=(min(p[0] for p in pages), max(p[1] for p in pages)) if pages else None,
            origin=DocumentOrigin.IMAGE_NORMALIZED,
            quality=ContentQuality.HANDWRITING,
            source_image_path=representative.source_image_path,
            handwritten=True,
        )
        logger.info("Replaced %d image chunk(s) with one vision transcription", len(image_chunks))

        result = []
        inserted = False
        for chunk in chunks:
            if chunk.origin != DocumentOrigin.IMAGE_NORMALIZED:
                result.append(chunk)
            elif not inserted:
                result.append(replacement)
                inserted = True
        return result
