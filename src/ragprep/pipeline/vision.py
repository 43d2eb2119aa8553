"""Vision service client - segmentation, transcription and captioning.

All three operations go through the OpenAI chat completions API with the
image attached as a base64 data URL. The pipeline only depends on the
narrow protocols below; ``OpenAIVisionClient`` is the production
implementation and tests substitute fakes.

Error contract:
- ``segment`` raises ``TransportError`` when the service fails.
- ``transcribe`` / ``caption`` return ``None`` when the model produced no
  usable text and raise ``TransportError`` when the call itself failed.
"""

import base64
import io
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

import openai
from openai import OpenAI
from PIL import Image

from ragprep.errors import TransportError
from ragprep.models import BoundingBox

logger = logging.getLogger(__name__)

SEGMENT_PROMPT = "\n".join(
    [
        "You are analyzing a scanned technical document page.",
        "Identify all diagrams, blueprints, templates, or technical illustrations.",
        'Return ONLY a JSON object {"regions": [...]}. Each region must have '
        '"x", "y", "width", "height" (fractions 0-1 of the full page image), '
        '"label" and optionally "confidence".',
        'If there are no diagrams, return {"regions": []}.',
    ]
)

TRANSCRIBE_PROMPT = "\n".join(
    [
        "Transcribe this handwritten note exactly.",
        "Preserve line breaks.",
        "If a word is unclear, write [unclear].",
    ]
)

CAPTION_PROMPT = "\n".join(
    [
        "You are analyzing a technical diagram from a document.",
        "Describe all labeled parts, dimensions, limits, and constraints.",
    ]
)


@dataclass
class VisionRegion:
    """A diagram region reported by the segmentation service."""

    bbox: BoundingBox
    label: Optional[str] = None
    confidence: Optional[float] = None


class VisionSegmenter(Protocol):
    def segment(self, page_png: bytes) -> list[VisionRegion]: ...


class VisionTranscriber(Protocol):
    def transcribe(self, image_path: str) -> Optional[str]: ...


class VisionCaptioner(Protocol):
    def caption(self, image_path: str, context: Optional[str] = None) -> Optional[str]: ...


def _data_url(png_bytes: bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(png_bytes).decode("ascii")


def parse_regions(payload: object, image_size: tuple[int, int]) -> list[VisionRegion]:
    """Map a segmentation JSON payload onto normalized regions.

    Accepts a bare list or an object holding ``regions`` / ``diagrams``.
    A region with any coordinate above 1 is taken as pixels of ``image_size``.
    Fractions that run past the page edge are clamped, not rescaled.
    """
    if isinstance(payload, dict):
        raw = payload.get("regions") or payload.get("diagrams") or []
    elif isinstance(payload, list):
        raw = payload
    else:
        raw = []

    width, height = image_size
    regions = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        try:
            x, y, w, h = (float(item[k]) for k in ("x", "y", "width", "height"))
        except (KeyError, TypeError, ValueError):
            logger.debug("Skipping malformed vision region: %r", item)
            continue

        box = BoundingBox(x=max(0.0, x), y=max(0.0, y), width=max(0.0, w), height=max(0.0, h), unit="pixels")
        if max(x, y, w, h) > 1.0 and width and height:
            box = box.to_normalized(width, height)
        else:
            box = box.model_copy(update={"unit": "normalized"})
        box = box.clamped()
        if box.area <= 0:
            continue

        confidence = item.get("confidence")
        regions.append(
            VisionRegion(
                bbox=box,
                label=item.get("label") or "Diagram",
                confidence=float(confidence) if isinstance(confidence, (int, float)) else None,
            )
        )
    return regions


class OpenAIVisionClient:
    """OpenAI-backed implementation of all three vision contracts."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        client: Optional[OpenAI] = None,
    ):
        if client is None and not api_key:
            raise ValueError("OpenAI vision client needs an API key")
        self.client = client or OpenAI(api_key=api_key)
        self.model = model

    def _complete(self, prompt: str, png_bytes: bytes, json_mode: bool = False) -> Optional[str]:
        kwargs = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": prompt},
                            {"type": "image_url", "image_url": {"url": _data_url(png_bytes)}},
                        ],
                    }
                ],
                **kwargs,
            )
        except openai.OpenAIError as exc:
            raise TransportError(
                f"Vision service call failed: {exc}",
                status_code=getattr(exc, "status_code", None),
            ) from exc

        if not response.choices:
            return None
        content = response.choices[0].message.content
        return content.strip() if content else None

    def segment(self, page_png: bytes) -> list[VisionRegion]:
        """Detect diagram regions in a rendered page."""
        with Image.open(io.BytesIO(page_png)) as img:
            size = img.size

        content = self._complete(SEGMENT_PROMPT, page_png, json_mode=True)
        if not content:
            return []
        try:
            payload = json.loads(content)
        except json.JSONDecodeError as exc:
            raise TransportError(f"Vision segmentation returned invalid JSON: {exc}") from exc

        regions = parse_regions(payload, size)
        logger.info("Vision segmentation found %d region(s)", len(regions))
        return regions

    def transcribe(self, image_path: str) -> Optional[str]:
        """Transcribe handwriting in an image; ``None`` if nothing came back."""
        return self._complete(TRANSCRIBE_PROMPT, Path(image_path).read_bytes())

    def caption(self, image_path: str, context: Optional[str] = None) -> Optional[str]:
        """Describe a diagram image, optionally with its printed caption."""
        prompt = CAPTION_PROMPT
        if context and context.strip():
            prompt += f"\nAdditional context: {context.strip()}"
        return self._complete(prompt, Path(image_path).read_bytes())
