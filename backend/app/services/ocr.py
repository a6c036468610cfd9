"""OCR and text extraction service.

Uses the remote vision service for text and face detection. Deployments
without it can fall back to a local Tesseract install through Pillow and
pytesseract, which extracts text only.
"""

from __future__ import annotations

import base64
import io
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import httpx

from app.core.config import settings
from app.services.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)

VISION_FEATURES = ("TEXT_DETECTION", "DOCUMENT_TEXT_DETECTION", "FACE_DETECTION")


@dataclass
class TextExtraction:
    """Result of text extraction from a single document image."""

    text: str
    has_face: bool = False
    extraction_method: str = "none"
    warnings: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return len(self.text.strip()) == 0


class TextExtractor(Protocol):
    def extract(self, content: bytes, mime_type: str) -> TextExtraction: ...


class VisionTextExtractor:
    """Client for the remote ``images:annotate`` endpoint."""

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str,
        http_client: httpx.Client,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._http = http_client

    def extract(self, content: bytes, mime_type: str) -> TextExtraction:
        payload = {
            "requests": [
                {
                    "image": {"content": base64.b64encode(content).decode("ascii")},
                    "features": [{"type": feature} for feature in VISION_FEATURES],
                }
            ]
        }
        try:
            response = self._http.post(
                f"{self.base_url}/images:annotate",
                params={"key": self.api_key or ""},
                json=payload,
            )
        except httpx.HTTPError as exc:
            logger.exception("Vision API request failed")
            raise ExternalServiceError("vision", "Error processing document image") from exc

        if response.is_error:
            logger.error("Vision API returned status %s", response.status_code)
            raise ExternalServiceError("vision", "Error processing document image")

        try:
            body = response.json()
        except ValueError as exc:
            raise ExternalServiceError("vision", "Error processing document image") from exc

        annotations = _first_response(body)
        if "error" in annotations:
            logger.error("Vision API annotation error: %s", annotations["error"])
            raise ExternalServiceError("vision", "Error processing document image")

        text = (annotations.get("fullTextAnnotation") or {}).get("text") or ""
        has_face = len(annotations.get("faceAnnotations") or []) > 0
        return TextExtraction(
            text=text,
            has_face=has_face,
            extraction_method="vision_api",
            warnings=[] if text.strip() else ["Vision API returned no text"],
        )


class TesseractTextExtractor:
    """Local OCR through pytesseract. Face detection is not available."""

    def __init__(self, *, lang: str | None = None, tesseract_cmd: str | None = None) -> None:
        self.lang = lang or settings.TESSERACT_LANG
        _configure_tesseract(tesseract_cmd or settings.TESSERACT_CMD)

    def extract(self, content: bytes, mime_type: str) -> TextExtraction:
        import pytesseract
        from PIL import Image

        try:
            image = Image.open(io.BytesIO(content))
            # Convert to RGB if needed (e.g. RGBA PNGs)
            if image.mode not in ("L", "RGB"):
                image = image.convert("RGB")
            text = pytesseract.image_to_string(image, lang=self.lang).strip()
        except (OSError, pytesseract.TesseractError) as exc:
            logger.warning("Tesseract OCR failed: %s", exc)
            raise ExternalServiceError("tesseract", "Error processing document image") from exc

        return TextExtraction(
            text=text,
            has_face=False,
            extraction_method="tesseract_ocr",
            warnings=[] if text else ["Tesseract returned empty text"],
        )


def build_text_extractor(http_client: httpx.Client) -> TextExtractor:
    if settings.OCR_PROVIDER == "tesseract":
        return TesseractTextExtractor()
    return VisionTextExtractor(
        api_key=settings.VISION_API_KEY,
        base_url=settings.VISION_BASE_URL,
        http_client=http_client,
    )


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _first_response(body: Any) -> dict[str, Any]:
    if not isinstance(body, dict):
        return {}
    responses = body.get("responses") or [{}]
    first = responses[0]
    return first if isinstance(first, dict) else {}


def _configure_tesseract(tesseract_cmd: str | None) -> None:
    """Point pytesseract at an explicit binary; otherwise rely on PATH lookup."""
    import pytesseract

    if tesseract_cmd and Path(tesseract_cmd).is_file():
        pytesseract.pytesseract.tesseract_cmd = tesseract_cmd
        logger.info("Tesseract binary configured from settings: %s", tesseract_cmd)
    else:
        logger.debug("Tesseract not explicitly configured; relying on PATH lookup.")
