"""Receipt OCR through the Google Cloud Vision text detection API."""

from __future__ import annotations

import base64
import logging
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import unquote, urlparse

import httpx

from trucktrack.models import ExtractedReceiptData
from trucktrack.ocr.extraction import extract_receipt_data

logger = logging.getLogger(__name__)

VISION_API_URL = "https://vision.googleapis.com/v1/images:annotate"


class ReceiptProcessingError(Exception):
    """Raised when the OCR service cannot read a receipt image."""

    pass


class ReceiptProcessor(Protocol):
    async def process(self, image_url: str) -> ExtractedReceiptData:
        """Read structured receipt fields from the image at image_url."""
        ...


class VisionReceiptProcessor:
    """Downloads a stored receipt image and runs Vision TEXT_DETECTION on it.

    Without an API key every receipt comes back empty, which the webhook
    pipeline reports as a partial result rather than a failure.
    """

    def __init__(self, api_key: str | None) -> None:
        self._api_key = api_key

    async def process(self, image_url: str) -> ExtractedReceiptData:
        if not self._api_key:
            logger.warning(
                "Google Cloud Vision API key not configured; "
                "set GOOGLE_CLOUD_VISION_API_KEY to enable receipt OCR",
            )
            return ExtractedReceiptData()

        content = await self._download(image_url)
        text_blocks = await self._detect_text(base64.b64encode(content).decode())
        if not text_blocks:
            logger.warning("No text detected in receipt image %s", image_url)
            return ExtractedReceiptData()

        return extract_receipt_data(text_blocks)

    async def _download(self, image_url: str) -> bytes:
        parsed = urlparse(image_url)
        if parsed.scheme == "file":
            try:
                return Path(unquote(parsed.path)).read_bytes()
            except OSError as exc:
                raise ReceiptProcessingError(f"Failed to read image: {exc}") from exc

        async with httpx.AsyncClient(verify=True) as client:
            resp = await client.get(image_url, timeout=30.0)
        if resp.status_code >= 300:
            raise ReceiptProcessingError(f"Failed to download image: {resp.status_code}")
        return resp.content

    async def _detect_text(self, image_b64: str) -> list[str]:
        body = {
            "requests": [
                {
                    "image": {"content": image_b64},
                    "features": [{"type": "TEXT_DETECTION", "maxResults": 10}],
                },
            ],
        }
        async with httpx.AsyncClient(verify=True) as client:
            resp = await client.post(
                VISION_API_URL, params={"key": self._api_key}, json=body, timeout=60.0,
            )

        if resp.status_code >= 300:
            logger.error("Vision API error: %s %s", resp.status_code, resp.text)
            raise ReceiptProcessingError(f"Vision API error: {resp.status_code}")

        try:
            responses: list[dict[str, Any]] = resp.json()["responses"]
            annotations = responses[0].get("textAnnotations") or []
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ReceiptProcessingError("Invalid response from Vision API") from exc

        # First annotation is the full text, the rest are individual blocks
        return [a.get("description", "") for a in annotations]
