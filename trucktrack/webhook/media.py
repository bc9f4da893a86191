"""Receipt image retrieval: resolve the provider reference, download, re-host."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx

from trucktrack.models import Provider
from trucktrack.storage.storage import ObjectStorage
from trucktrack.webhook.meta import MetaApiError, MetaClient
from trucktrack.webhook.twilio import TwilioClient

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION = "jpg"

_EXTENSION = re.compile(r"[a-z0-9]{1,5}")
_RECEIPT_PATH = re.compile(
    r"^receipts/whatsapp-(?P<message_id>.+)-(?P<timestamp>\d+)\.(?P<ext>[a-z0-9]{1,5})$",
)


class MediaResolutionError(Exception):
    """Raised when a receipt image cannot be located or downloaded."""

    pass


@dataclass(frozen=True)
class ReceiptPath:
    message_id: str
    timestamp_ms: int
    extension: str


@dataclass(frozen=True)
class StoredImage:
    source_url: str
    storage_path: str
    public_url: str


def infer_extension(url: str) -> str:
    """Extension of the URL's last path segment, or ``jpg``."""
    segment = urlparse(url).path.rsplit("/", 1)[-1]
    if "." in segment:
        ext = segment.rsplit(".", 1)[1].lower()
        if _EXTENSION.fullmatch(ext):
            return ext
    return DEFAULT_EXTENSION


def build_receipt_path(message_id: str, timestamp_ms: int, extension: str) -> str:
    return f"receipts/whatsapp-{message_id}-{timestamp_ms}.{extension}"


def parse_receipt_path(path: str) -> ReceiptPath:
    match = _RECEIPT_PATH.match(path)
    if match is None:
        raise ValueError(f"Not a receipt path: {path}")
    return ReceiptPath(
        message_id=match["message_id"],
        timestamp_ms=int(match["timestamp"]),
        extension=match["ext"],
    )


def _now_ms() -> int:
    return int(time.time() * 1000)


class ImageResolver:
    """Turns a provider image reference into a URL in our own storage."""

    def __init__(
        self,
        twilio_client: TwilioClient,
        meta_client: MetaClient,
        storage: ObjectStorage,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._twilio = twilio_client
        self._meta = meta_client
        self._storage = storage
        self._clock = clock

    async def resolve_url(self, image_ref: str, provider: Provider) -> str:
        if image_ref.startswith("http"):
            return image_ref
        if provider != Provider.META:
            raise MediaResolutionError(f"Cannot resolve {provider.value} image reference: {image_ref}")

        logger.info("Fetching Meta image URL for id %s", image_ref)
        try:
            return await self._meta.resolve_media_url(image_ref)
        except MetaApiError as exc:
            raise MediaResolutionError(str(exc)) from exc

    async def download(self, url: str, provider: Provider) -> tuple[bytes, str]:
        try:
            if provider == Provider.META:
                resp = await self._meta.download_media(url)
            else:
                resp = await self._twilio.download_media(url)
        except (MetaApiError, httpx.HTTPError) as exc:
            raise MediaResolutionError(f"Failed to download image: {exc}") from exc

        if resp.status_code >= 300:
            raise MediaResolutionError(f"Failed to download image: {resp.status_code}")
        content_type = resp.headers.get("content-type", "image/jpeg").split(";", 1)[0]
        return resp.content, content_type

    async def fetch_and_store(
        self, message_id: str, image_ref: str, provider: Provider,
    ) -> StoredImage:
        source_url = await self.resolve_url(image_ref, provider)
        logger.info("Downloading image from %s", source_url)
        content, content_type = await self.download(source_url, provider)

        path = build_receipt_path(message_id, self._clock(), infer_extension(source_url))
        logger.info("Uploading image to storage: %s", path)
        public_url = await self._storage.upload(path, content, content_type)
        return StoredImage(source_url=source_url, storage_path=path, public_url=public_url)
