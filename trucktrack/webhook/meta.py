"""Meta WhatsApp Cloud API integration.

Covers HMAC verification of webhook bodies, the subscription handshake,
message extraction, media id lookup and text replies.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from collections.abc import Mapping
from typing import Any

import httpx

from trucktrack.config import MetaConfig
from trucktrack.models import MessageKind, Provider
from trucktrack.webhook.models import MetaPayload, NormalizedMessage, UnsupportedPayloadError
from trucktrack.webhook.phone import normalize_phone_number

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-hub-signature-256"
_SIGNATURE_PREFIX = "sha256="


class MetaApiError(Exception):
    """Raised when a Graph API call fails."""

    pass


class InvalidChallengeError(ValueError):
    """Raised when a subscription challenge is not a number."""

    pass


def verify_signature(app_secret: str, signature: str | None, body: bytes) -> bool:
    """Check ``X-Hub-Signature-256`` against HMAC-SHA256 of the raw body."""
    if not signature:
        return False
    expected = hmac.new(app_secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature.removeprefix(_SIGNATURE_PREFIX).encode(), expected.encode())


def handle_verification(params: Mapping[str, str], verify_token: str | None) -> int | None:
    """Answer Meta's GET subscription handshake.

    Returns the challenge as an int when the request is a subscribe with the
    configured token, None when it is not a subscribe request at all.
    Raises PermissionError on a token mismatch and InvalidChallengeError on a
    non-numeric challenge.
    """
    if params.get("hub.mode") != "subscribe":
        return None

    token = params.get("hub.verify_token", "")
    if not verify_token or not hmac.compare_digest(token.encode(), verify_token.encode()):
        raise PermissionError("Invalid verify token")

    challenge = params.get("hub.challenge", "")
    if not (challenge.isascii() and challenge.isdecimal()):
        raise InvalidChallengeError(f"Challenge is not numeric: {challenge!r}")
    return int(challenge)


def _first(items: Any) -> dict[str, Any] | None:
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return None


def _object_field(message: dict[str, Any], name: str) -> dict[str, Any]:
    value = message.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise UnsupportedPayloadError(f"Meta message field {name!r} must be an object")
    return value


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None

def extract_message(payload: MetaPayload) -> NormalizedMessage | None:
    """Read ``entry[0].changes[0].value.messages[0]`` and its contact.

    Returns None when the payload holds no message (e.g. a status update)
    or no sender can be found.
    """
    entry = _first(payload.data.get("entry"))
    change = _first(entry.get("changes")) if entry else None
    value = change.get("value") if change else None
    if not isinstance(value, dict):
        return None

    message = _first(value.get("messages"))
    if message is None:
        return None
    contact = _first(value.get("contacts")) or {}

    sender = contact.get("wa_id") or message.get("from") or ""
    phone = normalize_phone_number(str(sender))
    if not phone:
        return None

    msg_type = message.get("type")
    image = _object_field(message, "image")
    if msg_type == "image" and image.get("id"):
        if not isinstance(image["id"], str):
            raise UnsupportedPayloadError("Meta image id must be a string")
        return NormalizedMessage(
            provider=Provider.META,
            phone_number=phone,
            kind=MessageKind.IMAGE,
            image_ref=image["id"],
            text_body=_text(image.get("caption")),
            provider_message_id=message.get("id"),
        )

    text = _object_field(message, "text")
    return NormalizedMessage(
        provider=Provider.META,
        phone_number=phone,
        kind=MessageKind.TEXT,
        text_body=_text(text.get("body")) if msg_type == "text" else None,
        provider_message_id=message.get("id"),
    )


class MetaClient:
    """Outbound Graph API calls."""

    def __init__(self, config: MetaConfig) -> None:
        self._config = config

    @property
    def can_send(self) -> bool:
        return self._config.can_send

    def _headers(self) -> dict[str, str]:
        if not self._config.access_token:
            raise MetaApiError("META_ACCESS_TOKEN not configured")
        return {"Authorization": f"Bearer {self._config.access_token}"}

    async def resolve_media_url(self, media_id: str) -> str:
        """Exchange an opaque media id for its download URL."""
        url = f"{self._config.graph_api_base}/{media_id}"
        async with httpx.AsyncClient(verify=True) as client:
            resp = await client.get(url, headers=self._headers(), timeout=30.0)

        if resp.status_code >= 300:
            logger.error("Meta media lookup failed: %s %s", resp.status_code, resp.text)
            raise MetaApiError(f"Failed to fetch Meta image URL: {resp.status_code}")

        media_url = resp.json().get("url")
        if not media_url:
            raise MetaApiError("Meta media lookup returned no URL")
        return str(media_url)

    async def download_media(self, media_url: str) -> httpx.Response:
        """Meta media URLs require the same bearer token as the API."""
        async with httpx.AsyncClient(verify=True, follow_redirects=True) as client:
            return await client.get(media_url, headers=self._headers(), timeout=30.0)

    async def send_text(self, phone_number: str, text: str) -> None:
        if not self.can_send:
            raise MetaApiError("Meta is not configured for sending")

        url = f"{self._config.graph_api_base}/{self._config.phone_number_id}/messages"
        payload = {
            "messaging_product": "whatsapp",
            "to": phone_number,
            "type": "text",
            "text": {"body": text},
        }
        async with httpx.AsyncClient(verify=True) as client:
            resp = await client.post(url, json=payload, headers=self._headers(), timeout=30.0)

        if resp.status_code >= 300:
            logger.error("Meta API error: %s %s", resp.status_code, resp.text)
            raise MetaApiError(f"Meta API error: {resp.status_code}")
