"""Twilio WhatsApp integration: signatures, inbound parsing and replies."""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from collections.abc import Mapping

import httpx

from trucktrack.config import TwilioConfig
from trucktrack.models import MessageKind, Provider
from trucktrack.webhook.models import NormalizedMessage, TwilioPayload
from trucktrack.webhook.phone import normalize_phone_number

logger = logging.getLogger(__name__)

_TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"

SIGNATURE_HEADER = "x-twilio-signature"


class TwilioSendError(Exception):
    """Raised when Twilio refuses or fails to send a message."""

    pass


def compute_signature(auth_token: str, url: str, params: Mapping[str, str]) -> str:
    """Twilio request signature: base64 HMAC-SHA1 of the URL followed by
    every parameter as key+value, keys in sorted order.
    """
    data = url + "".join(key + params[key] for key in sorted(params))
    digest = hmac.new(auth_token.encode(), data.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


def verify_signature(
    auth_token: str, signature: str | None, url: str, params: Mapping[str, str],
) -> bool:
    if not signature:
        return False
    expected = compute_signature(auth_token, url, params)
    return hmac.compare_digest(signature.encode(), expected.encode())


def extract_message(payload: TwilioPayload) -> NormalizedMessage | None:
    """Read sender, body and the first media item. None if no sender."""
    params = payload.params
    sender = params.get("From")
    phone = normalize_phone_number(sender) if sender else ""
    if not phone:
        return None

    try:
        num_media = int(params.get("NumMedia") or "0")
    except ValueError:
        num_media = 0

    media_url = params.get("MediaUrl0")
    kind = MessageKind.IMAGE if num_media > 0 and media_url else MessageKind.TEXT
    return NormalizedMessage(
        provider=Provider.TWILIO,
        phone_number=phone,
        kind=kind,
        image_ref=media_url if kind == MessageKind.IMAGE else None,
        text_body=params.get("Body") or None,
        provider_message_id=params.get("MessageSid"),
    )


class TwilioClient:
    """Outbound calls to the Twilio REST API."""

    def __init__(self, config: TwilioConfig) -> None:
        self._config = config

    @property
    def can_send(self) -> bool:
        return self._config.can_send

    def _auth(self) -> httpx.BasicAuth | None:
        if self._config.account_sid and self._config.auth_token:
            return httpx.BasicAuth(self._config.account_sid, self._config.auth_token)
        return None

    async def send_text(self, phone_number: str, text: str) -> None:
        """Send a WhatsApp text through the Messages resource."""
        if not self.can_send:
            raise TwilioSendError("Twilio is not configured for sending")

        url = f"{_TWILIO_API_BASE}/Accounts/{self._config.account_sid}/Messages.json"
        form = {
            "From": f"whatsapp:{self._config.whatsapp_number}",
            "To": f"whatsapp:+{phone_number.lstrip('+')}",
            "Body": text,
        }
        async with httpx.AsyncClient(verify=True) as client:
            resp = await client.post(url, data=form, auth=self._auth(), timeout=30.0)

        if resp.status_code >= 300:
            logger.error("Twilio API error: %s %s", resp.status_code, resp.text)
            raise TwilioSendError(f"Twilio API error: {resp.status_code}")

    async def download_media(self, media_url: str) -> httpx.Response:
        """Fetch a media URL; Twilio media needs the account credentials."""
        async with httpx.AsyncClient(verify=True, follow_redirects=True) as client:
            return await client.get(media_url, auth=self._auth(), timeout=30.0)
