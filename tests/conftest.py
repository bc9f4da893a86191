"""Shared test fixtures for the TruckTrack webhook."""

from __future__ import annotations

import base64
import hashlib
import hmac as hmac_mod
import json
from decimal import Decimal
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import urlencode

import pytest

from trucktrack.audit.logger import AuditLogger
from trucktrack.db.store import MessageStore
from trucktrack.models import Currency, ExtractedReceiptData

TWILIO_AUTH_TOKEN = "twilio-test-token"
META_APP_SECRET = "meta-test-secret"
WEBHOOK_URL = "https://trucktrack.example.com/api/whatsapp/webhook"


@pytest.fixture
def store(tmp_path: Path):
    s = MessageStore(str(tmp_path / "trucktrack.db"))
    yield s
    s.close()


@pytest.fixture
def mock_audit_logger() -> MagicMock:
    return MagicMock(spec=AuditLogger)


def make_sender(can_send: bool = True, side_effect: Any = None) -> MagicMock:
    """A reply provider stand-in with an awaitable send_text."""
    sender = MagicMock()
    sender.can_send = can_send
    sender.send_text = AsyncMock(side_effect=side_effect)
    return sender


# --- Payload factories ---


def make_twilio_params(**kwargs: str) -> dict[str, str]:
    defaults = {
        "MessageSid": "SM123",
        "From": "whatsapp:+15551234567",
        "To": "whatsapp:+15550000000",
        "Body": "",
        "NumMedia": "0",
    }
    defaults.update(kwargs)
    return defaults


def make_twilio_image_params(media_url: str = "https://api.twilio.com/media/ME1.png") -> dict[str, str]:
    return make_twilio_params(
        NumMedia="1", MediaUrl0=media_url, MediaContentType0="image/png",
    )


def sign_twilio(params: dict[str, str], url: str = WEBHOOK_URL,
                token: str = TWILIO_AUTH_TOKEN) -> str:
    data = url + "".join(k + params[k] for k in sorted(params))
    digest = hmac_mod.new(token.encode(), data.encode(), hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


def encode_form(params: dict[str, str]) -> bytes:
    return urlencode(params).encode()


def make_meta_payload(
    message: dict[str, Any] | None = None,
    wa_id: str | None = "15557654321",
    include_messages: bool = True,
) -> dict[str, Any]:
    if message is None:
        message = {
            "from": "15557654321",
            "id": "wamid.1",
            "timestamp": "1700000000",
            "type": "text",
            "text": {"body": "hello"},
        }
    value: dict[str, Any] = {
        "messaging_product": "whatsapp",
        "metadata": {"phone_number_id": "PID"},
    }
    if wa_id is not None:
        value["contacts"] = [{"wa_id": wa_id, "profile": {"name": "Dana"}}]
    if include_messages:
        value["messages"] = [message]
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "BID", "changes": [{"value": value, "field": "messages"}]}],
    }


def make_meta_image_message(media_id: str = "MEDIA123", caption: str | None = None) -> dict[str, Any]:
    image: dict[str, Any] = {"id": media_id, "mime_type": "image/jpeg"}
    if caption is not None:
        image["caption"] = caption
    return {
        "from": "15557654321",
        "id": "wamid.2",
        "timestamp": "1700000000",
        "type": "image",
        "image": image,
    }


def encode_meta(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload).encode()


def sign_meta(body: bytes, secret: str = META_APP_SECRET) -> str:
    return "sha256=" + hmac_mod.new(secret.encode(), body, hashlib.sha256).hexdigest()


def make_receipt_data(**kwargs: Any) -> ExtractedReceiptData:
    defaults: dict[str, Any] = {
        "amount": Decimal("42.50"),
        "category": "Fuel",
        "currency": Currency.USD,
        "vendor": "PETRO-CANADA",
    }
    defaults.update(kwargs)
    return ExtractedReceiptData(**defaults)
