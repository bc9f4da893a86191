"""Parse raw webhook requests into a provider payload, then a NormalizedMessage.

Parsing fails closed: a content type other than form-encoded (Twilio) or
JSON (Meta) is rejected before any provider-specific code runs.
"""

from __future__ import annotations

import json
from urllib.parse import parse_qsl

from trucktrack.webhook import meta, twilio
from trucktrack.webhook.models import (
    MetaPayload,
    MissingPhoneNumberError,
    NormalizedMessage,
    TwilioPayload,
    UnsupportedPayloadError,
    WebhookPayload,
)

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
JSON_CONTENT_TYPE = "application/json"


def parse_payload(content_type: str | None, body: bytes) -> WebhookPayload:
    media_type = (content_type or "").split(";", 1)[0].strip().lower()

    if media_type == FORM_CONTENT_TYPE:
        try:
            pairs = parse_qsl(body.decode("utf-8"), keep_blank_values=True, strict_parsing=False)
        except UnicodeDecodeError as exc:
            raise UnsupportedPayloadError("Form body is not valid UTF-8") from exc
        return TwilioPayload(params=dict(pairs))

    if media_type == JSON_CONTENT_TYPE:
        try:
            data = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise UnsupportedPayloadError("Invalid JSON body") from exc
        if not isinstance(data, dict):
            raise UnsupportedPayloadError("JSON body must be an object")
        return MetaPayload(data=data, raw_body=body)

    raise UnsupportedPayloadError(f"Unsupported content type: {content_type or 'none'}")


def normalize(payload: WebhookPayload) -> NormalizedMessage:
    if isinstance(payload, TwilioPayload):
        message = twilio.extract_message(payload)
    elif isinstance(payload, MetaPayload):
        message = meta.extract_message(payload)
    else:
        raise UnsupportedPayloadError(f"Unknown payload type: {type(payload).__name__}")

    if message is None:
        raise MissingPhoneNumberError("Missing phone number")
    return message
