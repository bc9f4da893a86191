"""Data models for the inbound webhook pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from trucktrack.models import MessageKind, ProcessingState, Provider


@dataclass(frozen=True)
class TwilioPayload:
    """Form-encoded Twilio webhook, kept as the flat parameter map it was signed over."""

    params: dict[str, str]
    provider: Literal[Provider.TWILIO] = Provider.TWILIO


@dataclass(frozen=True)
class MetaPayload:
    """JSON Meta webhook plus the exact bytes its signature covers."""

    data: dict[str, Any]
    raw_body: bytes
    provider: Literal[Provider.META] = Provider.META


WebhookPayload = TwilioPayload | MetaPayload


class UnsupportedPayloadError(ValueError):
    """Raised when a request body is not a recognised provider payload."""

    pass


class MissingPhoneNumberError(UnsupportedPayloadError):
    """Raised when a payload has no message or no resolvable sender."""

    pass


@dataclass(frozen=True)
class NormalizedMessage:
    """One inbound message in provider-neutral form."""

    provider: Provider
    phone_number: str
    kind: MessageKind
    image_ref: str | None = None
    text_body: str | None = None
    provider_message_id: str | None = None


@dataclass
class PipelineResult:
    """Outcome of one webhook call: the HTTP reply plus how far processing got."""

    status_code: int
    body: dict[str, Any]
    state: ProcessingState
    trail: list[ProcessingState] = field(default_factory=list)
    message_id: str | None = None
