"""Shared Pydantic data models for the TruckTrack receipt webhook."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

# --- Enums ---


class Currency(str, Enum):
    USD = "USD"
    CAD = "CAD"


class Provider(str, Enum):
    TWILIO = "twilio"
    META = "meta"


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"


class ProcessingState(str, Enum):
    """States an inbound webhook call passes through."""

    RECEIVED = "received"
    VERIFIED = "verified"
    NORMALIZED = "normalized"
    REPLIED_PROMPT = "replied-prompt"
    IMAGE_RESOLVED = "image-resolved"
    OCR_DONE = "ocr-done"
    AUTO_LINKED = "auto-linked"
    PARTIAL = "partial"
    REPLIED = "replied"
    ERROR_REPLIED = "error-replied"


class AuditEventType(str, Enum):
    SIGNATURE_REJECTED = "signature_rejected"
    PAYLOAD_REJECTED = "payload_rejected"
    MESSAGE_RECEIVED = "message_received"
    EXPENSE_CREATED = "expense_created"
    RECEIPT_PARTIAL = "receipt_partial"
    PROCESSING_FAILED = "processing_failed"
    REPLY_FAILED = "reply_failed"
    VERIFICATION_CHALLENGE = "verification_challenge"


class RiskLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


# --- Receipt Models ---


class ExtractedReceiptData(BaseModel):
    """Structured fields read off a receipt image."""

    model_config = ConfigDict(frozen=True)

    amount: Decimal | None = None
    category: str | None = None
    currency: Currency = Currency.USD
    vendor: str | None = None
    date: str | None = None  # ISO8601
    location: str | None = None

    @property
    def is_complete(self) -> bool:
        """True when there is enough to create an expense automatically."""
        return bool(self.amount) and bool(self.category)


# --- Persistence Models ---


class InboundMessage(BaseModel):
    """A received WhatsApp message, updated in place as processing proceeds."""

    id: str
    phone_number: str
    message_kind: MessageKind
    provider: Provider
    image_url: str | None = None
    raw_text: str | None = None
    extracted_data: ExtractedReceiptData | None = None
    error_message: str | None = None
    expense_id: str | None = None
    trip_id: str | None = None
    processed: bool = False
    created_at: str


class Expense(BaseModel):
    id: str
    category: str
    description: str
    amount: Decimal
    original_currency: Currency
    date: str
    unit_id: str | None = None
    trip_id: str | None = None
    driver_id: str | None = None
    vendor_name: str | None = None
    receipt_url: str | None = None
    created_at: str


class Driver(BaseModel):
    id: str
    name: str
    phone: str | None = None
    is_active: bool = True
    created_at: str


class Trip(BaseModel):
    id: str
    name: str
    trip_number: str
    start_date: str
    end_date: str
    status: str = "upcoming"  # "upcoming" | "ongoing" | "completed"
    driver_id: str | None = None
    unit_id: str | None = None


# --- Audit Models ---


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class AuditEvent(BaseModel):
    timestamp: str = Field(default_factory=_now_iso)
    event_type: AuditEventType
    source_ip: str | None = None
    phone_number: str | None = None
    action: str
    result: str  # "success" | "failure" | "rejected" | "partial"
    risk_level: RiskLevel
    details: dict[str, object] | None = None
