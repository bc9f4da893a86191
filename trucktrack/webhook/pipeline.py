"""Inbound receipt pipeline.

Stages, each awaited before the next starts:

1. Parse the body into a Twilio or Meta payload (400 if neither)
2. Verify the provider signature (403)
3. Normalise to one message shape (400 without a sender)
4. Record the InboundMessage
5. Text: prompt for a receipt. Image: re-host it, OCR it, and create an
   expense when amount and category were both read
6. Reply to the sender

Nothing is retried or rolled back. A failure after step 4 leaves the
message row holding whatever was written, plus the error text.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from trucktrack.audit.logger import AuditLogger
from trucktrack.currency import format_currency
from trucktrack.db.store import MessageStore
from trucktrack.models import (
    AuditEventType,
    ExtractedReceiptData,
    InboundMessage,
    MessageKind,
    ProcessingState,
    RiskLevel,
)
from trucktrack.ocr.vision import ReceiptProcessor
from trucktrack.webhook.media import ImageResolver
from trucktrack.webhook.models import (
    MissingPhoneNumberError,
    NormalizedMessage,
    PipelineResult,
    UnsupportedPayloadError,
)
from trucktrack.webhook.normalizer import normalize, parse_payload
from trucktrack.webhook.reply import ReplyDispatcher
from trucktrack.webhook.signature import SignatureVerifier

logger = logging.getLogger(__name__)

PROMPT_REPLY = "📸 Please send a receipt image to log an expense."
PARTIAL_REPLY = "⚠️ Receipt received but couldn't extract all details. Please add expense manually."
FAILURE_REPLY = "❌ Could not process receipt. Please try again or add manually."
IMAGE_FAILURE_REPLY = "❌ Could not process receipt image. Please try again or add manually."


def success_reply(data: ExtractedReceiptData, trip_name: str | None = None) -> str:
    if data.amount is None:
        raise ValueError("Cannot confirm a receipt without an amount")
    text = f"✅ {format_currency(data.amount, data.currency)} [{data.category}] logged"
    if trip_name:
        text += f" - Trip: {trip_name}"
    return text


@dataclass
class _Run:
    """Progress of a single webhook call."""

    trail: list[ProcessingState] = field(default_factory=lambda: [ProcessingState.RECEIVED])
    message_id: str | None = None

    def advance(self, state: ProcessingState) -> None:
        self.trail.append(state)

    def finish(self, status_code: int, body: dict[str, Any], state: ProcessingState | None = None) -> PipelineResult:
        if state is not None:
            self.advance(state)
        return PipelineResult(
            status_code=status_code,
            body=body,
            state=self.trail[-1],
            trail=list(self.trail),
            message_id=self.message_id,
        )


class ReceiptWebhookPipeline:
    def __init__(
        self,
        verifier: SignatureVerifier,
        store: MessageStore,
        resolver: ImageResolver,
        processor: ReceiptProcessor,
        replies: ReplyDispatcher,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._verifier = verifier
        self._store = store
        self._resolver = resolver
        self._processor = processor
        self._replies = replies
        self._audit = audit_logger

    async def handle(
        self,
        content_type: str | None,
        body: bytes,
        headers: Mapping[str, str],
        url: str,
        source_ip: str | None = None,
    ) -> PipelineResult:
        run = _Run()

        try:
            payload = parse_payload(content_type, body)
        except UnsupportedPayloadError as exc:
            self._audit_event(AuditEventType.PAYLOAD_REJECTED, "parse", "rejected",
                              RiskLevel.LOW, source_ip=source_ip, reason=str(exc))
            return run.finish(400, {"error": str(exc)})

        if not self._verifier.verify(payload, headers, url):
            logger.warning("Invalid %s webhook signature", payload.provider.value)
            self._audit_event(AuditEventType.SIGNATURE_REJECTED, "verify", "rejected",
                              RiskLevel.HIGH, source_ip=source_ip, provider=payload.provider.value)
            return run.finish(403, {"error": "Invalid signature"})
        run.advance(ProcessingState.VERIFIED)

        try:
            normalized = normalize(payload)
        except MissingPhoneNumberError as exc:
            self._audit_event(AuditEventType.PAYLOAD_REJECTED, "normalize", "rejected",
                              RiskLevel.LOW, source_ip=source_ip, reason=str(exc))
            return run.finish(400, {"error": "Missing phone number"})
        except UnsupportedPayloadError as exc:
            self._audit_event(AuditEventType.PAYLOAD_REJECTED, "normalize", "rejected",
                              RiskLevel.LOW, source_ip=source_ip, reason=str(exc))
            return run.finish(400, {"error": str(exc)})
        run.advance(ProcessingState.NORMALIZED)
        logger.info("Received WhatsApp message from %s, type: %s",
                    normalized.phone_number, normalized.kind.value)

        try:
            message = self._store.create_message(
                phone_number=normalized.phone_number,
                message_kind=normalized.kind,
                provider=normalized.provider,
                image_url=normalized.image_ref,
                raw_text=normalized.text_body,
            )
        except Exception:
            logger.exception("Failed to create WhatsApp message record")
            await self._replies.send(normalized.phone_number, FAILURE_REPLY)
            return run.finish(500, {"error": "Failed to create message record"},
                              ProcessingState.ERROR_REPLIED)
        run.message_id = message.id
        self._audit_event(AuditEventType.MESSAGE_RECEIVED, "receive", "success",
                          phone_number=message.phone_number, source_ip=source_ip,
                          message_id=message.id, kind=message.message_kind.value)

        try:
            if normalized.kind == MessageKind.IMAGE and normalized.image_ref:
                return await self._process_image(run, message, normalized, normalized.image_ref)

            logger.info("Text message received: %s", normalized.text_body)
            await self._replies.send(normalized.phone_number, PROMPT_REPLY)
            return run.finish(200, {"status": "success", "message": "Text message received"},
                              ProcessingState.REPLIED_PROMPT)
        except Exception as exc:
            logger.exception("Error processing WhatsApp webhook")
            self._record_error(message.id, str(exc))
            await self._replies.send(normalized.phone_number, FAILURE_REPLY)
            return run.finish(500, {"error": "Internal server error"}, ProcessingState.ERROR_REPLIED)

    async def _process_image(
        self,
        run: _Run,
        message: InboundMessage,
        normalized: NormalizedMessage,
        image_ref: str,
    ) -> PipelineResult:
        phone = normalized.phone_number

        try:
            stored = await self._resolver.fetch_and_store(
                message.id, image_ref, normalized.provider,
            )
            self._store.update_message(message.id, image_url=stored.public_url)
            run.advance(ProcessingState.IMAGE_RESOLVED)

            logger.info("Processing image with OCR: %s", stored.public_url)
            data = await self._processor.process(stored.public_url)
            self._store.update_message(message.id, extracted_data=data)
            run.advance(ProcessingState.OCR_DONE)
        except Exception as exc:
            logger.exception("Error processing image for message %s", message.id)
            self._record_error(message.id, str(exc) or type(exc).__name__)
            self._audit_event(AuditEventType.PROCESSING_FAILED, "process_image", "failure",
                              RiskLevel.MEDIUM, phone_number=phone,
                              message_id=message.id, error=str(exc))
            await self._replies.send(phone, IMAGE_FAILURE_REPLY)
            return run.finish(500, {"error": "Failed to process image"}, ProcessingState.ERROR_REPLIED)

        if not data.is_complete:
            logger.warning("OCR did not extract required data (amount and category)")
            run.advance(ProcessingState.PARTIAL)
            self._audit_event(AuditEventType.RECEIPT_PARTIAL, "ocr", "partial",
                              phone_number=phone, message_id=message.id)
            await self._replies.send(phone, PARTIAL_REPLY)
            return run.finish(
                200,
                {"status": "partial", "message": "Image processed but insufficient data"},
                ProcessingState.REPLIED,
            )

        try:
            expense = self._store.process_message(message.id, data)
            run.advance(ProcessingState.AUTO_LINKED)
            trip = self._store.get_trip(expense.trip_id) if expense.trip_id else None
        except Exception as exc:
            logger.exception("Error creating expense for message %s", message.id)
            self._record_error(message.id, str(exc))
            self._audit_event(AuditEventType.PROCESSING_FAILED, "create_expense", "failure",
                              RiskLevel.MEDIUM, phone_number=phone,
                              message_id=message.id, error=str(exc))
            await self._replies.send(phone, FAILURE_REPLY)
            return run.finish(500, {"error": "Failed to process receipt"}, ProcessingState.ERROR_REPLIED)

        self._audit_event(AuditEventType.EXPENSE_CREATED, "create_expense", "success",
                          phone_number=phone, message_id=message.id,
                          expense_id=expense.id, trip_id=expense.trip_id)
        await self._replies.send(phone, success_reply(data, trip.name if trip else None))
        return run.finish(
            200,
            {
                "status": "success",
                "message": "Receipt processed and expense created",
                "expense_id": expense.id,
            },
            ProcessingState.REPLIED,
        )

    def _record_error(self, message_id: str, error: str) -> None:
        """Store the error on the message; the original failure still wins."""
        try:
            self._store.update_message(message_id, error_message=error)
        except Exception:
            logger.exception("Could not record error on message %s", message_id)

    def _audit_event(
        self,
        event_type: AuditEventType,
        action: str,
        result: str,
        risk_level: RiskLevel = RiskLevel.INFO,
        phone_number: str | None = None,
        source_ip: str | None = None,
        **details: object,
    ) -> None:
        if self._audit:
            self._audit.record(
                event_type, action, result, risk_level,
                phone_number=phone_number, source_ip=source_ip, **details,
            )
