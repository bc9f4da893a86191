"""Tests for the inbound receipt pipeline."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from tests.conftest import (
    META_APP_SECRET,
    TWILIO_AUTH_TOKEN,
    WEBHOOK_URL,
    encode_form,
    encode_meta,
    make_meta_image_message,
    make_meta_payload,
    make_receipt_data,
    make_sender,
    make_twilio_image_params,
    make_twilio_params,
    sign_meta,
    sign_twilio,
)
from trucktrack.config import SignatureVerificationMode
from trucktrack.models import AuditEventType, Currency, ExtractedReceiptData, ProcessingState, Provider
from trucktrack.webhook.media import MediaResolutionError, StoredImage
from trucktrack.webhook.pipeline import (
    FAILURE_REPLY,
    IMAGE_FAILURE_REPLY,
    PARTIAL_REPLY,
    PROMPT_REPLY,
    ReceiptWebhookPipeline,
    success_reply,
)
from trucktrack.webhook.reply import ReplyDispatcher
from trucktrack.webhook.signature import SignatureVerifier

FORM = "application/x-www-form-urlencoded"
STORED_URL = "https://store/receipts/whatsapp-x-1.png"


@pytest.fixture
def sender() -> MagicMock:
    return make_sender()


@pytest.fixture
def resolver() -> MagicMock:
    r = MagicMock()
    r.fetch_and_store = AsyncMock(
        return_value=StoredImage(
            source_url="https://api.twilio.com/media/ME1.png",
            storage_path="receipts/whatsapp-x-1.png",
            public_url=STORED_URL,
        ),
    )
    return r


@pytest.fixture
def processor() -> MagicMock:
    p = MagicMock()
    p.process = AsyncMock(return_value=make_receipt_data())
    return p


@pytest.fixture
def pipeline(store, resolver, processor, sender, mock_audit_logger) -> ReceiptWebhookPipeline:
    return ReceiptWebhookPipeline(
        verifier=SignatureVerifier(
            SignatureVerificationMode.ENFORCED,
            twilio_auth_token=TWILIO_AUTH_TOKEN,
            meta_app_secret=META_APP_SECRET,
        ),
        store=store,
        resolver=resolver,
        processor=processor,
        replies=ReplyDispatcher([(Provider.TWILIO, sender)]),
        audit_logger=mock_audit_logger,
    )


async def _post_twilio(pipeline: ReceiptWebhookPipeline, params: dict[str, str], signature: str | None = None):
    headers = {"x-twilio-signature": signature or sign_twilio(params)}
    return await pipeline.handle(FORM, encode_form(params), headers, WEBHOOK_URL)


def _audited(mock_audit_logger: MagicMock) -> list[AuditEventType]:
    return [c.args[0] for c in mock_audit_logger.record.call_args_list]


class TestSuccessReply:
    def test_with_trip(self) -> None:
        assert success_reply(make_receipt_data(), "Toronto run") == "✅ $42.50 [Fuel] logged - Trip: Toronto run"

    def test_cad_without_trip(self) -> None:
        assert success_reply(make_receipt_data(currency=Currency.CAD)) == "✅ CA$42.50 [Fuel] logged"

    def test_requires_amount(self) -> None:
        with pytest.raises(ValueError):
            success_reply(ExtractedReceiptData(category="Fuel"))


class TestRejections:
    @pytest.mark.asyncio
    async def test_unparseable_body_is_400(self, pipeline, store) -> None:
        result = await pipeline.handle("text/plain", b"hello", {}, WEBHOOK_URL)
        assert result.status_code == 400
        assert store.snapshot()["whatsapp_messages"] == 0

    @pytest.mark.asyncio
    async def test_tampered_signature_is_403_and_records_nothing(
        self, pipeline, store, sender, mock_audit_logger,
    ) -> None:
        params = make_twilio_image_params()
        signature = sign_twilio(params)
        params["Body"] = "tampered"

        result = await _post_twilio(pipeline, params, signature)

        assert result.status_code == 403
        assert result.body == {"error": "Invalid signature"}
        assert store.snapshot() == {"whatsapp_messages": 0, "expenses": 0, "drivers": 0, "trips": 0}
        sender.send_text.assert_not_called()
        assert _audited(mock_audit_logger) == [AuditEventType.SIGNATURE_REJECTED]

    @pytest.mark.asyncio
    async def test_missing_signature_header_is_403(self, pipeline) -> None:
        params = make_twilio_params()
        result = await pipeline.handle(FORM, encode_form(params), {}, WEBHOOK_URL)
        assert result.status_code == 403

    @pytest.mark.asyncio
    async def test_meta_without_messages_is_400(self, pipeline, store) -> None:
        body = encode_meta(make_meta_payload(include_messages=False))
        result = await pipeline.handle(
            "application/json", body, {"x-hub-signature-256": sign_meta(body)}, WEBHOOK_URL,
        )
        assert result.status_code == 400
        assert result.body == {"error": "Missing phone number"}
        assert result.trail == [ProcessingState.RECEIVED, ProcessingState.VERIFIED]
        assert store.snapshot()["whatsapp_messages"] == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "message",
        [
            {"from": "15557654321", "id": "w", "type": "text", "text": "hello"},
            {"from": "15557654321", "id": "w", "type": "image", "image": "MEDIA1"},
        ],
    )
    async def test_malformed_meta_message_is_400(
        self, pipeline, store, resolver, mock_audit_logger, message: dict,
    ) -> None:
        body = encode_meta(make_meta_payload(message))
        result = await pipeline.handle(
            "application/json", body, {"x-hub-signature-256": sign_meta(body)}, WEBHOOK_URL,
        )
        assert result.status_code == 400
        assert "must be an object" in result.body["error"]
        assert store.snapshot()["whatsapp_messages"] == 0
        resolver.fetch_and_store.assert_not_called()
        assert _audited(mock_audit_logger) == [AuditEventType.PAYLOAD_REJECTED]

    @pytest.mark.asyncio
    async def test_development_mode_accepts_unsigned(self, store, resolver, processor, sender) -> None:
        pipeline = ReceiptWebhookPipeline(
            verifier=SignatureVerifier(SignatureVerificationMode.DISABLED_FOR_DEVELOPMENT),
            store=store,
            resolver=resolver,
            processor=processor,
            replies=ReplyDispatcher([(Provider.TWILIO, sender)]),
        )
        result = await pipeline.handle(FORM, encode_form(make_twilio_params(Body="hi")), {}, WEBHOOK_URL)
        assert result.status_code == 200


class TestTextMessages:
    @pytest.mark.asyncio
    async def test_text_prompts_for_receipt(self, pipeline, store, sender) -> None:
        result = await _post_twilio(pipeline, make_twilio_params(Body="hi"))

        assert result.status_code == 200
        assert result.body == {"status": "success", "message": "Text message received"}
        assert result.state == ProcessingState.REPLIED_PROMPT
        sender.send_text.assert_awaited_once_with("15551234567", PROMPT_REPLY)
        [message] = store.list_messages()
        assert message.raw_text == "hi"
        assert message.processed is False

    @pytest.mark.asyncio
    async def test_meta_text_is_signed_over_raw_body(self, pipeline, store) -> None:
        body = encode_meta(make_meta_payload())
        result = await pipeline.handle(
            "application/json", body, {"x-hub-signature-256": sign_meta(body)}, WEBHOOK_URL,
        )
        assert result.status_code == 200
        [message] = store.list_messages()
        assert message.provider == Provider.META
        assert message.phone_number == "15557654321"


class TestImageMessages:
    @pytest.mark.asyncio
    async def test_complete_receipt_creates_expense(
        self, pipeline, store, resolver, processor, sender, mock_audit_logger,
    ) -> None:
        result = await _post_twilio(pipeline, make_twilio_image_params())

        assert result.status_code == 200
        assert result.body["status"] == "success"
        assert ProcessingState.AUTO_LINKED in result.trail
        assert result.state == ProcessingState.REPLIED
        assert result.trail == [
            ProcessingState.RECEIVED,
            ProcessingState.VERIFIED,
            ProcessingState.NORMALIZED,
            ProcessingState.IMAGE_RESOLVED,
            ProcessingState.OCR_DONE,
            ProcessingState.AUTO_LINKED,
            ProcessingState.REPLIED,
        ]

        resolver.fetch_and_store.assert_awaited_once_with(
            result.message_id, "https://api.twilio.com/media/ME1.png", Provider.TWILIO,
        )
        processor.process.assert_awaited_once_with(STORED_URL)

        message = store.get_message(result.message_id)
        assert message.processed is True
        assert message.image_url == STORED_URL
        assert message.expense_id == result.body["expense_id"]
        [expense] = store.list_expenses()
        assert expense.id == message.expense_id

        reply = sender.send_text.await_args.args[1]
        assert "$42.50" in reply
        assert "Fuel" in reply
        assert AuditEventType.EXPENSE_CREATED in _audited(mock_audit_logger)

    @pytest.mark.asyncio
    async def test_reply_names_the_drivers_trip(self, pipeline, store, sender) -> None:
        driver = store.add_driver("Sam", phone="+1 555 123 4567")
        store.add_trip("Toronto run", "2026-01-01", "2026-01-05", driver_id=driver.id, status="ongoing")

        await _post_twilio(pipeline, make_twilio_image_params())

        assert sender.send_text.await_args.args[1] == "✅ $42.50 [Fuel] logged - Trip: Toronto run"

    @pytest.mark.asyncio
    async def test_incomplete_receipt_is_partial(self, pipeline, store, processor, sender) -> None:
        processor.process.return_value = ExtractedReceiptData(vendor="Somewhere")

        result = await _post_twilio(pipeline, make_twilio_image_params())

        assert result.status_code == 200
        assert result.body["status"] == "partial"
        assert ProcessingState.PARTIAL in result.trail
        sender.send_text.assert_awaited_once_with("15551234567", PARTIAL_REPLY)
        assert "couldn't extract all details" in PARTIAL_REPLY
        message = store.get_message(result.message_id)
        assert message.processed is False
        assert message.extracted_data.vendor == "Somewhere"
        assert store.snapshot()["expenses"] == 0

    @pytest.mark.asyncio
    async def test_image_failure_is_500_with_error_recorded(
        self, pipeline, store, resolver, processor, sender,
    ) -> None:
        resolver.fetch_and_store.side_effect = MediaResolutionError("Failed to download image: 404")

        result = await _post_twilio(pipeline, make_twilio_image_params())

        assert result.status_code == 500
        assert result.body == {"error": "Failed to process image"}
        assert result.state == ProcessingState.ERROR_REPLIED
        processor.process.assert_not_called()
        sender.send_text.assert_awaited_once_with("15551234567", IMAGE_FAILURE_REPLY)
        message = store.get_message(result.message_id)
        assert message.error_message == "Failed to download image: 404"
        assert message.processed is False

    @pytest.mark.asyncio
    async def test_meta_image_uses_media_id(self, pipeline, resolver) -> None:
        body = encode_meta(make_meta_payload(make_meta_image_message("MEDIA9")))
        result = await pipeline.handle(
            "application/json", body, {"x-hub-signature-256": sign_meta(body)}, WEBHOOK_URL,
        )
        assert result.status_code == 200
        resolver.fetch_and_store.assert_awaited_once_with(result.message_id, "MEDIA9", Provider.META)

    @pytest.mark.asyncio
    async def test_expense_creation_failure_is_500(self, pipeline, store, sender) -> None:
        store.process_message = MagicMock(side_effect=RuntimeError("db locked"))

        result = await _post_twilio(pipeline, make_twilio_image_params())

        assert result.status_code == 500
        assert result.body == {"error": "Failed to process receipt"}
        sender.send_text.assert_awaited_once_with("15551234567", FAILURE_REPLY)
        assert store.get_message(result.message_id).error_message == "db locked"

    @pytest.mark.asyncio
    async def test_reply_failure_does_not_change_response(self, pipeline, sender) -> None:
        sender.send_text.side_effect = RuntimeError("twilio down")
        result = await _post_twilio(pipeline, make_twilio_image_params())
        assert result.status_code == 200

    @pytest.mark.asyncio
    async def test_duplicate_deliveries_are_processed_twice(self, pipeline, store) -> None:
        params = make_twilio_image_params()
        first = await _post_twilio(pipeline, params)
        second = await _post_twilio(pipeline, params)

        assert first.message_id != second.message_id
        assert store.snapshot()["whatsapp_messages"] == 2
        assert store.snapshot()["expenses"] == 2


class TestStoreFailures:
    @pytest.mark.asyncio
    async def test_message_record_failure_is_500(self, pipeline, store, sender) -> None:
        store.create_message = MagicMock(side_effect=RuntimeError("disk full"))

        result = await _post_twilio(pipeline, make_twilio_params(Body="hi"))

        assert result.status_code == 500
        assert result.body == {"error": "Failed to create message record"}
        assert result.message_id is None
        sender.send_text.assert_awaited_once_with("15551234567", FAILURE_REPLY)
