"""FastAPI application exposing the WhatsApp receipt webhook."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from trucktrack.audit.logger import AuditLogger
from trucktrack.config import WebhookConfig
from trucktrack.db.store import MessageStore
from trucktrack.models import AuditEventType, Provider, RiskLevel
from trucktrack.ocr.vision import ReceiptProcessor, VisionReceiptProcessor
from trucktrack.storage.storage import ObjectStorage, build_storage
from trucktrack.webhook.media import ImageResolver
from trucktrack.webhook.meta import InvalidChallengeError, MetaClient, handle_verification
from trucktrack.webhook.pipeline import ReceiptWebhookPipeline
from trucktrack.webhook.reply import ReplyDispatcher
from trucktrack.webhook.signature import SignatureVerifier
from trucktrack.webhook.twilio import TwilioClient

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/whatsapp/webhook"


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: reads config from environment variables."""
    logging.basicConfig(level=logging.INFO)
    return create_app(WebhookConfig.from_env())


def create_app(
    config: WebhookConfig,
    store: MessageStore | None = None,
    storage: ObjectStorage | None = None,
    processor: ReceiptProcessor | None = None,
    audit_logger: AuditLogger | None = None,
) -> FastAPI:
    """Wire the pipeline from config; any collaborator may be passed in instead."""
    if audit_logger is None and config.audit_log_path:
        audit_logger = AuditLogger(
            config.audit_log_path,
            max_bytes=config.audit_max_bytes,
            backup_count=config.audit_backup_count,
        )

    twilio_client = TwilioClient(config.twilio)
    meta_client = MetaClient(config.meta)
    pipeline = ReceiptWebhookPipeline(
        verifier=SignatureVerifier.from_config(config),
        store=store or MessageStore(config.db_path),
        resolver=ImageResolver(twilio_client, meta_client, storage or build_storage(config.storage)),
        processor=processor or VisionReceiptProcessor(config.vision_api_key),
        replies=ReplyDispatcher(
            [(Provider.TWILIO, twilio_client), (Provider.META, meta_client)],
            audit_logger=audit_logger,
        ),
        audit_logger=audit_logger,
    )

    app = FastAPI(title="TruckTrack", docs_url=None, redoc_url=None)
    app.state.pipeline = pipeline

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get(WEBHOOK_PATH)
    async def verify_subscription(request: Request) -> Response:
        try:
            challenge = handle_verification(request.query_params, config.meta.verify_token)
        except PermissionError:
            logger.warning("Meta webhook verification failed: token mismatch")
            if audit_logger:
                audit_logger.record(
                    AuditEventType.VERIFICATION_CHALLENGE, "subscribe", "rejected", RiskLevel.HIGH,
                    source_ip=request.client.host if request.client else None,
                )
            return JSONResponse({"error": "Invalid verify token"}, status_code=403)
        except InvalidChallengeError:
            return JSONResponse({"error": "Invalid challenge"}, status_code=400)

        if challenge is None:
            return JSONResponse({"status": "ok"})
        logger.info("Meta webhook verified")
        if audit_logger:
            audit_logger.record(AuditEventType.VERIFICATION_CHALLENGE, "subscribe", "success")
        return JSONResponse(challenge)

    @app.post(WEBHOOK_PATH)
    async def receive(request: Request) -> Response:
        body = await request.body()
        url = config.twilio.webhook_url or str(request.url).split("?", 1)[0]
        result = await pipeline.handle(
            content_type=request.headers.get("content-type"),
            body=body,
            headers=request.headers,
            url=url,
            source_ip=request.client.host if request.client else None,
        )
        return JSONResponse(result.body, status_code=result.status_code)

    return app
