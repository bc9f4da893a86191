"""Environment-driven configuration for the webhook service."""

from __future__ import annotations

import os
from collections.abc import Mapping
from enum import Enum

from pydantic import BaseModel, ConfigDict

DEFAULT_GRAPH_API_VERSION = "v18.0"


class SignatureVerificationMode(str, Enum):
    """Whether inbound webhook signatures are checked.

    DISABLED_FOR_DEVELOPMENT is never the default; it has to be asked for.
    """

    ENFORCED = "enforced"
    DISABLED_FOR_DEVELOPMENT = "disabled-for-development"


class TwilioConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_sid: str | None = None
    auth_token: str | None = None
    whatsapp_number: str | None = None
    webhook_url: str | None = None

    @property
    def can_send(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.whatsapp_number)


class MetaConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str | None = None
    phone_number_id: str | None = None
    app_secret: str | None = None
    verify_token: str | None = None
    graph_api_version: str = DEFAULT_GRAPH_API_VERSION

    @property
    def can_send(self) -> bool:
        return bool(self.access_token and self.phone_number_id)

    @property
    def graph_api_base(self) -> str:
        return f"https://graph.facebook.com/{self.graph_api_version}"


class StorageConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    supabase_url: str | None = None
    supabase_service_key: str | None = None
    bucket: str = "receipts"
    local_dir: str = "data/receipts"
    public_base_url: str | None = None

    @property
    def uses_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_key)


class WebhookConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    twilio: TwilioConfig = TwilioConfig()
    meta: MetaConfig = MetaConfig()
    storage: StorageConfig = StorageConfig()
    signature_mode: SignatureVerificationMode = SignatureVerificationMode.ENFORCED
    vision_api_key: str | None = None
    db_path: str = "data/trucktrack.db"
    audit_log_path: str | None = None
    audit_max_bytes: int = 10_485_760
    audit_backup_count: int = 5

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> WebhookConfig:
        """Build configuration from environment variables.

        Empty strings count as unset so that blank entries in an env file
        do not half-configure a provider.
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            return env.get(name) or None

        return cls(
            twilio=TwilioConfig(
                account_sid=get("TWILIO_ACCOUNT_SID"),
                auth_token=get("TWILIO_AUTH_TOKEN"),
                whatsapp_number=get("TWILIO_WHATSAPP_NUMBER"),
                webhook_url=get("TWILIO_WEBHOOK_URL"),
            ),
            meta=MetaConfig(
                access_token=get("META_ACCESS_TOKEN"),
                phone_number_id=get("META_PHONE_NUMBER_ID"),
                app_secret=get("META_APP_SECRET"),
                verify_token=get("META_VERIFY_TOKEN"),
                graph_api_version=get("META_GRAPH_API_VERSION") or DEFAULT_GRAPH_API_VERSION,
            ),
            storage=StorageConfig(
                supabase_url=get("SUPABASE_URL"),
                supabase_service_key=get("SUPABASE_SERVICE_KEY"),
                bucket=get("RECEIPTS_BUCKET") or "receipts",
                local_dir=get("RECEIPTS_DIR") or "data/receipts",
                public_base_url=get("RECEIPTS_PUBLIC_BASE_URL"),
            ),
            signature_mode=SignatureVerificationMode(
                get("WEBHOOK_SIGNATURE_MODE") or SignatureVerificationMode.ENFORCED.value,
            ),
            vision_api_key=get("GOOGLE_CLOUD_VISION_API_KEY"),
            db_path=get("TRUCKTRACK_DB_PATH") or "data/trucktrack.db",
            audit_log_path=get("AUDIT_LOG_PATH"),
            audit_max_bytes=int(get("AUDIT_LOG_MAX_BYTES") or 10_485_760),
            audit_backup_count=int(get("AUDIT_LOG_BACKUP_COUNT") or 5),
        )
