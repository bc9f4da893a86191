"""Inbound webhook authentication for both providers.

The verification mode is fixed when the verifier is built. In ENFORCED mode
a provider without a configured secret cannot authenticate anything, so its
webhooks are rejected rather than waved through.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from trucktrack.config import SignatureVerificationMode, WebhookConfig
from trucktrack.webhook import meta, twilio
from trucktrack.webhook.models import MetaPayload, TwilioPayload, WebhookPayload

logger = logging.getLogger(__name__)


class SignatureVerifier:
    """Accepts or rejects a parsed webhook payload by its signature."""

    def __init__(
        self,
        mode: SignatureVerificationMode,
        twilio_auth_token: str | None = None,
        meta_app_secret: str | None = None,
    ) -> None:
        self.mode = mode
        self._twilio_auth_token = twilio_auth_token
        self._meta_app_secret = meta_app_secret

        if mode == SignatureVerificationMode.DISABLED_FOR_DEVELOPMENT:
            logger.warning(
                "Webhook signature verification is DISABLED; "
                "do not run this configuration in production",
            )
        else:
            if not twilio_auth_token:
                logger.warning("TWILIO_AUTH_TOKEN not set; Twilio webhooks will be rejected")
            if not meta_app_secret:
                logger.warning("META_APP_SECRET not set; Meta webhooks will be rejected")

    @classmethod
    def from_config(cls, config: WebhookConfig) -> SignatureVerifier:
        return cls(
            mode=config.signature_mode,
            twilio_auth_token=config.twilio.auth_token,
            meta_app_secret=config.meta.app_secret,
        )

    def verify(
        self,
        payload: WebhookPayload,
        headers: Mapping[str, str],
        url: str,
    ) -> bool:
        """Check the provider signature header for payload.

        ``url`` is the public webhook URL without query string; only Twilio
        signs it.
        """
        if self.mode == SignatureVerificationMode.DISABLED_FOR_DEVELOPMENT:
            logger.warning("Skipping %s signature verification (development mode)", payload.provider.value)
            return True

        if isinstance(payload, TwilioPayload):
            if not self._twilio_auth_token:
                return False
            signature = headers.get(twilio.SIGNATURE_HEADER)
            if not signature:
                logger.warning("Twilio signature missing, rejecting webhook")
                return False
            return twilio.verify_signature(self._twilio_auth_token, signature, url, payload.params)

        if isinstance(payload, MetaPayload):
            if not self._meta_app_secret:
                return False
            signature = headers.get(meta.SIGNATURE_HEADER)
            if not signature:
                logger.warning("Meta signature missing, rejecting webhook")
                return False
            return meta.verify_signature(self._meta_app_secret, signature, payload.raw_body)

        return False
