"""Outbound WhatsApp replies with provider fallback.

Configured providers are tried in order (Twilio, then Meta). The first one
that accepts the message wins. A reply that no provider could deliver is
logged and reported in the result, never raised: the webhook response must
not depend on whether the sender could be told about it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from trucktrack.audit.logger import AuditLogger
from trucktrack.models import AuditEventType, Provider, RiskLevel

logger = logging.getLogger(__name__)


class TextSender(Protocol):
    @property
    def can_send(self) -> bool: ...

    async def send_text(self, phone_number: str, text: str) -> None: ...


@dataclass
class DeliveryResult:
    delivered: bool
    provider: Provider | None = None
    errors: dict[Provider, str] = field(default_factory=dict)


class ReplyDispatcher:
    def __init__(
        self,
        senders: list[tuple[Provider, TextSender]],
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._senders = senders
        self._audit = audit_logger

    async def send(self, phone_number: str, message: str) -> DeliveryResult:
        result = DeliveryResult(delivered=False)

        for provider, sender in self._senders:
            if not sender.can_send:
                continue
            try:
                await sender.send_text(phone_number, message)
            except Exception as exc:  # any provider failure falls through to the next
                logger.exception("Error sending reply via %s", provider.value)
                result.errors[provider] = str(exc)
                continue
            result.delivered = True
            result.provider = provider
            return result

        if result.errors:
            logger.error(
                "Failed to send WhatsApp reply to %s via %s",
                phone_number, ", ".join(p.value for p in result.errors),
            )
        else:
            logger.warning("No WhatsApp provider configured. Message not sent: %s", message)

        if self._audit:
            self._audit.record(
                AuditEventType.REPLY_FAILED,
                action="reply",
                result="failure",
                risk_level=RiskLevel.MEDIUM,
                phone_number=phone_number,
                errors={p.value: e for p, e in result.errors.items()},
            )
        return result
