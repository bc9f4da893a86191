"""Sender phone number normalisation."""

from __future__ import annotations

import re

_WHATSAPP_PREFIX = re.compile(r"^whatsapp:", re.IGNORECASE)


def normalize_phone_number(phone: str) -> str:
    """Strip a ``whatsapp:`` channel prefix and a leading ``+``.

    >>> normalize_phone_number("whatsapp:+15551234567")
    '15551234567'
    """
    return _WHATSAPP_PREFIX.sub("", phone.strip()).removeprefix("+").strip()
