"""USD/CAD display and conversion helpers."""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal

import httpx

from trucktrack.models import Currency

logger = logging.getLogger(__name__)

# 1 USD = 1.35 CAD when no live rate is available
DEFAULT_USD_TO_CAD_RATE = Decimal("1.35")

_FRANKFURTER_URL = "https://api.frankfurter.dev/v1/latest"

# en-US currency symbols
_SYMBOLS = {Currency.USD: "$", Currency.CAD: "CA$"}

_CENTS = Decimal("0.01")


def format_currency(amount: Decimal | float | int, currency: Currency | str = Currency.USD) -> str:
    """Format an amount the way an en-US locale displays it.

    >>> format_currency(Decimal("1042.5"))
    '$1,042.50'
    >>> format_currency(Decimal("42.5"), Currency.CAD)
    'CA$42.50'
    """
    currency = Currency(currency)
    value = Decimal(str(amount)).quantize(_CENTS, rounding=ROUND_HALF_UP)
    sign = "-" if value < 0 else ""
    return f"{sign}{_SYMBOLS[currency]}{abs(value):,.2f}"


def convert(
    amount: Decimal,
    from_currency: Currency,
    to_currency: Currency,
    usd_to_cad_rate: Decimal = DEFAULT_USD_TO_CAD_RATE,
) -> Decimal:
    if from_currency == to_currency:
        return amount
    if from_currency == Currency.USD:
        return (amount * usd_to_cad_rate).quantize(_CENTS, rounding=ROUND_HALF_UP)
    return (amount / usd_to_cad_rate).quantize(_CENTS, rounding=ROUND_HALF_UP)


def fetch_usd_to_cad_rate(timeout: float = 10.0) -> Decimal:
    """Fetch the current USD->CAD rate, falling back to the default."""
    try:
        resp = httpx.get(
            _FRANKFURTER_URL,
            params={"base": "USD", "symbols": "CAD"},
            timeout=timeout,
        )
        resp.raise_for_status()
        rate = resp.json().get("rates", {}).get("CAD")
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("Exchange rate lookup failed, using default %s: %s", DEFAULT_USD_TO_CAD_RATE, exc)
        return DEFAULT_USD_TO_CAD_RATE
    if not rate:
        return DEFAULT_USD_TO_CAD_RATE
    return Decimal(str(rate))
