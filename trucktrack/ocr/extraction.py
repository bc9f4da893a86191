"""Heuristics that turn OCR text blocks into receipt fields.

``text_blocks[0]`` is the full detected text; later blocks are individual
words or lines as returned by the text detector.
"""

from __future__ import annotations

import re
from datetime import datetime
from decimal import Decimal, InvalidOperation

from trucktrack.models import Currency, ExtractedReceiptData

_MAX_AMOUNT = Decimal("1000000")

_AMOUNT_PATTERNS = [
    re.compile(r"(?:TOTAL|AMOUNT|PAID|CHARGE|BALANCE|DUE)[\s:]*\$?\s*(?:CAD|USD|US\$)?\s*([\d,]+\.?\d{0,2})"),
    re.compile(r"\$(?:CAD|USD|US\$)?\s*([\d,]+\.?\d{0,2})"),
    re.compile(r"(?:CAD|USD|US\$)\s+([\d,]+\.?\d{0,2})"),
    # Bare numbers need cents, otherwise street numbers and years win
    re.compile(r"([\d,]+\.\d{2})\b(?:\s*(?:CAD|USD))?"),
]

_HEADER_WORDS = re.compile(
    r"^(RECEIPT|INVOICE|ORDER|DATE|TIME|TRANSACTION|REF|REFERENCE|CARD|PAYMENT|TOTAL|"
    r"AMOUNT|SUBTOTAL|TAX|HST|GST|TIP|GRATUITY|CHANGE|CASH|DEBIT|CREDIT)",
    re.IGNORECASE,
)

_DATE_PATTERNS = [
    re.compile(r"(\d{4})[-/](\d{1,2})[-/](\d{1,2})"),
    re.compile(r"(\d{1,2})[-/](\d{1,2})[-/](\d{4})"),
    re.compile(r"(\d{1,2})[-/](\d{1,2})[-/](\d{2})\b"),
    re.compile(r"([A-Za-z]{3})\s+(\d{1,2}),\s+(\d{4})"),
    re.compile(r"(\d{1,2})\s+([A-Za-z]{3})\s+(\d{4})"),
]

_CANADIAN_PROVINCES = ["ON", "QC", "BC", "AB", "MB", "SK", "NS", "NB", "NL", "PE", "YT", "NT", "NU"]
_US_STATES = ["CA", "NY", "TX", "FL", "IL", "PA", "OH", "GA", "NC", "MI"]

# Checked in order; first match wins
_CATEGORY_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("Fuel", (
        "PETRO", "SHELL", "ESSO", "HUSKY", "MOBIL", "EXXON", "BP ", "CHEVRON", "CITGO",
        "SUNOCO", "TA ", "LOVES", "FLYING J", "GAS", "FUEL",
    )),
    ("Food", (
        "TIM HORTONS", "TIM'S", "TIMHORTONS", "MCDONALD", "SUBWAY", "BURGER KING",
        "WENDY'S", "WENDYS", "TACO BELL", "KFC", "PIZZA", "RESTAURANT", "DINER", "CAFE", "COFFEE",
    )),
    ("Tolls", ("407 ETR", "407ETR", "TOLL", "HIGHWAY", "ETR", "TURNPIKE")),
    ("Maintenance", (
        "REPAIR", "SERVICE", "TIRE", "PARTS", "AUTO", "MECHANIC", "GARAGE", "LUBE", "OIL CHANGE",
    )),
    ("Lodging", ("HOTEL", "MOTEL", "INN", "LODGING")),
    ("Parking", ("PARKING", "LOT")),
]


def extract_amount(text_blocks: list[str]) -> tuple[Decimal | None, Currency]:
    """Return the largest plausible amount and the currency seen next to it."""
    full_text = " ".join(text_blocks).upper()
    currency = Currency.USD
    best = Decimal(0)

    for pattern in _AMOUNT_PATTERNS:
        for match in pattern.finditer(full_text):
            raw = match.group(1).replace(",", "")
            try:
                amount = Decimal(raw)
            except InvalidOperation:
                continue
            if not best < amount < _MAX_AMOUNT:
                continue
            best = amount
            matched = match.group(0)
            if "CAD" in matched or "CAN" in matched:
                currency = Currency.CAD
            elif "USD" in matched or "US$" in matched or "$" in matched:
                currency = Currency.USD

    return (best if best > 0 else None), currency


def extract_vendor(text_blocks: list[str]) -> str | None:
    if not text_blocks or not text_blocks[0]:
        return None

    lines = [line for line in text_blocks[0].split("\n") if line.strip()]
    for line in lines:
        stripped = line.strip()
        if len(stripped) < 3 or _HEADER_WORDS.match(stripped):
            continue
        if len(stripped) < 100:
            return stripped

    return lines[0] if lines else None


def _to_iso(year: int, month: int, day: int) -> str | None:
    try:
        return datetime(year, month, day).date().isoformat()
    except ValueError:
        return None


def extract_date(text_blocks: list[str]) -> str | None:
    """Find the first recognisable date. Slash dates are read as MM/DD."""
    full_text = " ".join(text_blocks)

    for pattern in _DATE_PATTERNS:
        match = pattern.search(full_text)
        if not match:
            continue
        raw = match.group(0)
        a, b, c = match.groups()

        if "," in raw:
            parsed = _parse_named_month(f"{a} {b} {c}", "%b %d %Y")
        elif a.isalpha() or b.isalpha():
            parsed = _parse_named_month(f"{a} {b} {c}", "%d %b %Y")
        elif len(a) == 4:
            parsed = _to_iso(int(a), int(b), int(c))
        else:
            year = int(c) if len(c) == 4 else 2000 + int(c)
            parsed = _to_iso(year, int(a), int(b))

        if parsed:
            return parsed

    return None


def _parse_named_month(value: str, fmt: str) -> str | None:
    try:
        return datetime.strptime(value, fmt).date().isoformat()
    except ValueError:
        return None


def extract_location(text_blocks: list[str]) -> str | None:
    full_text = " ".join(text_blocks)
    for code in _CANADIAN_PROVINCES + _US_STATES:
        match = re.search(rf"([A-Za-z\s]+(?:,\s*)?{code}\b)", full_text)
        if match:
            return match.group(0).strip()[:100]
    return None


def categorize_expense(vendor: str | None) -> str:
    if not vendor:
        return "other"

    upper = vendor.upper()
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(keyword in upper for keyword in keywords):
            return category
    return "Other"


def extract_receipt_data(text_blocks: list[str]) -> ExtractedReceiptData:
    if not text_blocks:
        return ExtractedReceiptData()

    amount, currency = extract_amount(text_blocks)
    vendor = extract_vendor(text_blocks)
    return ExtractedReceiptData(
        amount=amount,
        currency=currency,
        vendor=vendor,
        category=categorize_expense(vendor),
        date=extract_date(text_blocks),
        location=extract_location(text_blocks),
    )
