"""Persistence for inbound WhatsApp messages and the expenses they create.

Every call writes through immediately; there are no multi-step transactions,
so a failure part way through the webhook pipeline leaves whatever was
already written in place.
"""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from trucktrack.db.database import TruckTrackDB
from trucktrack.models import (
    Currency,
    Driver,
    Expense,
    ExtractedReceiptData,
    InboundMessage,
    MessageKind,
    Provider,
    Trip,
)

# Columns a caller may change through update_message
_UPDATABLE = {
    "image_url",
    "raw_text",
    "extracted_data",
    "error_message",
    "expense_id",
    "trip_id",
    "processed",
}


class MessageNotFoundError(Exception):
    """Raised when an inbound message id does not exist."""

    pass


class ExpenseCreationError(Exception):
    """Raised when an expense cannot be created from extracted receipt data."""

    pass


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _digits(phone: str) -> str:
    return "".join(ch for ch in phone if ch.isdigit())


class MessageStore:
    """Reads and writes messages, expenses, drivers and trips."""

    def __init__(self, db_path: str) -> None:
        self._db = TruckTrackDB(db_path)

    def close(self) -> None:
        self._db.close()

    # --- Messages ---

    def create_message(
        self,
        phone_number: str,
        message_kind: MessageKind,
        provider: Provider,
        image_url: str | None = None,
        raw_text: str | None = None,
    ) -> InboundMessage:
        message = InboundMessage(
            id=str(uuid.uuid4()),
            phone_number=phone_number,
            message_kind=message_kind,
            provider=provider,
            image_url=image_url,
            raw_text=raw_text,
            created_at=_now_iso(),
        )
        self._db.execute(
            """INSERT INTO whatsapp_messages
               (id, phone_number, message_kind, provider, image_url, raw_text, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                message.id,
                message.phone_number,
                message.message_kind.value,
                message.provider.value,
                message.image_url,
                message.raw_text,
                message.created_at,
            ),
        )
        return message

    def update_message(self, message_id: str, **changes: Any) -> InboundMessage:
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")
        if not changes:
            return self.get_message(message_id)

        columns: list[str] = []
        values: list[Any] = []
        for name, value in changes.items():
            if name == "extracted_data":
                columns.append("extracted_json = ?")
                values.append(value.model_dump_json() if value is not None else None)
            elif name == "processed":
                columns.append("processed = ?")
                values.append(1 if value else 0)
            else:
                columns.append(f"{name} = ?")
                values.append(value)

        cursor = self._db.execute(
            f"UPDATE whatsapp_messages SET {', '.join(columns)} WHERE id = ?",  # noqa: S608
            (*values, message_id),
        )
        if cursor.rowcount == 0:
            raise MessageNotFoundError(message_id)
        return self.get_message(message_id)

    def get_message(self, message_id: str) -> InboundMessage:
        row = self._db.fetch_one("SELECT * FROM whatsapp_messages WHERE id = ?", (message_id,))
        if row is None:
            raise MessageNotFoundError(message_id)
        return self._row_to_message(row)

    def list_messages(self, limit: int = 50) -> list[InboundMessage]:
        rows = self._db.fetch_all(
            "SELECT * FROM whatsapp_messages ORDER BY created_at DESC, rowid DESC LIMIT ?", (limit,),
        )
        return [self._row_to_message(r) for r in rows]

    @staticmethod
    def _row_to_message(row: dict[str, Any]) -> InboundMessage:
        extracted = row["extracted_json"]
        return InboundMessage(
            id=row["id"],
            phone_number=row["phone_number"],
            message_kind=MessageKind(row["message_kind"]),
            provider=Provider(row["provider"]),
            image_url=row["image_url"],
            raw_text=row["raw_text"],
            extracted_data=(
                ExtractedReceiptData.model_validate_json(extracted) if extracted else None
            ),
            error_message=row["error_message"],
            expense_id=row["expense_id"],
            trip_id=row["trip_id"],
            processed=bool(row["processed"]),
            created_at=row["created_at"],
        )

    # --- Expense creation ---

    def process_message(self, message_id: str, data: ExtractedReceiptData) -> Expense:
        """Create an expense from a message's receipt data and link them.

        The expense is attributed to the driver whose phone matches the
        sender, and to that driver's current trip when one can be found.
        """
        if not data.is_complete or data.amount is None or data.category is None:
            raise ExpenseCreationError("Receipt data must include an amount and a category")

        message = self.get_message(message_id)
        driver = self.find_driver_by_phone(message.phone_number)
        expense_date = data.date or _now_iso()
        trip = self.find_current_trip(driver.id, expense_date) if driver else None

        description = f"WhatsApp receipt: {data.vendor}" if data.vendor else "WhatsApp receipt"
        expense = Expense(
            id=str(uuid.uuid4()),
            category=data.category,
            description=description,
            amount=data.amount,
            original_currency=data.currency,
            date=expense_date,
            unit_id=trip.unit_id if trip else None,
            trip_id=trip.id if trip else None,
            driver_id=driver.id if driver else None,
            vendor_name=data.vendor,
            receipt_url=message.image_url,
            created_at=_now_iso(),
        )
        self._db.execute(
            """INSERT INTO expenses
               (id, category, description, amount, original_currency, date,
                unit_id, trip_id, driver_id, vendor_name, receipt_url, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                expense.id,
                expense.category,
                expense.description,
                str(expense.amount),
                expense.original_currency.value,
                expense.date,
                expense.unit_id,
                expense.trip_id,
                expense.driver_id,
                expense.vendor_name,
                expense.receipt_url,
                expense.created_at,
            ),
        )
        self.update_message(
            message_id,
            extracted_data=data,
            expense_id=expense.id,
            trip_id=expense.trip_id,
            processed=True,
        )
        return expense

    def list_expenses(self, limit: int = 50) -> list[Expense]:
        rows = self._db.fetch_all(
            "SELECT * FROM expenses ORDER BY created_at DESC, rowid DESC LIMIT ?", (limit,),
        )
        return [
            Expense(**{**r, "amount": Decimal(r["amount"]), "original_currency": Currency(r["original_currency"])})
            for r in rows
        ]

    # --- Drivers and trips ---

    def add_driver(self, name: str, phone: str | None = None) -> Driver:
        driver = Driver(id=str(uuid.uuid4()), name=name, phone=phone, created_at=_now_iso())
        self._db.execute(
            "INSERT INTO drivers (id, name, phone, is_active, created_at) VALUES (?, ?, ?, 1, ?)",
            (driver.id, driver.name, driver.phone, driver.created_at),
        )
        return driver

    def find_driver_by_phone(self, phone_number: str) -> Driver | None:
        """Match on digits only so "+1 (555) 123-4567" finds "15551234567"."""
        wanted = _digits(phone_number)
        if not wanted:
            return None
        for row in self._db.fetch_all("SELECT * FROM drivers WHERE is_active = 1 AND phone IS NOT NULL"):
            if _digits(row["phone"]) == wanted:
                return Driver(**{**row, "is_active": bool(row["is_active"])})
        return None

    def add_trip(
        self,
        name: str,
        start_date: str,
        end_date: str,
        driver_id: str | None = None,
        unit_id: str | None = None,
        status: str = "upcoming",
    ) -> Trip:
        count = self._db.fetch_one("SELECT COUNT(*) AS n FROM trips")
        trip = Trip(
            id=str(uuid.uuid4()),
            trip_number=f"{(count['n'] if count else 0) + 1:04d}",
            name=name,
            start_date=start_date,
            end_date=end_date,
            status=status,
            driver_id=driver_id,
            unit_id=unit_id,
        )
        self._db.execute(
            """INSERT INTO trips
               (id, trip_number, name, start_date, end_date, status, driver_id, unit_id)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                trip.id, trip.trip_number, trip.name, trip.start_date,
                trip.end_date, trip.status, trip.driver_id, trip.unit_id,
            ),
        )
        return trip

    def get_trip(self, trip_id: str) -> Trip | None:
        row = self._db.fetch_one("SELECT * FROM trips WHERE id = ?", (trip_id,))
        return Trip(**row) if row else None

    def find_current_trip(self, driver_id: str, on_date: str) -> Trip | None:
        """Prefer the driver's ongoing trip, else one whose dates cover on_date."""
        row = self._db.fetch_one(
            "SELECT * FROM trips WHERE driver_id = ? AND status = 'ongoing' ORDER BY start_date DESC",
            (driver_id,),
        )
        if row is None:
            day = on_date[:10]
            row = self._db.fetch_one(
                """SELECT * FROM trips
                   WHERE driver_id = ? AND substr(start_date, 1, 10) <= ?
                     AND substr(end_date, 1, 10) >= ?
                   ORDER BY start_date DESC""",
                (driver_id, day, day),
            )
        return Trip(**row) if row else None

    def snapshot(self) -> dict[str, int]:
        """Row counts per table."""
        counts: dict[str, int] = {}
        for table in ("whatsapp_messages", "expenses", "drivers", "trips"):
            row = self._db.fetch_one(f"SELECT COUNT(*) AS n FROM {table}")  # noqa: S608
            counts[table] = row["n"] if row else 0
        return counts


def dump_message(message: InboundMessage) -> dict[str, Any]:
    """JSON-friendly view of a message for the CLI."""
    return json.loads(message.model_dump_json())
