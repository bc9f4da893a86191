"""Click CLI for inspecting receipts and registering drivers and trips."""

from __future__ import annotations

import json
import sys
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path

import click

from trucktrack.audit.logger import validate_audit_chain
from trucktrack.currency import convert, fetch_usd_to_cad_rate, format_currency
from trucktrack.db.store import MessageNotFoundError, MessageStore, dump_message
from trucktrack.models import Currency


@click.group()
@click.option("--db", default="data/trucktrack.db", envvar="TRUCKTRACK_DB_PATH",
              help="TruckTrack database path.")
@click.pass_context
def cli(ctx: click.Context, db: str) -> None:
    """TruckTrack receipt ingestion CLI."""
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db


def _store(ctx: click.Context) -> MessageStore:
    if "store" not in ctx.obj:
        ctx.obj["store"] = MessageStore(ctx.obj["db_path"])
    return ctx.obj["store"]


@cli.group("messages")
def messages_group() -> None:
    """Inspect inbound WhatsApp messages."""


@messages_group.command("list")
@click.option("--limit", default=20, show_default=True, help="Maximum rows to show.")
@click.pass_context
def messages_list(ctx: click.Context, limit: int) -> None:
    """List recent messages, newest first."""
    output = [
        {
            "id": m.id,
            "phone_number": m.phone_number,
            "kind": m.message_kind.value,
            "processed": m.processed,
            "error": m.error_message,
            "created_at": m.created_at,
        }
        for m in _store(ctx).list_messages(limit=limit)
    ]
    click.echo(json.dumps(output, indent=2))


@messages_group.command("show")
@click.argument("message_id")
@click.pass_context
def messages_show(ctx: click.Context, message_id: str) -> None:
    """Show one message with its extracted receipt data."""
    try:
        message = _store(ctx).get_message(message_id)
    except MessageNotFoundError:
        click.echo(f"Message not found: {message_id}", err=True)
        sys.exit(1)
    click.echo(json.dumps(dump_message(message), indent=2))


@cli.group("expenses")
def expenses_group() -> None:
    """Inspect expenses created from receipts."""


@expenses_group.command("list")
@click.option("--limit", default=20, show_default=True)
@click.option("--currency", "display_currency", type=click.Choice(["USD", "CAD"]),
              default=None, help="Also show each amount converted to this currency.")
@click.option("--rate", type=Decimal, default=None,
              help="USD to CAD rate; fetched live when omitted.")
@click.pass_context
def expenses_list(
    ctx: click.Context, limit: int, display_currency: str | None, rate: Decimal | None,
) -> None:
    """List recent expenses."""
    expenses = _store(ctx).list_expenses(limit=limit)
    target = Currency(display_currency) if display_currency else None
    if target and rate is None:
        rate = fetch_usd_to_cad_rate()

    for e in expenses:
        line = f"{e.date[:10]}  {format_currency(e.amount, e.original_currency):>12}  {e.category}"
        if target and rate is not None and target != e.original_currency:
            converted = convert(e.amount, e.original_currency, target, rate)
            line += f"  (~{format_currency(converted, target)})"
        if e.vendor_name:
            line += f"  {e.vendor_name}"
        click.echo(line)


@cli.group("drivers")
def drivers_group() -> None:
    """Manage drivers matched against sender phone numbers."""


@drivers_group.command("add")
@click.argument("name")
@click.option("--phone", required=True, help="WhatsApp number, any formatting.")
@click.pass_context
def drivers_add(ctx: click.Context, name: str, phone: str) -> None:
    driver = _store(ctx).add_driver(name, phone=phone)
    click.echo(driver.id)


@cli.group("trips")
def trips_group() -> None:
    """Manage trips that receipts are linked to."""


@trips_group.command("add")
@click.argument("name")
@click.option("--driver", "driver_id", required=True, help="Driver id.")
@click.option("--unit", "unit_id", default=None, help="Unit (truck) id.")
@click.option("--start", "start_date", default=None, help="ISO start date (default: today).")
@click.option("--end", "end_date", default=None, help="ISO end date (default: start).")
@click.option("--status", type=click.Choice(["upcoming", "ongoing", "completed"]),
              default="ongoing", show_default=True)
@click.pass_context
def trips_add(
    ctx: click.Context,
    name: str,
    driver_id: str,
    unit_id: str | None,
    start_date: str | None,
    end_date: str | None,
    status: str,
) -> None:
    start = start_date or datetime.now(UTC).date().isoformat()
    trip = _store(ctx).add_trip(
        name, start, end_date or start, driver_id=driver_id, unit_id=unit_id, status=status,
    )
    click.echo(f"{trip.id} (trip #{trip.trip_number})")


@cli.group("audit")
def audit_group() -> None:
    """Audit log tools."""


@audit_group.command("verify")
@click.argument("log_path", type=click.Path(exists=True, dir_okay=False))
def audit_verify(log_path: str) -> None:
    """Check the hash chain of an audit log."""
    result = validate_audit_chain(Path(log_path))
    if result.valid:
        click.echo("Audit chain valid")
        return
    click.echo(f"Audit chain broken at line {result.broken_at_line}", err=True)
    sys.exit(1)
