import datetime as dt
import re
from decimal import Decimal
from typing import Any

from bookwell.domain.models import Appointment, Notification, Service, WaitingListEntry


def parse_content_range_total(header: str | None) -> int | None:
    """Extract the total from a PostgREST ``Content-Range`` such as ``0-24/3573`` or ``*/0``."""
    if not header:
        return None
    match = re.fullmatch(r"\s*(?:\d+-\d+|\*)/(\d+|\*)\s*", header)
    if not match or match.group(1) == "*":
        return None
    return int(match.group(1))


def timestamp_param(value: dt.datetime) -> str:
    """Render an aware timestamp for a PostgREST filter or body (``2026-03-15T10:00:00+00:00``)."""
    return value.isoformat()


def service_from_row(row: dict[str, Any]) -> Service:
    return Service(
        service_id=str(row["id"]),
        provider_id=str(row["provider_id"]),
        name=row.get("name") or "",
        duration_minutes=int(row["duration"]),
        price=Decimal(str(row.get("price") or 0)),
    )


def appointment_from_row(row: dict[str, Any]) -> Appointment:
    return Appointment(
        appointment_id=str(row["id"]),
        provider_id=str(row["provider_id"]),
        customer_id=str(row["customer_id"]),
        service_id=str(row["service_id"]),
        start_time=row["start_time"],
        end_time=row["end_time"],
        status=row.get("status") or "confirmed",
        created_at=row.get("created_at"),
        notes=row.get("notes"),
    )


def waiting_entry_from_row(row: dict[str, Any]) -> WaitingListEntry:
    return WaitingListEntry(
        entry_id=str(row["id"]),
        user_id=str(row["user_id"]),
        provider_id=str(row["provider_id"]),
        service_id=str(row["service_id"]),
        preferred_date=row["preferred_date"],
        status=row.get("status") or "waiting",
        created_at=row["created_at"],
    )


def notification_from_row(row: dict[str, Any]) -> Notification:
    return Notification(
        notification_id=str(row["id"]),
        user_id=str(row["user_id"]),
        message=row.get("message") or "",
        is_read=bool(row.get("is_read", False)),
        created_at=row["created_at"],
    )
