import datetime as dt
from typing import Any

from loguru import logger

from bookwell.api.feedback import Failure, feedback_for
from bookwell.domain.exceptions import (
    BookingConflictError,
    BookingValidationError,
    NotFoundError,
    SchedulingError,
    StoreError,
)
from bookwell.domain.models import BookingOutcome
from bookwell.scheduling.adapters.datetime_helpers import is_aware, resolve_timezone
from bookwell.scheduling.ports import AbstractSchedulingService


def _parse_iso_datetime(
    value: object, field_name: str, tz: dt.tzinfo
) -> tuple[dt.datetime | None, str | None]:
    """Parse an ISO 8601 timestamp. Naive values are read in ``tz``.

    Returns ``(datetime, None)`` or ``(None, error_msg)``.
    """
    if not isinstance(value, str):
        return (
            None,
            f"Invalid timestamp for '{field_name}': must be a string in ISO 8601 format.",
        )
    try:
        parsed = dt.datetime.fromisoformat(value)
    except (ValueError, TypeError):
        return (
            None,
            f"Invalid timestamp for '{field_name}': '{value}'. Expected YYYY-MM-DDTHH:MM.",
        )
    if not is_aware(parsed):
        parsed = parsed.replace(tzinfo=tz)
    return parsed, None


def _failure(exc: Exception) -> dict[str, Any]:
    """Payload for a failed request. Never carries an ``outcome``."""
    if isinstance(exc, BookingConflictError):
        return {
            "success": False,
            "error": True,
            "conflict": True,
            "retryable": True,
            "message": feedback_for(Failure.CONFLICT),
        }
    if isinstance(exc, NotFoundError):
        return {
            "success": False,
            "error": True,
            "not_found": True,
            "retryable": False,
            "message": str(exc),
        }
    if isinstance(exc, BookingValidationError):
        return {"success": False, "error": True, "retryable": False, "message": str(exc)}
    if isinstance(exc, StoreError):
        return {
            "success": False,
            "error": True,
            "retryable": exc.transient,
            "message": feedback_for(Failure.STORE_UNAVAILABLE),
        }
    if isinstance(exc, SchedulingError):
        return {"success": False, "error": True, "retryable": False, "message": str(exc)}
    return {
        "success": False,
        "error": True,
        "retryable": False,
        "message": feedback_for(Failure.UNEXPECTED),
    }


def _missing(fields: str) -> dict[str, Any]:
    return {
        "success": False,
        "error": True,
        "retryable": False,
        "message": f"{fields} required.",
    }


class RequestHandlers:
    """Turns raw UI arguments into scheduling calls and JSON-ready payloads."""

    def __init__(
        self,
        scheduling: AbstractSchedulingService,
        business_timezone: str = "UTC",
    ) -> None:
        self._scheduling = scheduling
        self._tz = resolve_timezone(business_timezone)

    async def handle_request_booking(self, arguments: dict[str, Any]) -> dict[str, Any]:
        customer_id: str = arguments.get("customer_id", "")
        provider_id: str = arguments.get("provider_id", "")
        service_id: str = arguments.get("service_id", "")
        start_str: str = arguments.get("start_time", "")
        notes: str | None = arguments.get("notes") or None

        if not customer_id or not provider_id or not service_id or not start_str:
            return _missing("'customer_id', 'provider_id', 'service_id', and 'start_time' are all")

        start_time, err = self._future_start(start_str)
        if err or start_time is None:
            return {"success": False, "error": True, "retryable": False, "message": err}

        logger.debug("Request: request_booking")

        try:
            result = await self._scheduling.request_booking(
                customer_id, provider_id, service_id, start_time, notes
            )
        except SchedulingError as exc:
            return _failure(exc)
        except Exception as exc:
            logger.exception("Unexpected error in request_booking")
            return _failure(exc)

        if result.outcome is BookingOutcome.CONFIRMED and result.appointment is not None:
            appointment = result.appointment
            return {
                "success": True,
                "outcome": result.outcome.value,
                "appointment_id": appointment.appointment_id,
                "start_time": appointment.start_time.isoformat(),
                "end_time": appointment.end_time.isoformat(),
                "message": feedback_for(result.outcome),
            }

        entry = result.waiting_entry
        return {
            "success": True,
            "outcome": result.outcome.value,
            "waiting_entry_id": entry.entry_id if entry else "",
            "preferred_date": entry.preferred_date.isoformat() if entry else "",
            "message": feedback_for(result.outcome),
        }

    async def handle_preview_booking(self, arguments: dict[str, Any]) -> dict[str, Any]:
        provider_id: str = arguments.get("provider_id", "")
        service_id: str = arguments.get("service_id", "")
        start_str: str = arguments.get("start_time", "")

        if not provider_id or not service_id or not start_str:
            return _missing("'provider_id', 'service_id', and 'start_time' are all")

        start_time, err = _parse_iso_datetime(start_str, "start_time", self._tz)
        if err or start_time is None:
            return {"success": False, "error": True, "retryable": False, "message": err}

        try:
            outcome = await self._scheduling.preview_booking(provider_id, service_id, start_time)
        except SchedulingError as exc:
            return _failure(exc)
        except Exception as exc:
            logger.exception("Unexpected error in preview_booking")
            return _failure(exc)

        return {
            "success": True,
            "outcome": outcome.value,
            "waitlist": outcome is BookingOutcome.WAITLISTED,
        }

    async def handle_cancel_appointment(self, arguments: dict[str, Any]) -> dict[str, Any]:
        appointment_id: str = arguments.get("appointment_id", "")

        if not appointment_id:
            return _missing("'appointment_id' is")

        logger.debug("Request: cancel_appointment")

        try:
            result = await self._scheduling.cancel_appointment(appointment_id)
        except SchedulingError as exc:
            return _failure(exc)
        except Exception as exc:
            logger.exception("Unexpected error in cancel_appointment")
            return _failure(exc)

        return {
            "success": True,
            "outcome": result.outcome.value,
            "appointment_id": result.appointment.appointment_id,
            "changed": result.changed,
            "promoted": result.promoted is not None,
            "message": feedback_for(result.outcome),
        }

    async def handle_unread_count(self, arguments: dict[str, Any]) -> dict[str, Any]:
        user_id: str = arguments.get("user_id", "")

        if not user_id:
            return _missing("'user_id' is")

        try:
            count = await self._scheduling.unread_count(user_id)
        except SchedulingError as exc:
            return _failure(exc)
        except Exception as exc:
            logger.exception("Unexpected error in unread_count")
            return _failure(exc)

        return {"success": True, "unread_count": count}

    async def handle_mark_read(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Mark one notification read, or all of them when no ``notification_id`` is given."""
        user_id: str = arguments.get("user_id", "")
        notification_id: str = arguments.get("notification_id", "")

        if not user_id:
            return _missing("'user_id' is")

        try:
            if notification_id:
                changed = int(
                    await self._scheduling.mark_notification_read(user_id, notification_id)
                )
            else:
                changed = await self._scheduling.mark_all_notifications_read(user_id)
        except SchedulingError as exc:
            return _failure(exc)
        except Exception as exc:
            logger.exception("Unexpected error in mark_read")
            return _failure(exc)

        return {"success": True, "marked": changed}

    async def handle_clear_read(self, arguments: dict[str, Any]) -> dict[str, Any]:
        user_id: str = arguments.get("user_id", "")

        if not user_id:
            return _missing("'user_id' is")

        logger.debug("Request: clear_read")

        try:
            removed = await self._scheduling.clear_read_notifications(user_id)
        except SchedulingError as exc:
            return _failure(exc)
        except Exception as exc:
            logger.exception("Unexpected error in clear_read")
            return _failure(exc)

        return {"success": True, "cleared": removed}

    def _future_start(self, value: str) -> tuple[dt.datetime | None, str | None]:
        start_time, err = _parse_iso_datetime(value, "start_time", self._tz)
        if err or start_time is None:
            return None, err or "Invalid timestamp."
        if start_time < dt.datetime.now(self._tz):
            return None, "Start time is in the past. Please choose a future date and time."
        return start_time, None
