import datetime as dt

from loguru import logger

from bookwell.domain.exceptions import (
    AppointmentNotFoundError,
    PersistenceFailedError,
    StoreError,
    StoreUnavailableError,
)
from bookwell.domain.models import AppointmentStatus, CancelOutcome, CancelResult
from bookwell.scheduling.adapters.datetime_helpers import date_to_long, local_date
from bookwell.scheduling.ports import SchedulingStoreProtocol


def promotion_message(cancel_date: dt.date) -> str:
    return (
        f"A slot has opened up on {date_to_long(cancel_date)}. "
        "You were first on the waiting list, so book now to claim it."
    )


class CancellationHandler:
    """Cancels an appointment and promotes the oldest waiting entry for its date.

    Only one entry is promoted per cancellation: one freed interval cannot
    serve several customers.  The remaining entries stay ``waiting`` for a
    later cancellation on the same date.
    """

    def __init__(self, store: SchedulingStoreProtocol, business_tz: dt.tzinfo) -> None:
        self._store = store
        self._tz = business_tz

    async def cancel_appointment(self, appointment_id: str) -> CancelResult:
        logger.info("Cancelling appointment: id={}", appointment_id)

        try:
            appointment = await self._store.get_appointment(appointment_id)
        except StoreUnavailableError:
            raise
        except Exception as exc:
            raise StoreUnavailableError(f"Appointment lookup failed: {exc}") from exc

        if appointment is None:
            raise AppointmentNotFoundError(appointment_id)

        if appointment.status is AppointmentStatus.CANCELLED:
            logger.info("Appointment already cancelled, nothing to do: id={}", appointment_id)
            return CancelResult(outcome=CancelOutcome.ALREADY_CANCELLED, appointment=appointment)

        cancel_date = local_date(appointment.start_time, self._tz)
        try:
            result = await self._store.cancel_and_promote(
                appointment_id,
                cancel_date=cancel_date,
                message=promotion_message(cancel_date),
            )
        except (AppointmentNotFoundError, PersistenceFailedError):
            raise
        except StoreError as exc:
            raise PersistenceFailedError(str(exc), transient=exc.transient) from exc
        except Exception as exc:
            raise PersistenceFailedError(str(exc)) from exc

        if result.promoted is not None:
            logger.info(
                "Appointment cancelled, promoted waiting entry {} for {}",
                result.promoted.entry_id,
                cancel_date,
            )
        elif result.changed:
            logger.info("Appointment cancelled, no one waiting for {}", cancel_date)
        else:
            logger.info("Appointment was cancelled concurrently: id={}", appointment_id)
        return result
