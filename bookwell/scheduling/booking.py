import datetime as dt

from loguru import logger

from bookwell.domain.exceptions import (
    BookingConflictError,
    BookingValidationError,
    InvalidIntervalError,
    PersistenceFailedError,
    ServiceNotFoundError,
    StoreError,
    StoreUnavailableError,
)
from bookwell.domain.models import (
    AppointmentDraft,
    BookingOutcome,
    BookingResult,
    BookingState,
    Service,
    WaitingListDraft,
)
from bookwell.scheduling.adapters.datetime_helpers import is_aware, local_date
from bookwell.scheduling.availability import AvailabilityChecker
from bookwell.scheduling.ports import SchedulingStoreProtocol


class BookingEngine:
    """Turns a booking request into a confirmed appointment or a waiting-list entry.

    A request moves ``REQUESTED -> CHECKING -> CONFIRMED | WAITLISTED``.  The
    availability verdict only routes the request; the confirmed insert is
    re-validated atomically by the store, and losing that race raises
    BookingConflictError instead of silently waitlisting.
    """

    def __init__(
        self,
        store: SchedulingStoreProtocol,
        checker: AvailabilityChecker,
        business_tz: dt.tzinfo,
    ) -> None:
        self._store = store
        self._checker = checker
        self._tz = business_tz

    async def request_booking(
        self,
        customer_id: str,
        provider_id: str,
        service_id: str,
        start_time: dt.datetime,
        notes: str | None = None,
    ) -> BookingResult:
        self._transition(BookingState.REQUESTED, provider_id)
        service = await self._load_service(provider_id, service_id, start_time)
        end_time = start_time + service.duration

        self._transition(BookingState.CHECKING, provider_id)
        available = await self._checker.is_available(provider_id, start_time, end_time)

        if available:
            draft = AppointmentDraft(
                provider_id=provider_id,
                customer_id=customer_id,
                service_id=service_id,
                start_time=start_time,
                end_time=end_time,
                notes=notes,
            )
            try:
                appointment = await self._store.insert_appointment(draft)
            except BookingConflictError:
                logger.warning(
                    "Booking race lost for provider {} at {}", provider_id, start_time.isoformat()
                )
                raise
            except PersistenceFailedError:
                raise
            except StoreError as exc:
                raise PersistenceFailedError(str(exc), transient=exc.transient) from exc
            except Exception as exc:
                raise PersistenceFailedError(str(exc)) from exc

            self._transition(BookingState.CONFIRMED, provider_id)
            logger.info("Booking confirmed: id={}", appointment.appointment_id)
            return BookingResult(outcome=BookingOutcome.CONFIRMED, appointment=appointment)

        waiting = WaitingListDraft(
            user_id=customer_id,
            provider_id=provider_id,
            service_id=service_id,
            preferred_date=local_date(start_time, self._tz),
        )
        try:
            entry = await self._store.insert_waiting_entry(waiting)
        except PersistenceFailedError:
            raise
        except StoreError as exc:
            raise PersistenceFailedError(str(exc), transient=exc.transient) from exc
        except Exception as exc:
            raise PersistenceFailedError(str(exc)) from exc

        self._transition(BookingState.WAITLISTED, provider_id)
        logger.info(
            "Slot unavailable, waitlisted: id={}, date={}", entry.entry_id, entry.preferred_date
        )
        return BookingResult(outcome=BookingOutcome.WAITLISTED, waiting_entry=entry)

    async def preview_booking(
        self, provider_id: str, service_id: str, start_time: dt.datetime
    ) -> BookingOutcome:
        """Predict the outcome of a request without writing anything."""
        service = await self._load_service(provider_id, service_id, start_time)
        available = await self._checker.is_available(
            provider_id, start_time, start_time + service.duration
        )
        return BookingOutcome.CONFIRMED if available else BookingOutcome.WAITLISTED

    async def _load_service(
        self, provider_id: str, service_id: str, start_time: dt.datetime
    ) -> Service:
        if not is_aware(start_time):
            raise InvalidIntervalError(start_time, None, "start_time must be timezone-aware")

        try:
            service = await self._store.get_service(service_id)
        except StoreUnavailableError:
            raise
        except Exception as exc:
            raise StoreUnavailableError(f"Service lookup failed: {exc}") from exc

        if service is None:
            raise ServiceNotFoundError(service_id)
        if service.provider_id != provider_id:
            raise BookingValidationError(
                f"Service {service_id} is not offered by provider {provider_id}"
            )
        return service

    def _transition(self, state: BookingState, provider_id: str) -> None:
        logger.debug("Booking request for provider {} -> {}", provider_id, state.value)
