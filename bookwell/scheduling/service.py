import datetime as dt
from collections.abc import Awaitable, Callable

from loguru import logger

from bookwell.domain.exceptions import PersistenceFailedError, StoreError, StoreUnavailableError
from bookwell.domain.models import (
    Appointment,
    AppointmentStatus,
    BookingOutcome,
    BookingResult,
    CancelResult,
    Notification,
    WaitingListEntry,
    WaitingStatus,
)
from bookwell.scheduling.adapters.datetime_helpers import resolve_timezone
from bookwell.scheduling.availability import AvailabilityChecker
from bookwell.scheduling.booking import BookingEngine
from bookwell.scheduling.cancellation import CancellationHandler
from bookwell.scheduling.notifications import NotificationCounterService, UnreadCounter
from bookwell.scheduling.ports import AbstractSchedulingService, SchedulingStoreProtocol


class SchedulingService(AbstractSchedulingService):
    """Scheduling core that wires the components onto a SchedulingStoreProtocol."""

    def __init__(self, store: SchedulingStoreProtocol, business_timezone: str = "UTC") -> None:
        self._store = store
        tz = resolve_timezone(business_timezone)
        self.checker = AvailabilityChecker(store)
        self.booking = BookingEngine(store, self.checker, tz)
        self.cancellation = CancellationHandler(store, tz)
        self.counter = NotificationCounterService(store)
        self._counters: list[UnreadCounter] = []

    async def request_booking(
        self,
        customer_id: str,
        provider_id: str,
        service_id: str,
        start_time: dt.datetime,
        notes: str | None = None,
    ) -> BookingResult:
        return await self.booking.request_booking(
            customer_id, provider_id, service_id, start_time, notes
        )

    async def preview_booking(
        self, provider_id: str, service_id: str, start_time: dt.datetime
    ) -> BookingOutcome:
        return await self.booking.preview_booking(provider_id, service_id, start_time)

    async def cancel_appointment(self, appointment_id: str) -> CancelResult:
        return await self.cancellation.cancel_appointment(appointment_id)

    async def unread_count(self, user_id: str) -> int:
        return await self.counter.unread_count(user_id)

    async def subscribe_unread(
        self, user_id: str, on_change: Callable[[int], None] | None = None
    ) -> UnreadCounter:
        counter = await self.counter.subscribe(user_id, on_change)
        self._counters.append(counter)
        return counter

    def unsubscribe_unread(self, counter: UnreadCounter) -> None:
        self.counter.unsubscribe(counter)
        if counter in self._counters:
            self._counters.remove(counter)

    async def list_appointments(
        self,
        *,
        provider_id: str | None = None,
        customer_id: str | None = None,
        status: AppointmentStatus | None = None,
    ) -> list[Appointment]:
        try:
            return await self._store.list_appointments(
                provider_id=provider_id, customer_id=customer_id, status=status
            )
        except StoreUnavailableError:
            raise
        except Exception as exc:
            raise StoreUnavailableError(f"Appointment listing failed: {exc}") from exc

    async def list_waiting_entries(
        self,
        *,
        provider_id: str | None = None,
        user_id: str | None = None,
        status: WaitingStatus | None = None,
    ) -> list[WaitingListEntry]:
        try:
            return await self._store.list_waiting_entries(
                provider_id=provider_id, user_id=user_id, status=status
            )
        except StoreUnavailableError:
            raise
        except Exception as exc:
            raise StoreUnavailableError(f"Waiting list lookup failed: {exc}") from exc

    async def list_notifications(self, user_id: str) -> list[Notification]:
        return await self.counter.list_notifications(user_id)

    async def mark_notification_read(self, user_id: str, notification_id: str) -> bool:
        changed = await self._mark_read(user_id, [notification_id])
        return changed > 0

    async def mark_all_notifications_read(self, user_id: str) -> int:
        changed = await self._mark_read(user_id, None)
        logger.info("Marked {} notification(s) read for user {}", changed, user_id)
        return changed

    async def clear_read_notifications(self, user_id: str) -> int:
        removed = await self._persist(self._store.delete_read_notifications(user_id))
        logger.info("Cleared {} read notification(s) for user {}", removed, user_id)
        return removed

    async def health_check(self) -> bool:
        return await self._store.health_check()

    async def close(self) -> None:
        for counter in list(self._counters):
            self.unsubscribe_unread(counter)
        await self._store.close()

    async def _mark_read(self, user_id: str, notification_ids: list[str] | None) -> int:
        return await self._persist(self._store.mark_notifications_read(user_id, notification_ids))

    async def _persist(self, write: Awaitable[int]) -> int:
        try:
            return await write
        except PersistenceFailedError:
            raise
        except StoreError as exc:
            raise PersistenceFailedError(str(exc), transient=exc.transient) from exc
        except Exception as exc:
            raise PersistenceFailedError(str(exc)) from exc
