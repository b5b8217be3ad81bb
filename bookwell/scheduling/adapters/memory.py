import asyncio
import datetime as dt
import itertools
from collections import defaultdict
from collections.abc import Callable

from bookwell.domain.exceptions import AppointmentNotFoundError, BookingConflictError
from bookwell.domain.models import (
    Appointment,
    AppointmentDraft,
    AppointmentStatus,
    CancelOutcome,
    CancelResult,
    Notification,
    Service,
    WaitingListDraft,
    WaitingListEntry,
    WaitingStatus,
)
from bookwell.scheduling.feed import (
    ChangeEvent,
    ChangeFeed,
    ChangeHandler,
    ChangeTopic,
    Subscription,
)


def _utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class InMemorySchedulingStore:
    """In-memory implementation of the SchedulingStoreProtocol protocol.

    Every operation yields to the event loop at least once (``latency``
    seconds when set), so concurrent requests genuinely interleave.  The
    guarded insert holds a per-provider lock and the cancellation cascade a
    per ``(provider_id, date)`` lock; writes are staged and committed after
    the last suspension point.

    Pre-load ``services`` (or call ``add_service``) to control the catalog.
    Set ``read_error`` or ``write_error`` to make the corresponding kind of
    operation raise; a failing write never leaves partial state.
    """

    def __init__(
        self,
        *,
        latency: float = 0.0,
        clock: Callable[[], dt.datetime] = _utc_now,
    ) -> None:
        self.services: dict[str, Service] = {}
        self.appointments: dict[str, Appointment] = {}
        self.waiting_entries: dict[str, WaitingListEntry] = {}
        self.notifications: dict[str, Notification] = {}
        self.closed: bool = False

        self.read_error: Exception | None = None
        self.write_error: Exception | None = None

        self._latency = latency
        self._clock = clock
        self._ids = itertools.count(1)
        self._feed = ChangeFeed()
        self._provider_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._cascade_locks: defaultdict[tuple[str, dt.date], asyncio.Lock] = defaultdict(
            asyncio.Lock
        )

    @property
    def feed(self) -> ChangeFeed:
        return self._feed

    def add_service(self, service: Service) -> Service:
        self.services[service.service_id] = service
        return service

    async def add_notification(
        self, user_id: str, message: str, *, is_read: bool = False
    ) -> Notification:
        """Write a notification directly, as an external collaborator would."""
        await self._io()
        self._raise_on_write()
        notification = Notification(
            notification_id=self._next_id("ntf"),
            user_id=user_id,
            message=message,
            is_read=is_read,
            created_at=self._clock(),
        )
        self.notifications[notification.notification_id] = notification
        self._feed.publish(
            ChangeEvent(ChangeTopic.NOTIFICATIONS, user_id, notification.notification_id)
        )
        return notification

    async def get_service(self, service_id: str) -> Service | None:
        await self._io()
        self._raise_on_read()
        return self.services.get(service_id)

    async def get_appointment(self, appointment_id: str) -> Appointment | None:
        await self._io()
        self._raise_on_read()
        return self.appointments.get(appointment_id)

    async def list_appointments(
        self,
        *,
        provider_id: str | None = None,
        customer_id: str | None = None,
        status: AppointmentStatus | None = None,
    ) -> list[Appointment]:
        await self._io()
        self._raise_on_read()
        found = [
            a
            for a in self.appointments.values()
            if (provider_id is None or a.provider_id == provider_id)
            and (customer_id is None or a.customer_id == customer_id)
            and (status is None or a.status is status)
        ]
        return sorted(found, key=lambda a: a.start_time)

    async def count_overlapping(
        self, provider_id: str, start_time: dt.datetime, end_time: dt.datetime
    ) -> int:
        await self._io()
        self._raise_on_read()
        return len(self._overlapping(provider_id, start_time, end_time))

    async def insert_appointment(self, draft: AppointmentDraft) -> Appointment:
        async with self._provider_locks[draft.provider_id]:
            await self._io()
            self._raise_on_read()
            if self._overlapping(draft.provider_id, draft.start_time, draft.end_time):
                raise BookingConflictError(draft.provider_id, draft.start_time, draft.end_time)

            appointment = Appointment(
                appointment_id=self._next_id("apt"),
                status=AppointmentStatus.CONFIRMED,
                created_at=self._clock(),
                **draft.model_dump(),
            )
            await self._io()
            self._raise_on_write()
            self.appointments[appointment.appointment_id] = appointment

        self._feed.publish(
            ChangeEvent(ChangeTopic.APPOINTMENTS, draft.customer_id, appointment.appointment_id)
        )
        return appointment

    async def insert_waiting_entry(self, draft: WaitingListDraft) -> WaitingListEntry:
        await self._io()
        self._raise_on_write()
        entry = WaitingListEntry(
            entry_id=self._next_id("wait"),
            status=WaitingStatus.WAITING,
            created_at=self._clock(),
            **draft.model_dump(),
        )
        self.waiting_entries[entry.entry_id] = entry
        self._feed.publish(ChangeEvent(ChangeTopic.WAITING_LIST, draft.user_id, entry.entry_id))
        return entry

    async def list_waiting_entries(
        self,
        *,
        provider_id: str | None = None,
        user_id: str | None = None,
        status: WaitingStatus | None = None,
    ) -> list[WaitingListEntry]:
        await self._io()
        self._raise_on_read()
        found = [
            e
            for e in self.waiting_entries.values()
            if (provider_id is None or e.provider_id == provider_id)
            and (user_id is None or e.user_id == user_id)
            and (status is None or e.status is status)
        ]
        # Stable sort: equal timestamps keep insertion order
        return sorted(found, key=lambda e: e.created_at)

    async def cancel_and_promote(
        self, appointment_id: str, *, cancel_date: dt.date, message: str
    ) -> CancelResult:
        await self._io()
        self._raise_on_read()
        current = self.appointments.get(appointment_id)
        if current is None:
            raise AppointmentNotFoundError(appointment_id)

        async with self._cascade_locks[(current.provider_id, cancel_date)]:
            await self._io()
            current = self.appointments[appointment_id]
            if current.status is AppointmentStatus.CANCELLED:
                return CancelResult(outcome=CancelOutcome.ALREADY_CANCELLED, appointment=current)

            cancelled = current.model_copy(update={"status": AppointmentStatus.CANCELLED})
            promoted: WaitingListEntry | None = None
            notification: Notification | None = None
            if current.status is AppointmentStatus.CONFIRMED:
                candidate = self._oldest_waiting(current.provider_id, cancel_date)
                if candidate is not None:
                    promoted = candidate.model_copy(update={"status": WaitingStatus.NOTIFIED})
                    notification = Notification(
                        notification_id=self._next_id("ntf"),
                        user_id=candidate.user_id,
                        message=message,
                        created_at=self._clock(),
                    )

            await self._io()
            self._raise_on_write()
            self.appointments[appointment_id] = cancelled
            if promoted is not None and notification is not None:
                self.waiting_entries[promoted.entry_id] = promoted
                self.notifications[notification.notification_id] = notification

        self._feed.publish(
            ChangeEvent(ChangeTopic.APPOINTMENTS, cancelled.customer_id, appointment_id)
        )
        if promoted is not None and notification is not None:
            self._feed.publish(
                ChangeEvent(ChangeTopic.WAITING_LIST, promoted.user_id, promoted.entry_id)
            )
            self._feed.publish(
                ChangeEvent(
                    ChangeTopic.NOTIFICATIONS, notification.user_id, notification.notification_id
                )
            )
            return CancelResult(
                outcome=CancelOutcome.CANCELLED_AND_PROMOTED,
                appointment=cancelled,
                promoted=promoted,
                notification=notification,
            )
        return CancelResult(outcome=CancelOutcome.CANCELLED, appointment=cancelled)

    async def count_unread(self, user_id: str) -> int:
        await self._io()
        self._raise_on_read()
        return sum(
            1 for n in self.notifications.values() if n.user_id == user_id and not n.is_read
        )

    async def list_notifications(self, user_id: str) -> list[Notification]:
        await self._io()
        self._raise_on_read()
        found = [n for n in self.notifications.values() if n.user_id == user_id]
        return sorted(found, key=lambda n: n.created_at, reverse=True)

    async def mark_notifications_read(
        self, user_id: str, notification_ids: list[str] | None = None
    ) -> int:
        await self._io()
        self._raise_on_write()
        targets = [
            n
            for n in self.notifications.values()
            if n.user_id == user_id
            and not n.is_read
            and (notification_ids is None or n.notification_id in notification_ids)
        ]
        for n in targets:
            self.notifications[n.notification_id] = n.model_copy(update={"is_read": True})
        if targets:
            self._feed.publish(ChangeEvent(ChangeTopic.NOTIFICATIONS, user_id))
        return len(targets)

    async def delete_read_notifications(self, user_id: str) -> int:
        await self._io()
        self._raise_on_write()
        targets = [
            n.notification_id
            for n in self.notifications.values()
            if n.user_id == user_id and n.is_read
        ]
        for notification_id in targets:
            del self.notifications[notification_id]
        if targets:
            self._feed.publish(ChangeEvent(ChangeTopic.NOTIFICATIONS, user_id))
        return len(targets)

    def subscribe(
        self, topic: ChangeTopic, handler: ChangeHandler, *, user_id: str | None = None
    ) -> Subscription:
        return self._feed.subscribe(topic, handler, user_id=user_id)

    async def health_check(self) -> bool:
        return not self.closed

    async def close(self) -> None:
        self._feed.close()
        self.closed = True

    async def _io(self) -> None:
        await asyncio.sleep(self._latency)

    def _raise_on_read(self) -> None:
        if self.read_error:
            raise self.read_error

    def _raise_on_write(self) -> None:
        if self.write_error:
            raise self.write_error

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def _overlapping(
        self, provider_id: str, start_time: dt.datetime, end_time: dt.datetime
    ) -> list[Appointment]:
        return [
            a
            for a in self.appointments.values()
            if a.provider_id == provider_id
            and a.status is AppointmentStatus.CONFIRMED
            and a.overlaps(start_time, end_time)
        ]

    def _oldest_waiting(self, provider_id: str, date: dt.date) -> WaitingListEntry | None:
        waiting = [
            e
            for e in self.waiting_entries.values()
            if e.provider_id == provider_id
            and e.preferred_date == date
            and e.status is WaitingStatus.WAITING
        ]
        return min(waiting, key=lambda e: e.created_at, default=None)
