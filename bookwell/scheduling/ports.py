import datetime as dt
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING, Protocol

from bookwell.domain.models import (
    Appointment,
    AppointmentDraft,
    AppointmentStatus,
    BookingOutcome,
    BookingResult,
    CancelResult,
    Notification,
    Service,
    WaitingListDraft,
    WaitingListEntry,
    WaitingStatus,
)
from bookwell.scheduling.feed import ChangeHandler, ChangeTopic, Subscription

if TYPE_CHECKING:
    from bookwell.scheduling.notifications import UnreadCounter


class AbstractSchedulingService(ABC):
    """Abstract base class for the operations the UI layer consumes."""

    @abstractmethod
    async def request_booking(
        self,
        customer_id: str,
        provider_id: str,
        service_id: str,
        start_time: dt.datetime,
        notes: str | None = None,
    ) -> BookingResult:
        """Confirm a slot if it is free, otherwise join the waiting list.

        Args:
            customer_id: The requesting customer.
            provider_id: The provider whose calendar is booked.
            service_id: The service being booked; its duration sets the end time.
            start_time: Timezone-aware start of the requested slot.
            notes: Free text from the customer, kept on a confirmed appointment.

        Returns:
            ``CONFIRMED`` with the appointment, or ``WAITLISTED`` with the entry.

        Raises:
            BookingValidationError: If the interval or service is invalid.
            BookingConflictError: If a concurrent booking took the slot first.
            StoreUnavailableError: If the availability read failed.
            PersistenceFailedError: If the write failed.
        """

    @abstractmethod
    async def preview_booking(
        self, provider_id: str, service_id: str, start_time: dt.datetime
    ) -> BookingOutcome:
        """Report what :meth:`request_booking` would do right now, without writing."""

    @abstractmethod
    async def cancel_appointment(self, appointment_id: str) -> CancelResult:
        """Cancel an appointment and promote the oldest waiting entry for its date.

        Args:
            appointment_id: The appointment's unique ID.

        Returns:
            The outcome, the appointment, and any promoted entry and notification.
            Cancelling an already-cancelled appointment returns ``ALREADY_CANCELLED``.

        Raises:
            AppointmentNotFoundError: If the appointment does not exist.
            StoreUnavailableError: If the appointment could not be read.
            PersistenceFailedError: If the cascade could not be committed.
        """

    @abstractmethod
    async def unread_count(self, user_id: str) -> int:
        """Recompute the number of unread notifications for a user."""

    @abstractmethod
    async def subscribe_unread(
        self, user_id: str, on_change: Callable[[int], None] | None = None
    ) -> "UnreadCounter":
        """Start a live unread counter for a user."""

    @abstractmethod
    def unsubscribe_unread(self, counter: "UnreadCounter") -> None:
        """Tear down a live unread counter."""

    @abstractmethod
    async def list_appointments(
        self,
        *,
        provider_id: str | None = None,
        customer_id: str | None = None,
        status: AppointmentStatus | None = None,
    ) -> list[Appointment]:
        """List appointments ordered by start time."""

    @abstractmethod
    async def list_waiting_entries(
        self,
        *,
        provider_id: str | None = None,
        user_id: str | None = None,
        status: WaitingStatus | None = None,
    ) -> list[WaitingListEntry]:
        """List waiting-list entries ordered by creation time."""

    @abstractmethod
    async def list_notifications(self, user_id: str) -> list[Notification]:
        """List a user's notifications, newest first."""

    @abstractmethod
    async def mark_notification_read(self, user_id: str, notification_id: str) -> bool:
        """Mark one notification read. Returns False if nothing changed."""

    @abstractmethod
    async def mark_all_notifications_read(self, user_id: str) -> int:
        """Mark every unread notification of a user read. Returns how many changed."""

    @abstractmethod
    async def clear_read_notifications(self, user_id: str) -> int:
        """Delete a user's read notifications. Returns how many were removed."""

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the backing store is reachable and responding."""

    @abstractmethod
    async def close(self) -> None:
        """Release resources held by this service."""


class SchedulingStoreProtocol(Protocol):
    """Low-level interface to the persistent store.

    ``insert_appointment`` and ``cancel_and_promote`` must each be evaluated
    atomically by the implementation.
    """

    async def get_service(self, service_id: str) -> Service | None:
        """Look up a service by ID."""
        ...

    async def get_appointment(self, appointment_id: str) -> Appointment | None:
        """Look up an appointment by ID."""
        ...

    async def list_appointments(
        self,
        *,
        provider_id: str | None = None,
        customer_id: str | None = None,
        status: AppointmentStatus | None = None,
    ) -> list[Appointment]:
        """List appointments ordered by start time."""
        ...

    async def count_overlapping(
        self, provider_id: str, start_time: dt.datetime, end_time: dt.datetime
    ) -> int:
        """Count confirmed appointments of a provider overlapping ``[start, end)``."""
        ...

    async def insert_appointment(self, draft: AppointmentDraft) -> Appointment:
        """Insert a confirmed appointment, raising BookingConflictError if it overlaps one."""
        ...

    async def insert_waiting_entry(self, draft: WaitingListDraft) -> WaitingListEntry:
        """Insert a waiting-list entry in status waiting."""
        ...

    async def list_waiting_entries(
        self,
        *,
        provider_id: str | None = None,
        user_id: str | None = None,
        status: WaitingStatus | None = None,
    ) -> list[WaitingListEntry]:
        """List waiting-list entries ordered by creation time."""
        ...

    async def cancel_and_promote(
        self, appointment_id: str, *, cancel_date: dt.date, message: str
    ) -> CancelResult:
        """Cancel, promote the oldest waiting entry for the date, and notify its user."""
        ...

    async def count_unread(self, user_id: str) -> int:
        """Count a user's unread notifications."""
        ...

    async def list_notifications(self, user_id: str) -> list[Notification]:
        """List a user's notifications, newest first."""
        ...

    async def mark_notifications_read(
        self, user_id: str, notification_ids: list[str] | None = None
    ) -> int:
        """Mark unread notifications read (all of them when ``notification_ids`` is None)."""
        ...

    async def delete_read_notifications(self, user_id: str) -> int:
        """Delete a user's read notifications and return how many rows went."""
        ...

    def subscribe(
        self, topic: ChangeTopic, handler: ChangeHandler, *, user_id: str | None = None
    ) -> Subscription:
        """Register for change events on a topic."""
        ...

    async def health_check(self) -> bool:
        """Check if the store is reachable."""
        ...

    async def close(self) -> None:
        """Release resources."""
        ...
