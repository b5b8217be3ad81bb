import asyncio
import datetime as dt

import pytest

from bookwell.domain.exceptions import (
    AppointmentNotFoundError,
    PersistenceFailedError,
    StoreUnavailableError,
)
from bookwell.domain.models import (
    Appointment,
    AppointmentStatus,
    BookingOutcome,
    CancelOutcome,
    WaitingStatus,
)
from bookwell.scheduling.adapters.memory import InMemorySchedulingStore
from bookwell.scheduling.cancellation import promotion_message
from bookwell.scheduling.service import SchedulingService

# Fixtures (store, service, slow_store, slow_service) provided by tests/conftest.py

DAY = dt.date(2027, 6, 15)


def _at(hour: int, minute: int = 0, day: dt.date = DAY) -> dt.datetime:
    return dt.datetime.combine(day, dt.time(hour, minute), tzinfo=dt.timezone.utc)


async def _confirm(service: SchedulingService, customer_id: str, start: dt.datetime) -> Appointment:
    result = await service.request_booking(customer_id, "prov-1", "haircut", start)
    assert result.outcome is BookingOutcome.CONFIRMED and result.appointment is not None
    return result.appointment


async def _waitlist(service: SchedulingService, customer_id: str, start: dt.datetime) -> str:
    result = await service.request_booking(customer_id, "prov-1", "haircut", start)
    assert result.outcome is BookingOutcome.WAITLISTED and result.waiting_entry is not None
    return result.waiting_entry.entry_id


class TestCancelAppointment:
    @pytest.mark.asyncio
    async def test_promotes_only_the_earliest_waiting_entry(
        self, service: SchedulingService, store: InMemorySchedulingStore
    ) -> None:
        appointment = await _confirm(service, "cust-1", _at(10))
        first = await _waitlist(service, "cust-2", _at(10))
        second = await _waitlist(service, "cust-3", _at(10, 15))

        result = await service.cancel_appointment(appointment.appointment_id)

        assert result.outcome is CancelOutcome.CANCELLED_AND_PROMOTED
        assert result.appointment.status is AppointmentStatus.CANCELLED
        assert result.promoted is not None
        assert result.promoted.entry_id == first
        assert store.waiting_entries[first].status is WaitingStatus.NOTIFIED
        assert store.waiting_entries[second].status is WaitingStatus.WAITING
        assert len(store.notifications) == 1
        assert result.notification is not None
        assert result.notification.user_id == "cust-2"
        assert result.notification.is_read is False

    @pytest.mark.asyncio
    async def test_next_cancellation_on_same_date_promotes_the_next_entry(
        self, service: SchedulingService, store: InMemorySchedulingStore
    ) -> None:
        morning = await _confirm(service, "cust-1", _at(10))
        afternoon = await _confirm(service, "cust-4", _at(14))
        await _waitlist(service, "cust-2", _at(10))
        await _waitlist(service, "cust-3", _at(14))

        await service.cancel_appointment(morning.appointment_id)
        result = await service.cancel_appointment(afternoon.appointment_id)

        assert result.promoted is not None
        assert result.promoted.user_id == "cust-3"
        assert {n.user_id for n in store.notifications.values()} == {"cust-2", "cust-3"}

    @pytest.mark.asyncio
    async def test_without_waiting_entries_only_cancels(
        self, service: SchedulingService, store: InMemorySchedulingStore
    ) -> None:
        appointment = await _confirm(service, "cust-1", _at(10))

        result = await service.cancel_appointment(appointment.appointment_id)

        assert result.outcome is CancelOutcome.CANCELLED
        assert result.promoted is None
        assert result.notification is None
        assert store.notifications == {}

    @pytest.mark.asyncio
    async def test_entries_for_another_date_are_not_promoted(
        self, service: SchedulingService, store: InMemorySchedulingStore
    ) -> None:
        next_day = DAY + dt.timedelta(days=1)
        appointment = await _confirm(service, "cust-1", _at(10))
        await _confirm(service, "cust-1", _at(10, day=next_day))
        other_day = await _waitlist(service, "cust-2", _at(10, day=next_day))

        result = await service.cancel_appointment(appointment.appointment_id)

        assert result.outcome is CancelOutcome.CANCELLED
        assert store.waiting_entries[other_day].status is WaitingStatus.WAITING

    @pytest.mark.asyncio
    async def test_entries_for_another_provider_are_not_promoted(
        self, service: SchedulingService, store: InMemorySchedulingStore
    ) -> None:
        appointment = await _confirm(service, "cust-1", _at(10))
        await service.request_booking("cust-1", "prov-2", "massage", _at(10))
        waiting = await service.request_booking("cust-2", "prov-2", "massage", _at(10))
        assert waiting.waiting_entry is not None

        result = await service.cancel_appointment(appointment.appointment_id)

        assert result.outcome is CancelOutcome.CANCELLED
        assert store.waiting_entries[waiting.waiting_entry.entry_id].status is WaitingStatus.WAITING

    @pytest.mark.asyncio
    async def test_notification_names_the_freed_date(
        self, service: SchedulingService, store: InMemorySchedulingStore
    ) -> None:
        appointment = await _confirm(service, "cust-1", _at(10))
        await _waitlist(service, "cust-2", _at(10))

        result = await service.cancel_appointment(appointment.appointment_id)

        assert result.notification is not None
        assert result.notification.message == promotion_message(DAY)
        assert "June 15, 2027" in result.notification.message

    @pytest.mark.asyncio
    async def test_freed_slot_can_be_booked_again(self, service: SchedulingService) -> None:
        appointment = await _confirm(service, "cust-1", _at(10))
        await service.cancel_appointment(appointment.appointment_id)

        rebooked = await service.request_booking("cust-2", "prov-1", "haircut", _at(10))

        assert rebooked.outcome is BookingOutcome.CONFIRMED

    @pytest.mark.asyncio
    async def test_pending_appointment_frees_nothing(
        self, service: SchedulingService, store: InMemorySchedulingStore
    ) -> None:
        confirmed = await _confirm(service, "cust-1", _at(10))
        await _waitlist(service, "cust-2", _at(10))
        pending = confirmed.model_copy(
            update={"appointment_id": "apt-pending", "status": AppointmentStatus.PENDING}
        )
        store.appointments[pending.appointment_id] = pending

        result = await service.cancel_appointment("apt-pending")

        assert result.outcome is CancelOutcome.CANCELLED
        assert store.notifications == {}


class TestIdempotentCancellation:
    @pytest.mark.asyncio
    async def test_second_cancel_is_a_no_op(
        self, service: SchedulingService, store: InMemorySchedulingStore
    ) -> None:
        appointment = await _confirm(service, "cust-1", _at(10))
        await _waitlist(service, "cust-2", _at(10))
        later = await _waitlist(service, "cust-3", _at(10))
        await service.cancel_appointment(appointment.appointment_id)

        again = await service.cancel_appointment(appointment.appointment_id)

        assert again.outcome is CancelOutcome.ALREADY_CANCELLED
        assert again.changed is False
        assert again.promoted is None
        assert len(store.notifications) == 1
        assert store.waiting_entries[later].status is WaitingStatus.WAITING

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_cancels_promote_once(
        self, slow_service: SchedulingService, slow_store: InMemorySchedulingStore
    ) -> None:
        appointment = await _confirm(slow_service, "cust-1", _at(10))
        await _waitlist(slow_service, "cust-2", _at(10))
        await _waitlist(slow_service, "cust-3", _at(10))

        results = await asyncio.gather(
            slow_service.cancel_appointment(appointment.appointment_id),
            slow_service.cancel_appointment(appointment.appointment_id),
        )

        outcomes = sorted(r.outcome.value for r in results)
        assert outcomes == [
            CancelOutcome.ALREADY_CANCELLED.value,
            CancelOutcome.CANCELLED_AND_PROMOTED.value,
        ]
        assert len(slow_store.notifications) == 1

    @pytest.mark.asyncio
    async def test_concurrent_cancels_on_same_date_promote_distinct_entries(
        self, slow_service: SchedulingService, slow_store: InMemorySchedulingStore
    ) -> None:
        morning = await _confirm(slow_service, "cust-1", _at(10))
        afternoon = await _confirm(slow_service, "cust-4", _at(14))
        await _waitlist(slow_service, "cust-2", _at(10))
        await _waitlist(slow_service, "cust-3", _at(14))

        results = await asyncio.gather(
            slow_service.cancel_appointment(morning.appointment_id),
            slow_service.cancel_appointment(afternoon.appointment_id),
        )

        promoted = [r.promoted.user_id for r in results if r.promoted is not None]
        assert sorted(promoted) == ["cust-2", "cust-3"]
        assert len(slow_store.notifications) == 2


class TestCancellationFailures:
    @pytest.mark.asyncio
    async def test_unknown_appointment_raises_not_found(self, service: SchedulingService) -> None:
        with pytest.raises(AppointmentNotFoundError, match="apt-404"):
            await service.cancel_appointment("apt-404")

    @pytest.mark.asyncio
    async def test_read_failure_raises_store_unavailable(
        self, service: SchedulingService, store: InMemorySchedulingStore
    ) -> None:
        store.read_error = RuntimeError("network")

        with pytest.raises(StoreUnavailableError, match="network"):
            await service.cancel_appointment("apt-1")

    @pytest.mark.asyncio
    async def test_write_failure_leaves_no_partial_state(
        self, service: SchedulingService, store: InMemorySchedulingStore
    ) -> None:
        appointment = await _confirm(service, "cust-1", _at(10))
        entry_id = await _waitlist(service, "cust-2", _at(10))
        store.write_error = RuntimeError("disk full")

        with pytest.raises(PersistenceFailedError, match="disk full"):
            await service.cancel_appointment(appointment.appointment_id)

        assert store.appointments[appointment.appointment_id].status is AppointmentStatus.CONFIRMED
        assert store.waiting_entries[entry_id].status is WaitingStatus.WAITING
        assert store.notifications == {}

    @pytest.mark.asyncio
    async def test_retry_after_transient_failure_succeeds(
        self, service: SchedulingService, store: InMemorySchedulingStore
    ) -> None:
        appointment = await _confirm(service, "cust-1", _at(10))
        await _waitlist(service, "cust-2", _at(10))
        store.write_error = RuntimeError("timeout")
        with pytest.raises(PersistenceFailedError):
            await service.cancel_appointment(appointment.appointment_id)

        store.write_error = None
        result = await service.cancel_appointment(appointment.appointment_id)

        assert result.outcome is CancelOutcome.CANCELLED_AND_PROMOTED
        assert len(store.notifications) == 1
