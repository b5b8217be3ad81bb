"""Integration tests for the PostgREST scheduling store.

These tests run against a real PostgREST instance serving
``sql/001_scheduling_core.sql`` and require:
  - POSTGREST_URL (and POSTGREST_API_KEY if the endpoint needs one)
  - BOOKWELL_TEST_SERVICE_ID naming an existing row in ``services``

Run explicitly with::

    uv run pytest -m integration
"""

import asyncio
import datetime as dt
import os
import random
import uuid
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from dotenv import load_dotenv

from bookwell.domain.exceptions import AppointmentNotFoundError
from bookwell.domain.models import BookingOutcome, BookingResult, CancelOutcome
from bookwell.scheduling.adapters.postgrest import PostgrestSchedulingStore
from bookwell.scheduling.service import SchedulingService

load_dotenv(override=True)

_URL = os.environ.get("POSTGREST_URL", "")
_API_KEY = os.environ.get("POSTGREST_API_KEY", "")
_SERVICE_ID = os.environ.get("BOOKWELL_TEST_SERVICE_ID", "")

_has_endpoint = bool(_URL) and bool(_SERVICE_ID)

pytestmark = [
    pytest.mark.integration,
    pytest.mark.asyncio,
    pytest.mark.skipif(
        not _has_endpoint,
        reason="POSTGREST_URL + BOOKWELL_TEST_SERVICE_ID must be set",
    ),
]


def _random_slot() -> dt.datetime:
    """A slot far enough in the future that parallel runs rarely collide."""
    day = dt.date(2090, 1, 1) + dt.timedelta(days=random.randint(0, 3000))
    return dt.datetime.combine(day, dt.time(10, 0), tzinfo=dt.timezone.utc)


@pytest_asyncio.fixture
async def service() -> AsyncGenerator[SchedulingService]:
    """A scheduling service on the real store, closed after each test."""
    s = SchedulingService(PostgrestSchedulingStore(_URL, api_key=_API_KEY))
    yield s
    await s.close()


@pytest_asyncio.fixture
async def provider_id(service: SchedulingService) -> str:
    store = service._store
    catalog_entry = await store.get_service(_SERVICE_ID)
    assert catalog_entry is not None, "BOOKWELL_TEST_SERVICE_ID not found"
    return catalog_entry.provider_id


class TestHealthCheck:
    async def test_returns_true_when_healthy(self, service: SchedulingService) -> None:
        assert await service.health_check() is True


class TestBookingLifecycle:
    async def test_book_waitlist_cancel_promote(
        self, service: SchedulingService, provider_id: str
    ) -> None:
        start = _random_slot()
        first, second = str(uuid.uuid4()), str(uuid.uuid4())

        booked = await service.request_booking(first, provider_id, _SERVICE_ID, start)
        assert booked.outcome is BookingOutcome.CONFIRMED
        assert booked.appointment is not None

        waiting = await service.request_booking(second, provider_id, _SERVICE_ID, start)
        assert waiting.outcome is BookingOutcome.WAITLISTED

        unread_before = await service.unread_count(second)
        result = await service.cancel_appointment(booked.appointment.appointment_id)

        assert result.outcome is CancelOutcome.CANCELLED_AND_PROMOTED
        assert result.promoted is not None
        assert result.promoted.user_id == second
        assert await service.unread_count(second) == unread_before + 1

        again = await service.cancel_appointment(booked.appointment.appointment_id)
        assert again.outcome is CancelOutcome.ALREADY_CANCELLED

        assert await service.mark_all_notifications_read(second) >= 1
        assert await service.unread_count(second) == 0

    async def test_cascade_promotes_waiters_oldest_first(
        self, service: SchedulingService, provider_id: str
    ) -> None:
        start = _random_slot()
        owner = str(uuid.uuid4())
        waiters = [str(uuid.uuid4()) for _ in range(3)]

        booked = await service.request_booking(owner, provider_id, _SERVICE_ID, start)
        assert booked.appointment is not None
        for waiter in waiters:
            result = await service.request_booking(waiter, provider_id, _SERVICE_ID, start)
            assert result.outcome is BookingOutcome.WAITLISTED

        promoted = []
        current = booked.appointment
        for waiter in waiters:
            result = await service.cancel_appointment(current.appointment_id)
            assert result.promoted is not None
            promoted.append(result.promoted.user_id)
            rebooked = await service.request_booking(waiter, provider_id, _SERVICE_ID, start)
            assert rebooked.appointment is not None
            current = rebooked.appointment

        assert promoted == waiters
        await service.cancel_appointment(current.appointment_id)

    async def test_concurrent_requests_confirm_at_most_one(
        self, service: SchedulingService, provider_id: str
    ) -> None:
        start = _random_slot()

        outcomes = await asyncio.gather(
            *(
                service.request_booking(str(uuid.uuid4()), provider_id, _SERVICE_ID, start)
                for _ in range(4)
            ),
            return_exceptions=True,
        )

        confirmed = [
            o
            for o in outcomes
            if isinstance(o, BookingResult) and o.outcome is BookingOutcome.CONFIRMED
        ]
        assert len(confirmed) <= 1
        for o in confirmed:
            assert o.appointment is not None
            await service.cancel_appointment(o.appointment.appointment_id)

    async def test_unknown_appointment(self, service: SchedulingService) -> None:
        with pytest.raises(AppointmentNotFoundError):
            await service.cancel_appointment(str(uuid.uuid4()))
