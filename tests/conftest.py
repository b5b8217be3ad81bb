import datetime as dt
from collections.abc import Callable
from decimal import Decimal

import pytest

from bookwell.domain.models import Service
from bookwell.scheduling.adapters.memory import InMemorySchedulingStore
from bookwell.scheduling.service import SchedulingService


def _ticking_clock() -> Callable[[], dt.datetime]:
    """A clock that advances one second per reading, so creation order is unambiguous."""
    current = dt.datetime(2027, 1, 1, tzinfo=dt.timezone.utc)

    def _now() -> dt.datetime:
        nonlocal current
        current += dt.timedelta(seconds=1)
        return current

    return _now


def _seed_catalog(store: InMemorySchedulingStore) -> None:
    store.add_service(
        Service(
            service_id="haircut",
            provider_id="prov-1",
            name="Haircut",
            duration_minutes=30,
            price=Decimal("25.00"),
        )
    )
    store.add_service(
        Service(service_id="colour", provider_id="prov-1", name="Colour", duration_minutes=90)
    )
    store.add_service(
        Service(service_id="massage", provider_id="prov-2", name="Massage", duration_minutes=60)
    )


@pytest.fixture
def store() -> InMemorySchedulingStore:
    store = InMemorySchedulingStore(clock=_ticking_clock())
    _seed_catalog(store)
    return store


@pytest.fixture
def slow_store() -> InMemorySchedulingStore:
    """A store whose every operation suspends for a few milliseconds."""
    store = InMemorySchedulingStore(latency=0.005, clock=_ticking_clock())
    _seed_catalog(store)
    return store


@pytest.fixture
def service(store: InMemorySchedulingStore) -> SchedulingService:
    return SchedulingService(store)


@pytest.fixture
def slow_service(slow_store: InMemorySchedulingStore) -> SchedulingService:
    return SchedulingService(slow_store)
