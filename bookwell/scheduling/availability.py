import datetime as dt

from loguru import logger

from bookwell.domain.exceptions import InvalidIntervalError, StoreUnavailableError
from bookwell.scheduling.adapters.datetime_helpers import is_aware
from bookwell.scheduling.ports import SchedulingStoreProtocol


def validate_interval(start_time: dt.datetime, end_time: dt.datetime) -> None:
    """Raise InvalidIntervalError unless ``[start_time, end_time)`` is aware and non-empty."""
    if not is_aware(start_time) or not is_aware(end_time):
        raise InvalidIntervalError(start_time, end_time, "timestamps must be timezone-aware")
    if start_time >= end_time:
        raise InvalidIntervalError(start_time, end_time, "start_time must be before end_time")


class AvailabilityChecker:
    """Answers whether a provider's interval is free of confirmed appointments.

    The overlap predicate (``existing.start < end AND existing.end > start``)
    is evaluated by the store, so only a count crosses the boundary.
    """

    def __init__(self, store: SchedulingStoreProtocol) -> None:
        self._store = store

    async def is_available(
        self, provider_id: str, start_time: dt.datetime, end_time: dt.datetime
    ) -> bool:
        validate_interval(start_time, end_time)

        try:
            conflicts = await self._store.count_overlapping(provider_id, start_time, end_time)
        except StoreUnavailableError:
            raise
        except Exception as exc:
            raise StoreUnavailableError(f"Availability check failed: {exc}") from exc

        if conflicts:
            logger.debug(
                "Provider {} has {} confirmed appointment(s) overlapping {} - {}",
                provider_id,
                conflicts,
                start_time.isoformat(),
                end_time.isoformat(),
            )
        return conflicts == 0
