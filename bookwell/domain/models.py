import datetime as dt
from decimal import Decimal
from enum import Enum

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, model_validator


def overlaps(
    start_a: dt.datetime, end_a: dt.datetime, start_b: dt.datetime, end_b: dt.datetime
) -> bool:
    """Half-open interval intersection: ``[a, b)`` and ``[b, c)`` do not overlap."""
    return start_a < end_b and start_b < end_a


class AppointmentStatus(str, Enum):
    """Possible states of an appointment."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class WaitingStatus(str, Enum):
    """Possible states of a waiting-list entry."""

    WAITING = "waiting"
    NOTIFIED = "notified"


class Service(BaseModel):
    """A bookable offering owned by a provider."""

    model_config = ConfigDict(frozen=True)

    service_id: str
    provider_id: str
    name: str
    duration_minutes: int = Field(gt=0)
    price: Decimal = Field(default=Decimal("0"), ge=0)

    @property
    def duration(self) -> dt.timedelta:
        return dt.timedelta(minutes=self.duration_minutes)


class AppointmentDraft(BaseModel):
    """An appointment that has not been persisted yet."""

    model_config = ConfigDict(frozen=True)

    provider_id: str
    customer_id: str
    service_id: str
    start_time: AwareDatetime
    end_time: AwareDatetime
    notes: str | None = None

    @model_validator(mode="after")
    def _check_interval(self) -> "AppointmentDraft":
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time")
        return self


class Appointment(BaseModel):
    """A persisted commitment of a provider's time."""

    model_config = ConfigDict(frozen=True)

    appointment_id: str
    provider_id: str
    customer_id: str
    service_id: str
    start_time: AwareDatetime
    end_time: AwareDatetime
    status: AppointmentStatus = AppointmentStatus.CONFIRMED
    created_at: AwareDatetime | None = None
    notes: str | None = None

    def overlaps(self, start_time: dt.datetime, end_time: dt.datetime) -> bool:
        return overlaps(self.start_time, self.end_time, start_time, end_time)


class WaitingListDraft(BaseModel):
    """A waiting-list entry that has not been persisted yet."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    provider_id: str
    service_id: str
    preferred_date: dt.date


class WaitingListEntry(BaseModel):
    """A customer's request to hear about a freed slot on a given date."""

    model_config = ConfigDict(frozen=True)

    entry_id: str
    user_id: str
    provider_id: str
    service_id: str
    preferred_date: dt.date
    status: WaitingStatus = WaitingStatus.WAITING
    created_at: AwareDatetime


class Notification(BaseModel):
    """A message delivered to a user."""

    model_config = ConfigDict(frozen=True)

    notification_id: str
    user_id: str
    message: str
    is_read: bool = False
    created_at: AwareDatetime


class BookingOutcome(str, Enum):
    CONFIRMED = "confirmed"
    WAITLISTED = "waitlisted"


class BookingState(str, Enum):
    """Per-request progress of a booking decision."""

    REQUESTED = "requested"
    CHECKING = "checking"
    CONFIRMED = "confirmed"
    WAITLISTED = "waitlisted"


class BookingResult(BaseModel):
    """What a booking request turned into."""

    model_config = ConfigDict(frozen=True)

    outcome: BookingOutcome
    appointment: Appointment | None = None
    waiting_entry: WaitingListEntry | None = None

    @model_validator(mode="after")
    def _check_payload(self) -> "BookingResult":
        if self.outcome is BookingOutcome.CONFIRMED and self.appointment is None:
            raise ValueError("a confirmed booking must carry its appointment")
        if self.outcome is BookingOutcome.WAITLISTED and self.waiting_entry is None:
            raise ValueError("a waitlisted booking must carry its waiting entry")
        return self


class CancelOutcome(str, Enum):
    CANCELLED = "cancelled"
    CANCELLED_AND_PROMOTED = "cancelled_and_promoted"
    ALREADY_CANCELLED = "already_cancelled"


class CancelResult(BaseModel):
    """What a cancellation did, including any waiting-list promotion."""

    model_config = ConfigDict(frozen=True)

    outcome: CancelOutcome
    appointment: Appointment
    promoted: WaitingListEntry | None = None
    notification: Notification | None = None

    @property
    def changed(self) -> bool:
        return self.outcome is not CancelOutcome.ALREADY_CANCELLED
