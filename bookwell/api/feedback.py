from enum import Enum

from bookwell.domain.models import BookingOutcome, CancelOutcome


class Failure(Enum):
    CONFLICT = "conflict"
    STORE_UNAVAILABLE = "store_unavailable"
    UNEXPECTED = "unexpected"


FEEDBACK_MESSAGES: dict[BookingOutcome | CancelOutcome | Failure, str] = {
    BookingOutcome.CONFIRMED: "Your appointment is confirmed.",
    BookingOutcome.WAITLISTED: (
        "That time is already taken. You have been added to the waiting list "
        "and will be notified if a slot opens up on that day."
    ),
    CancelOutcome.CANCELLED: "The appointment has been cancelled.",
    CancelOutcome.CANCELLED_AND_PROMOTED: (
        "The appointment has been cancelled and the next customer on the waiting list was notified."
    ),
    CancelOutcome.ALREADY_CANCELLED: "This appointment was already cancelled.",
    Failure.CONFLICT: (
        "Someone booked that time a moment ago. Please submit your request again."
    ),
    Failure.STORE_UNAVAILABLE: (
        "We could not reach the booking system. Nothing was saved; please try again."
    ),
    Failure.UNEXPECTED: "An unexpected error occurred. Nothing was saved.",
}

DEFAULT_FEEDBACK: str = "Request completed."


def feedback_for(key: BookingOutcome | CancelOutcome | Failure) -> str:
    return FEEDBACK_MESSAGES.get(key, DEFAULT_FEEDBACK)
