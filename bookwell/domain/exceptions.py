import datetime as dt


class SchedulingError(Exception):
    """Base exception for all scheduling-core errors."""


class BookingValidationError(SchedulingError):
    """Raised when a request is rejected before anything is written."""


class InvalidIntervalError(BookingValidationError):
    """Raised when a time interval is naive or not strictly increasing."""

    def __init__(self, start_time: dt.datetime, end_time: dt.datetime | None, reason: str) -> None:
        self.start_time = start_time
        self.end_time = end_time
        self.reason = reason
        super().__init__(f"Invalid interval: {reason}")


class NotFoundError(SchedulingError):
    """Raised when a referenced record does not exist."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind.capitalize()} not found: {identifier}")


class ServiceNotFoundError(BookingValidationError, NotFoundError):
    """Raised when a booking references an unknown service."""

    def __init__(self, service_id: str) -> None:
        NotFoundError.__init__(self, "service", service_id)


class AppointmentNotFoundError(NotFoundError):
    """Raised when a cancellation references an unknown appointment."""

    def __init__(self, appointment_id: str) -> None:
        super().__init__("appointment", appointment_id)


class BookingConflictError(SchedulingError):
    """Raised when a concurrent request took the interval between check and commit.

    Distinct from a normal "unavailable" verdict: the caller decides whether
    to resubmit as a fresh request.
    """

    def __init__(self, provider_id: str, start_time: dt.datetime, end_time: dt.datetime) -> None:
        self.provider_id = provider_id
        self.start_time = start_time
        self.end_time = end_time
        super().__init__(
            f"Interval {start_time.isoformat()} - {end_time.isoformat()} was taken "
            f"for provider {provider_id} by a concurrent booking"
        )


class StoreError(SchedulingError):
    """Base for backing-store failures. ``transient`` errors are safe to retry."""

    def __init__(self, message: str, *, transient: bool = True) -> None:
        self.transient = transient
        super().__init__(message)


class StoreUnavailableError(StoreError):
    """Raised when a read against the backing store fails."""


class PersistenceFailedError(StoreError):
    """Raised when a write fails; no partial state is left behind."""

    def __init__(self, reason: str, *, transient: bool = True) -> None:
        self.reason = reason
        super().__init__(f"Failed to persist: {reason}", transient=transient)
