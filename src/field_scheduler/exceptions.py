"""Error types raised by the scheduling core and its collaborators."""


class SchedulingError(Exception):
    """Base class for all scheduling errors."""


class NotFoundError(SchedulingError):
    """A referenced customer, appointment or technician does not exist."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind.capitalize()} not found: {identifier}")


class NoQualifiedResourceError(SchedulingError):
    """No technician can perform the requested service type."""


class EstimatorUnavailableError(SchedulingError):
    """The travel-time estimator could not produce an estimate."""


class StoreError(SchedulingError):
    """The record store failed to read or write."""


class ConcurrentModificationError(SchedulingError):
    """An appointment changed between read and write (version mismatch)."""

    def __init__(self, appointment_id: str, expected_version: int, actual_version: int):
        self.appointment_id = appointment_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Appointment {appointment_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )


class InvalidTimeRangeError(SchedulingError, ValueError):
    """A time window whose start is not before its end."""


class EventDeliveryError(SchedulingError):
    """The event sink could not deliver a notification."""
