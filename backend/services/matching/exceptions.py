"""Exceptions raised by the dispatch engine and its collaborators."""


class RideNotFoundError(Exception):
    """Raised when a ride cannot be found."""
    pass


class RideNotAvailableError(Exception):
    """Raised when a ride is not in an available state for the operation."""
    pass


class PreconditionFailed(RideNotAvailableError):
    """Raised when a conditional status update finds a different current status."""

    def __init__(self, request_id, expected_status, current_status):
        self.request_id = request_id
        self.expected_status = expected_status
        self.current_status = current_status
        super().__init__(
            f"Ride {request_id} is {getattr(current_status, 'value', current_status)}, "
            f"expected {getattr(expected_status, 'value', expected_status)}"
        )


class InvalidTransition(ValueError):
    """Raised for a status transition the ride state machine does not allow."""
    pass


class GeoIndexUnavailable(Exception):
    """Raised when the driver location index cannot be queried."""
    pass


class NotificationError(Exception):
    """Raised when an offer notification cannot be handed to the transport."""
    pass


class DispatchInProgress(Exception):
    """Raised when another dispatcher holds the lease on a ride request."""

    def __init__(self, request_id, owner=None):
        self.request_id = request_id
        self.owner = owner
        super().__init__(f"Ride {request_id} is already being dispatched")
