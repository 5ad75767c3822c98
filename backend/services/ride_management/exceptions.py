"""Custom exceptions for ride management."""

from services.matching.exceptions import (  # noqa: F401
    DispatchInProgress,
    GeoIndexUnavailable,
    InvalidTransition,
    NotificationError,
    PreconditionFailed,
    RideNotAvailableError,
    RideNotFoundError,
)


class DriverNotAvailableError(Exception):
    """Raised when driver is not available to accept rides."""
    pass


class ActiveRideExistsError(Exception):
    """Raised when the rider already has an active ride."""
    pass


class ServiceUnavailableError(Exception):
    """Raised when a pickup point lies inside an active red zone."""

    def __init__(self, message, zone=None):
        super().__init__(message)
        self.zone = zone
