"""
Error taxonomy for the detention engine.

Storage helpers raise these; the HTTP layer maps them to status codes and
the alert evaluator logs them per driver without aborting a tick.
"""


class DetentionError(Exception):
    """Base class for detention engine errors."""
    status_code = 400


class InvalidTimeInput(DetentionError, ValueError):
    """Appointment or departure time is missing or cannot be parsed."""


class UnknownStopType(DetentionError, ValueError):
    pass


class OrderingViolation(DetentionError):
    """Departure time earlier than the appointment time."""


class NoActiveAppointment(DetentionError):
    pass


class DriverNotFound(DetentionError):
    status_code = 404


class LocationNotFound(DetentionError):
    status_code = 404


class DepartureAlreadyRecorded(DetentionError):
    """Final detention values are frozen for the current appointment cycle."""
    status_code = 409
