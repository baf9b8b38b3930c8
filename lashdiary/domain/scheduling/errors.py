"""Booking domain errors"""


class BookingError(Exception):
    """Base class for booking engine errors"""

    status_code = 400


class InvalidDate(BookingError):
    """Malformed or impossible date / slot input"""

    status_code = 400


class InvalidRequest(BookingError):
    """Request is well-formed but not acceptable (same slot, bad guest details, unknown service)"""

    status_code = 400


class SlotUnavailable(BookingError):
    """Slot is no longer offerable; the caller should pick another time"""

    status_code = 409


class BookingNotFound(BookingError):
    """No booking for this token, or the token was revoked"""

    status_code = 404


class ManageForbidden(BookingError):
    """Booking can no longer be changed online"""

    status_code = 403


class PersistenceFailure(BookingError):
    """Ledger write failed; retrying is safe"""

    status_code = 503
