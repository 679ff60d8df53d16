"""
Error taxonomy shared by the gateway and the client.

Each error carries the HTTP status it maps to and a message that is safe to
show to the end user.
"""

from typing import Optional


class TrackerError(Exception):
    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(TrackerError):
    status_code = 400
    default_message = "Invalid request"


class IdentityError(TrackerError):
    """Raised by the identity provider when an account cannot be created."""

    status_code = 400
    default_message = "Could not create user"


class AuthError(TrackerError):
    status_code = 401
    default_message = "Unauthorized"


class NotFoundError(TrackerError):
    status_code = 404
    default_message = "Not found"


class StoreError(TrackerError):
    status_code = 500
    default_message = "Storage operation failed"


class TransportError(TrackerError):
    """The gateway could not be reached at all (client side only)."""

    status_code = 503
    default_message = "Service unavailable"


_BY_STATUS = {
    400: ValidationError,
    401: AuthError,
    404: NotFoundError,
    500: StoreError,
}


def error_for_status(status_code: int, message: Optional[str] = None) -> TrackerError:
    cls = _BY_STATUS.get(status_code, TrackerError)
    err = cls(message)
    if cls is TrackerError:
        err.status_code = status_code
    return err
