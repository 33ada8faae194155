"""
Error taxonomy for the data-access and workflow layer.

Every error carries the HTTP status the API answers with.
"""


class PortalError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotAuthenticatedError(PortalError):
    """No resolved caller identity."""
    status_code = 401


class ValidationError(PortalError, ValueError):
    """A required field is missing or invalid; nothing was written."""
    status_code = 400


class AccessDeniedError(PortalError):
    status_code = 403


class NotFoundError(PortalError):
    """The target row does not exist within the caller's scope."""
    status_code = 404


class InvalidTransitionError(PortalError):
    """The requested status change is not allowed from the current status."""
    status_code = 409


class BackendError(PortalError):
    """Opaque failure from the data store."""
    status_code = 500
