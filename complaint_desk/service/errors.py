"""
Domain errors raised by the complaint data service.

Every rejected operation raises one of these so callers can tell failure
from success and show an actionable message. The API layer maps each class
to an HTTP status code.
"""

from typing import Any, Dict, Optional


class ComplaintDeskError(Exception):
    """Base class for all complaint desk errors"""

    status_code = 400

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(ComplaintDeskError):
    """Missing or invalid input; no backend call was issued"""

    status_code = 422


class AuthorizationError(ComplaintDeskError):
    """Caller identity or role does not allow the operation"""

    status_code = 403


class NotFoundError(ComplaintDeskError):
    """Referenced complaint or notification does not exist"""

    status_code = 404


class StateTransitionError(ComplaintDeskError):
    """Operation is illegal in the complaint's current status"""

    status_code = 409


class BackendUnavailableError(ComplaintDeskError):
    """Persistence backend failed or timed out; the write may not have happened"""

    status_code = 503
