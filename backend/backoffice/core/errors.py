"""
Business rule errors raised by the service layer.

All of them derive from ValueError so routers can keep a single
``except ValueError`` branch for user-correctable failures.
"""
from fastapi import status


class ValidationError(ValueError):
    """User-correctable input problem (missing amount, bad rate, ...)"""
    status_code = status.HTTP_400_BAD_REQUEST


class StateTransitionError(ValueError):
    """Action not allowed in the current state of the resource"""
    status_code = status.HTTP_409_CONFLICT


class NotFoundError(ValueError):
    status_code = status.HTTP_404_NOT_FOUND


def http_status_for(exc: Exception) -> int:
    """Map a service exception to an HTTP status code"""
    if isinstance(exc, PermissionError):
        return status.HTTP_403_FORBIDDEN
    return getattr(exc, "status_code", status.HTTP_400_BAD_REQUEST)
