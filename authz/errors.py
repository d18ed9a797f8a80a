"""
Error taxonomy for the authorization engine.

Every error carries the HTTP status it maps to so the FastAPI layer can
translate it with a single exception handler.
"""
from typing import Optional

from fastapi import status


NOT_PERMITTED_MESSAGE = "You are not permitted to perform this action"


class AuthorizationError(Exception):
    """Base class for every error raised by the engine."""
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "Unexpected authorization error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class BadRequestError(AuthorizationError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class UnauthorizedError(AuthorizationError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Authentication required"


class ForbiddenError(AuthorizationError):
    """
    Raised for hierarchy, guardrail and missing-permission failures.

    The default message is deliberately generic. Callers pass a specific
    message only for protected-resource rules that reveal nothing about the
    permission model.
    """
    status_code = status.HTTP_403_FORBIDDEN
    default_message = NOT_PERMITTED_MESSAGE


class NotFoundError(AuthorizationError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"


class ConflictError(AuthorizationError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Resource already exists"


class InternalError(AuthorizationError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Internal authorization error"
