from __future__ import annotations

from typing import Any, Dict, Iterable, Optional


class BaseAPIException(Exception):
    """Base exception for all API errors."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class AuthenticationError(BaseAPIException):
    """Authentication failed."""
    def __init__(self, message: str = "Authentication failed", **kwargs):
        super().__init__(message, status_code=401, **kwargs)


class AuthorizationError(BaseAPIException):
    """Authorization failed."""
    def __init__(self, message: str = "Authorization failed", **kwargs):
        super().__init__(message, status_code=403, **kwargs)


class ValidationError(BaseAPIException):
    """Malformed or insufficient input."""
    def __init__(self, message: str = "Validation error", **kwargs):
        super().__init__(message, status_code=400, **kwargs)


class NotFoundError(BaseAPIException):
    """Resource not found, or owned by another tenant."""
    def __init__(self, message: str = "Resource not found", **kwargs):
        super().__init__(message, status_code=404, **kwargs)


class InvalidArgument(BaseAPIException):
    """A referenced user, role or status is not usable."""
    def __init__(self, message: str = "Invalid argument", **kwargs):
        super().__init__(message, status_code=400, **kwargs)


class InvalidState(BaseAPIException):
    """Operation not allowed in the resource's current state."""
    def __init__(self, message: str = "Invalid state", **kwargs):
        super().__init__(message, status_code=409, **kwargs)


class InvalidTransition(BaseAPIException):
    """Pipeline status change that is not an edge of the transition graph."""

    def __init__(
        self,
        current_status: str,
        requested_status: str,
        allowed_statuses: Iterable[str],
        message: Optional[str] = None,
        **kwargs,
    ):
        self.current_status = current_status
        self.requested_status = requested_status
        self.allowed_statuses = sorted(allowed_statuses)
        details = {
            "current_status": current_status,
            "requested_status": requested_status,
            "allowed_statuses": self.allowed_statuses,
        }
        super().__init__(
            message or f"Invalid transition from '{current_status}' to '{requested_status}'",
            status_code=400,
            details=details,
            **kwargs,
        )


class NoEligibleAssignees(BaseAPIException):
    """Bulk assignment with no active users in the tenant."""
    def __init__(self, message: str = "No active users available for assignment", **kwargs):
        super().__init__(message, status_code=409, **kwargs)


class UpstreamError(BaseAPIException):
    """External lead-ad provider call failed after retries."""
    def __init__(self, message: str = "Upstream service error", **kwargs):
        super().__init__(message, status_code=502, **kwargs)


class InternalError(BaseAPIException):
    """Storage or transaction failure; details are never exposed."""
    def __init__(self, message: str = "Internal error", **kwargs):
        super().__init__(message, status_code=500, **kwargs)
