"""
Typed failures raised by the booking and settlement services.

They subclass ``HTTPException`` so endpoints can let them propagate and FastAPI
renders the status code and detail payload unchanged.
"""
from typing import Any, Dict, Optional
from fastapi import HTTPException, status


class ServiceError(HTTPException):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, **extra: Any):
        self.message = message
        detail: Dict[str, Any] = {"message": message}
        detail.update({k: v for k, v in extra.items() if v is not None})
        super().__init__(status_code=self.status_code, detail=detail)


class NotFoundError(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, resource: str, message: Optional[str] = None):
        self.resource = resource
        super().__init__(message or f"{resource} not found", resource=resource)


class ForbiddenError(ServiceError):
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, message: str = "Not authorized"):
        super().__init__(message)


class InvalidStateError(ServiceError):
    """Operation attempted from the wrong status; carries the state the client should reconcile with."""

    status_code = status.HTTP_409_CONFLICT

    def __init__(self, message: str, current_state: Optional[Dict[str, Any]] = None):
        self.current_state = current_state or {}
        super().__init__(message, current_state=self.current_state)


class ValidationFailedError(ServiceError):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message, field=field)


class UpstreamFailureError(ServiceError):
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, upstream: str):
        self.upstream = upstream
        super().__init__(message, upstream=upstream)
