"""
Shared error handling for the backlog privilege services.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field
from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""
    
    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class AccessControlException(Exception):
    """Base exception for privilege services."""
    
    status_code: int = 400
    
    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)
    
    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        # Get trace ID from current span
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"
        
        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class AuthenticationError(AccessControlException):
    """Authentication-related errors."""
    
    status_code = 401
    
    def __init__(self, message: str = "Authentication required", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class AuthorizationError(AccessControlException):
    """Authorization-related errors."""
    
    status_code = 403
    
    def __init__(self, message: str = "Forbidden", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHORIZATION_ERROR", message, details)


class ValidationError(AccessControlException):
    """Validation-related errors."""
    
    status_code = 422
    
    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class ResourceNotFound(AccessControlException):
    """Target resource, or one of its declared parent scopes, does not exist."""
    
    status_code = 404
    
    def __init__(self, kind: str, resource_id: str, details: Optional[Dict[str, Any]] = None):
        self.kind = kind
        self.resource_id = resource_id
        merged = {"kind": kind, "resource_id": resource_id}
        merged.update(details or {})
        super().__init__("RESOURCE_NOT_FOUND", f"{kind} '{resource_id}' not found", merged)


class InvalidGrantState(AccessControlException):
    """Grant storage broke its one-row-per-(user, scope) invariant.

    This is a data-integrity failure. It is never resolved silently:
    the calling operation fails and the error is logged loudly.
    """
    
    status_code = 500
    
    def __init__(self, message: str = "Invalid grant state", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_GRANT_STATE", message, details)


class InvalidScopeState(AccessControlException):
    """Scope structure is inconsistent (e.g. a backlog's company lives in another account)."""
    
    status_code = 500
    
    def __init__(self, message: str = "Invalid scope state", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_SCOPE_STATE", message, details)


class ServiceError(AccessControlException):
    """Service-related errors."""
    
    status_code = 500
    
    def __init__(self, message: str = "Service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERVICE_ERROR", message, details)
