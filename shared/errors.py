"""
Shared error handling for the permission services.
"""

from typing import Dict, Any, Optional

from opentelemetry import trace
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""
    
    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class AccessLayerException(Exception):
    """Base exception for Access Layer services."""
    
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


class ValidationError(AccessLayerException):
    """Validation-related errors."""
    
    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class DataIntegrityError(AccessLayerException):
    """Malformed data read from the entity store. Surfaced, never retried."""

    def __init__(self, message: str = "Data integrity error", details: Optional[Dict[str, Any]] = None,
                 code: str = "DATA_INTEGRITY_ERROR"):
        super().__init__(code, message, details)


class CycleDetectedError(DataIntegrityError):
    """Parent pointers of a hierarchy revisit a node."""

    def __init__(self, kind: str, node_id: str, path: Optional[list] = None):
        super().__init__(
            f"Cycle detected in {kind} hierarchy at '{node_id}'",
            {"kind": kind, "node_id": node_id, "path": list(path or [])},
            code="CYCLE_DETECTED"
        )


class StoreUnavailableError(AccessLayerException):
    """Entity store could not be reached. Transient, callers may retry."""

    def __init__(self, message: str = "Entity store unavailable", details: Optional[Dict[str, Any]] = None,
                 code: str = "STORE_UNAVAILABLE"):
        super().__init__(code, message, details)


class StoreTimeoutError(StoreUnavailableError):
    """Entity store call exceeded its timeout."""

    def __init__(self, operation: str, timeout: float):
        super().__init__(
            f"Entity store call '{operation}' timed out after {timeout}s",
            {"operation": operation, "timeout_seconds": timeout},
            code="STORE_TIMEOUT"
        )


class CacheUnavailableError(AccessLayerException):
    """Permission cache could not complete an operation that must not be skipped."""

    def __init__(self, message: str = "Permission cache unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_UNAVAILABLE", message, details)
