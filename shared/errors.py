"""
Shared error handling for the inventory cache.

Only ``ValidationError`` escapes the public cache API. Storage problems are
recovered where they happen and degrade to a cache miss.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class InventoryCacheException(Exception):
    """Base exception for the inventory cache."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(InventoryCacheException):
    """Invalid arguments passed by the caller."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class StorageUnavailableError(InventoryCacheException):
    """Primary backing store is missing or cannot be reached."""

    def __init__(self, store: str, message: str = "Storage unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORAGE_UNAVAILABLE", f"{store}: {message}", details)


class SerializationError(InventoryCacheException):
    """Stored value is not the JSON record we expect."""

    def __init__(self, message: str = "Invalid cached record", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERIALIZATION_ERROR", message, details)
