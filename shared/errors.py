"""
Shared error handling for the caching proxy.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format.

    Only the public code and message are ever sent to clients; exception
    details stay in the logs.
    """

    request_id: Optional[str] = None
    code: str
    message: str


class CacheProxyException(Exception):
    """Base exception for caching proxy services."""

    status_code: int = 500

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    @property
    def public_message(self) -> str:
        """Message safe to expose to clients."""
        return self.message

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id,
            code=self.code,
            message=self.public_message,
        )


class InvalidPathError(CacheProxyException):
    """Request path cannot be used to address the cache."""

    status_code = 400

    def __init__(self, message: str = "Invalid resource path", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_PATH", message, details)

    @property
    def public_message(self) -> str:
        return "Invalid resource path"


class StorageError(CacheProxyException):
    """Cache directory or file could not be created or written."""

    def __init__(self, message: str = "Cache storage failure", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORAGE_ERROR", message, details)

    @property
    def public_message(self) -> str:
        return "Unable to serve the requested file"


class FetchError(CacheProxyException):
    """Origin could not provide the resource."""

    kind = "unknown"

    def __init__(self, message: str = "Origin fetch failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("FETCH_ERROR", message, details)

    @property
    def public_message(self) -> str:
        return "Unable to fetch the requested file"


class OriginTransportError(FetchError):
    """Network, DNS, TLS or timeout failure reaching the origin."""

    kind = "transport"


class OriginStatusError(FetchError):
    """Origin answered with a non-success status."""

    kind = "upstream_status"

    def __init__(self, upstream_status: int, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.upstream_status = upstream_status
        merged = {"upstream_status": upstream_status}
        merged.update(details or {})
        super().__init__(
            message or f"Origin returned non-200 status code: {upstream_status}",
            merged,
        )


class ConfigurationError(CacheProxyException):
    """Invalid static configuration."""

    def __init__(self, message: str = "Invalid configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)
