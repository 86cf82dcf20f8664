"""
Shared error types for the tiered cache layer.

Only a few of these ever reach callers: fetch timeouts and malformed batch
results propagate, everything raised by the shared tier is absorbed at that
boundary and turned into a miss or a failed write.
"""

from typing import Dict, Any, Optional


class CacheLayerException(Exception):
    """Base exception for the cache layer."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a log/JSON friendly dictionary."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class SerializationError(CacheLayerException):
    """A value could not be encoded for, or decoded from, the shared tier."""

    def __init__(self, message: str = "Serialization failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERIALIZATION_ERROR", message, details)


class FetchTimeoutError(CacheLayerException):
    """A fetch function did not complete within its time budget."""

    def __init__(self, key: str, timeout: float, details: Optional[Dict[str, Any]] = None):
        merged = {"key": key, "timeout_seconds": timeout}
        merged.update(details or {})
        super().__init__("FETCH_TIMEOUT", f"Fetch for {key} timed out after {timeout}s", merged)


class BatchLoadError(CacheLayerException):
    """A batch function returned results that cannot be mapped back to keys."""

    def __init__(self, message: str = "Batch load failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("BATCH_LOAD_ERROR", message, details)


class SharedTierUnavailableError(CacheLayerException):
    """The shared tier could not be reached during startup."""

    def __init__(self, message: str = "Shared tier unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("SHARED_TIER_UNAVAILABLE", message, details)


class InvalidStrategyError(CacheLayerException):
    """A namespace strategy failed validation."""

    def __init__(self, message: str = "Invalid namespace strategy", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_STRATEGY", message, details)
