"""Error codes and exception types for the flag engine.

Evaluation never raises these to callers; the mutation path always does.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    FLAG_NOT_FOUND = "FLAG_NOT_FOUND"
    CONFLICT = "CONFLICT"  # Optimistic concurrency violation
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    INVALIDATION_DELIVERY_FAILED = "INVALIDATION_DELIVERY_FAILED"
    AUDIT_WRITE_FAILED = "AUDIT_WRITE_FAILED"


class FlagEngineError(Exception):
    """Base class for flag engine errors."""

    code: ErrorCode = ErrorCode.CONFIGURATION_ERROR

    def __init__(self, message: str, code: Optional[ErrorCode] = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return f"{self.code.value}: {super().__str__()}"


class ConfigurationError(FlagEngineError):
    """Invalid flag definition, rejected before it reaches the store."""

    code = ErrorCode.CONFIGURATION_ERROR


class FlagNotFoundError(FlagEngineError):
    code = ErrorCode.FLAG_NOT_FOUND

    def __init__(self, flag_key: str) -> None:
        super().__init__(f"Flag not found: {flag_key}")
        self.flag_key = flag_key


class ConflictError(FlagEngineError):
    """Raised when a compare-and-set write loses against a concurrent edit.

    The caller must re-read the flag and retry with the fresh version.
    """

    code = ErrorCode.CONFLICT

    def __init__(
        self,
        flag_key: str,
        expected_version: Optional[int],
        actual_version: Optional[int],
    ) -> None:
        super().__init__(
            f"Version conflict on '{flag_key}': "
            f"expected {expected_version}, found {actual_version}"
        )
        self.flag_key = flag_key
        self.expected_version = expected_version
        self.actual_version = actual_version


class StoreUnavailableError(FlagEngineError):
    code = ErrorCode.STORE_UNAVAILABLE


class InvalidationDeliveryError(FlagEngineError):
    code = ErrorCode.INVALIDATION_DELIVERY_FAILED


class AuditWriteError(FlagEngineError):
    code = ErrorCode.AUDIT_WRITE_FAILED


__all__ = [
    "ErrorCode",
    "FlagEngineError",
    "ConfigurationError",
    "FlagNotFoundError",
    "ConflictError",
    "StoreUnavailableError",
    "InvalidationDeliveryError",
    "AuditWriteError",
]
