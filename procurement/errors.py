"""
Error taxonomy for the purchase order engine.

Permission and validation failures are returned to callers as structured
results. The exceptions here cover the cases that escape an operation:
permission denials raised by the gate itself, missing records, and the
retryable concurrency/system failures.
"""

from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    # Permission
    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
    APPROVAL_NOT_ALLOWED = "APPROVAL_NOT_ALLOWED"
    APPROVAL_LIMIT_EXCEEDED = "APPROVAL_LIMIT_EXCEEDED"
    RECEIVING_NOT_ALLOWED = "RECEIVING_NOT_ALLOWED"
    CANCELLATION_NOT_ALLOWED = "CANCELLATION_NOT_ALLOWED"

    # Concurrency
    RECORD_MODIFIED = "RECORD_MODIFIED"
    LOCK_TIMEOUT = "LOCK_TIMEOUT"

    # Referential
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"

    # Inventory
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    INVALID_MOVEMENT = "INVALID_MOVEMENT"

    # System
    PERSISTENCE_FAILURE = "PERSISTENCE_FAILURE"
    TIMEOUT = "TIMEOUT"


class ProcurementError(Exception):
    """Base error carrying a machine-readable code and optional metadata."""

    code: ErrorCode = ErrorCode.PERSISTENCE_FAILURE
    http_status: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        metadata: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.metadata = metadata or {}

    def to_dict(self) -> dict:
        body = {"code": self.code.value, "message": self.message}
        if self.metadata:
            body["details"] = self.metadata
        return body


class PermissionDeniedError(ProcurementError):
    code = ErrorCode.INSUFFICIENT_PERMISSIONS
    http_status = 403

    def __init__(self, code: ErrorCode, message: str, metadata: Optional[dict] = None):
        super().__init__(message, code=code, metadata=metadata)
        if code == ErrorCode.AUTHENTICATION_REQUIRED:
            self.http_status = 401


class OrderNotFoundError(ProcurementError):
    code = ErrorCode.ORDER_NOT_FOUND
    http_status = 404


class ProductNotFoundError(ProcurementError):
    code = ErrorCode.PRODUCT_NOT_FOUND
    http_status = 404


class InsufficientStockError(ProcurementError):
    code = ErrorCode.INSUFFICIENT_STOCK
    http_status = 409


class ConcurrencyConflictError(ProcurementError):
    """The record changed between read and write."""

    code = ErrorCode.RECORD_MODIFIED
    http_status = 409
    retryable = True


class LockTimeoutError(ProcurementError):
    code = ErrorCode.LOCK_TIMEOUT
    http_status = 503
    retryable = True


class PersistenceError(ProcurementError):
    code = ErrorCode.PERSISTENCE_FAILURE
    http_status = 503
    retryable = True


class PersistenceTimeoutError(PersistenceError):
    code = ErrorCode.TIMEOUT
