from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException


@dataclass
class ApiError:
    code: str
    message: str
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class AppHTTPException(HTTPException):
    def __init__(self, status_code: int, error: ApiError):
        super().__init__(status_code=status_code, detail=error.to_dict())


class StockLedgerError(Exception):
    code = "stockledger_error"
    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_api_error(self) -> ApiError:
        return ApiError(code=self.code, message=self.message, details=self.details or None)


class ProductNotFound(StockLedgerError):
    code = "not_found"
    status_code = 404


class InsufficientInventory(StockLedgerError):
    """Expected business outcome: recorded in the ledger and notified, never a bug."""

    code = "insufficient_inventory"
    status_code = 409


class InvalidAdjustment(StockLedgerError):
    code = "invalid_adjustment"
    status_code = 422


class LockTimeout(StockLedgerError):
    """Raised when a lock could not be acquired within its maximum wait. Retryable."""

    code = "lock_timeout"
    status_code = 503


class DuplicateOperation(StockLedgerError):
    """The operation was already applied; ``result`` is what it produced the first time."""

    code = "duplicate_operation"
    status_code = 200

    def __init__(self, message: str, result: Any = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details=details)
        self.result = result


class PlatformSyncError(StockLedgerError):
    code = "platform_sync_error"
    status_code = 502

    def __init__(self, platform: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details={"platform": platform, **(details or {})})
        self.platform = platform


class OrderProcessingError(StockLedgerError):
    code = "order_processing_error"
    status_code = 500


class JobConflict(StockLedgerError):
    code = "job_conflict"
    status_code = 409
