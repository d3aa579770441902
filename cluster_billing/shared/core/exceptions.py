from typing import Optional, Dict, Any


class BillingException(Exception):
    """Base exception for all cluster billing errors."""
    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class AllocationKeyError(BillingException):
    """Raised when a composite allocation key has an unexpected segment count."""
    def __init__(self, message: str, code: str = "allocation_key_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=500, details=details)


class ExternalAPIError(BillingException):
    """Raised when OpenCost or Prometheus are unavailable or answer unexpectedly."""
    def __init__(self, message: str, code: str = "external_api_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=502, details=details)


class SnapshotPersistenceError(BillingException):
    """Raised when one or more billing snapshots could not be stored."""
    def __init__(self, message: str, code: str = "persistence_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=500, details=details)


class AuthError(BillingException):
    """Raised when the caller identity is missing or not allowed."""
    def __init__(self, message: str, code: str = "auth_error", status_code: int = 400, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=status_code, details=details)


class InvalidPeriodError(BillingException):
    """Raised when a requested billing period is malformed."""
    def __init__(self, message: str, code: str = "invalid_period", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=400, details=details)


class ResourceNotFoundError(BillingException):
    """Raised when a requested resource is not found."""
    def __init__(self, message: str, code: str = "not_found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=404, details=details)
