# device_loans/core/errors.py
from typing import Any, Dict, Optional


class LoanServiceError(Exception):
    """Base class for every error the service maps to a stable HTTP response."""
    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, *, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.detail:
            body["detail"] = self.detail
        return body


class ValidationFailed(LoanServiceError):
    code = "VALIDATION_ERROR"
    status_code = 400


class LoanNotFound(LoanServiceError):
    code = "NOT_FOUND"
    status_code = 404


class AlreadyExists(LoanServiceError):
    code = "ALREADY_EXISTS"
    status_code = 409


class InvalidStatus(LoanServiceError):
    code = "INVALID_STATUS"
    status_code = 400


class Unauthorized(LoanServiceError):
    code = "UNAUTHORIZED"
    status_code = 401


class Forbidden(LoanServiceError):
    code = "FORBIDDEN"
    status_code = 403


class ConcurrentModification(LoanServiceError):
    """A conditional write kept losing against other writers. Safe to retry."""
    code = "CONCURRENT_MODIFICATION"
    status_code = 409
    retryable = True


class DeviceUnavailable(LoanServiceError):
    code = "DEVICE_UNAVAILABLE"
    status_code = 409


class PersistenceError(LoanServiceError):
    code = "PERSISTENCE_ERROR"
    status_code = 503
    retryable = True


class FavouriteNotFound(LoanServiceError):
    code = "NOT_FOUND"
    status_code = 404
