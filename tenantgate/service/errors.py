from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class AuthFailure(str, Enum):
    """Expected authentication outcomes that are not successes.

    These are returned as :class:`Failure` values rather than raised; the API
    layer maps each kind onto a stable error code and HTTP status.
    """

    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    NO_ACTIVE_COMPANIES = "no_active_companies"
    NO_PENDING_MFA = "no_pending_mfa"
    CODE_EXPIRED = "code_expired"
    INVALID_CODE = "invalid_code"
    INVALID_RECOVERY_CODE = "invalid_recovery_code"
    COMPANY_ACCESS_DENIED = "company_access_denied"
    SESSION_NOT_FOUND = "session_not_found"
    MFA_ALREADY_ENABLED = "mfa_already_enabled"
    MFA_NOT_ENABLED = "mfa_not_enabled"
    STORAGE_ERROR = "storage_error"

    @property
    def code(self) -> str:
        return self.value

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self]

    @property
    def message(self) -> str:
        return _MESSAGES[self]


_STATUS_CODES = {
    AuthFailure.INVALID_CREDENTIALS: 401,
    AuthFailure.ACCOUNT_LOCKED: 423,
    AuthFailure.NO_ACTIVE_COMPANIES: 403,
    AuthFailure.NO_PENDING_MFA: 401,
    AuthFailure.CODE_EXPIRED: 410,
    AuthFailure.INVALID_CODE: 401,
    AuthFailure.INVALID_RECOVERY_CODE: 401,
    AuthFailure.COMPANY_ACCESS_DENIED: 403,
    AuthFailure.SESSION_NOT_FOUND: 404,
    AuthFailure.MFA_ALREADY_ENABLED: 409,
    AuthFailure.MFA_NOT_ENABLED: 400,
    AuthFailure.STORAGE_ERROR: 503,
}

_MESSAGES = {
    AuthFailure.INVALID_CREDENTIALS: "invalid email or password",
    AuthFailure.ACCOUNT_LOCKED: "account temporarily locked",
    AuthFailure.NO_ACTIVE_COMPANIES: "no active company available for this account",
    AuthFailure.NO_PENDING_MFA: "no pending verification for this session",
    AuthFailure.CODE_EXPIRED: "verification code expired",
    AuthFailure.INVALID_CODE: "invalid verification code",
    AuthFailure.INVALID_RECOVERY_CODE: "invalid recovery code",
    AuthFailure.COMPANY_ACCESS_DENIED: "company access denied",
    AuthFailure.SESSION_NOT_FOUND: "session not found",
    AuthFailure.MFA_ALREADY_ENABLED: "two-factor authentication already enabled",
    AuthFailure.MFA_NOT_ENABLED: "two-factor authentication not enabled",
    AuthFailure.STORAGE_ERROR: "storage temporarily unavailable",
}


@dataclass(frozen=True)
class Failure:
    kind: AuthFailure
    detail: Optional[str] = None


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and an error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "AuthFailure",
    "Failure",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
