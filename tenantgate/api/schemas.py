from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from tenantgate.service.errors import AuthFailure

_VALID_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "forbidden",
        "not_found",
        "rate_limited",
        "validation_error",
        "conflict",
        "server_error",
    }
    | {kind.code for kind in AuthFailure}
)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


# requests


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=1024)
    remember_me: bool = False

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class MfaVerifyRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=16)
    trust_device: bool = False

    @field_validator("code")
    @classmethod
    def _strip_code(cls, value: str) -> str:
        return value.strip()


class RecoveryCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)


class CompanySwitchRequest(BaseModel):
    company_id: str = Field(..., min_length=1, max_length=128)


# responses


class UserResponse(BaseModel):
    id: str
    email: str
    platform_role: str
    mfa_enabled: bool
    home_company_id: Optional[str] = None


class CompanyResponse(BaseModel):
    id: str
    name: str
    mfa_required: bool = False


class SessionResponse(BaseModel):
    id: str
    state: str
    created_at: datetime
    expires_at: datetime
    idle_expires_at: datetime
    absolute_expires_at: datetime
    active_company_id: Optional[str] = None
    source: str = "web"
    mfa_verified: bool = False
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    last_activity_at: Optional[datetime] = None
    is_current: bool = False


class AnonymousSessionResponse(BaseModel):
    session_id: str
    session_expires_at: datetime


class ChallengeResponse(BaseModel):
    status: Literal["mfa_required"] = "mfa_required"
    session_id: str
    session_expires_at: datetime
    expires_in: int
    # populated only when EXPOSE_MFA_CODES is on
    code: Optional[str] = None


class EstablishedResponse(BaseModel):
    status: Literal["established"] = "established"
    session_id: str
    session_expires_at: datetime
    user: UserResponse
    active_company: Optional[CompanyResponse] = None
    can_switch_companies: bool = False
    mfa_verified: bool = False
    device_trusted: bool = False
    recovery_codes_remaining: Optional[int] = None


class MfaCodeSentResponse(BaseModel):
    expires_in: int
    code: Optional[str] = None


class MfaStatusResponse(BaseModel):
    enabled: bool
    enabled_at: Optional[datetime] = None
    recovery_codes_remaining: int = 0


class RecoveryCodesResponse(BaseModel):
    recovery_codes: List[str]


class PrincipalResponse(BaseModel):
    user: UserResponse
    active_company: Optional[CompanyResponse] = None
    can_switch_companies: bool
    mfa: MfaStatusResponse
    session: SessionResponse


class CompanyListResponse(BaseModel):
    companies: List[CompanyResponse]
    active_company_id: Optional[str] = None
    can_switch_companies: bool = False


class RevokedCountResponse(BaseModel):
    revoked: int


class TrustedDeviceResponse(BaseModel):
    id: str
    device_name: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    last_seen_at: Optional[datetime] = None
    last_ip_addr: Optional[str] = None


class LoginEventResponse(BaseModel):
    id: str
    event_type: str
    created_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    source: Optional[str] = None
    meta: dict = Field(default_factory=dict)
