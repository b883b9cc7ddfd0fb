from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class SessionState(str, Enum):
    ANONYMOUS = "anonymous"
    PENDING = "pending"
    VERIFIED = "verified"
    REVOKED = "revoked"
    EXPIRED = "expired"


class LoginEventType(str, Enum):
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    ACCOUNT_LOCKED = "account_locked"
    MFA_CHALLENGE_SENT = "mfa_challenge_sent"
    MFA_VERIFIED = "mfa_verified"
    MFA_FAILED = "mfa_failed"
    MFA_ENABLED = "mfa_enabled"
    MFA_DISABLED = "mfa_disabled"
    RECOVERY_CODE_USED = "recovery_code_used"
    RECOVERY_CODES_REGENERATED = "recovery_codes_regenerated"
    SESSION_REVOKED = "session_revoked"
    LOGOUT = "logout"
    COMPANY_SWITCHED = "company_switched"
    DEVICE_TRUSTED = "device_trusted"


@dataclass
class User:
    id: str
    email: str
    home_company_id: Optional[str] = None
    platform_role: str = "user"
    is_active: bool = True
    mfa_enabled: bool = False
    mfa_enabled_at: Optional[datetime] = None
    failed_attempts: int = 0
    last_failed_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        *,
        home_company_id: Optional[str] = None,
        platform_role: str = "user",
        is_active: bool = True,
    ) -> "User":
        return cls(
            id=_new_id(),
            email=email.strip().lower(),
            home_company_id=home_company_id,
            platform_role=platform_role,
            is_active=is_active,
        )

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class Company:
    id: str
    name: str
    is_active: bool = True
    mfa_required: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, name: str, *, mfa_required: bool = False, is_active: bool = True) -> "Company":
        return cls(id=_new_id(), name=name, is_active=is_active, mfa_required=mfa_required)


@dataclass
class CompanyAccessGrant:
    user_id: str
    company_id: str
    pinned: bool = False
    is_active: bool = True
    last_accessed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    """A browser session; revoked and expired rows stay as tombstones until purged."""

    id: str
    user_id: Optional[str]
    state: SessionState
    created_at: datetime
    idle_expires_at: datetime
    absolute_expires_at: datetime
    active_company_id: Optional[str] = None
    source: str = "web"
    mfa_verified: bool = False
    data: Dict = field(default_factory=dict)
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    last_activity_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not isinstance(self.state, SessionState):
            self.state = SessionState(self.state)
        if self.data is None:
            self.data = {}

    @classmethod
    def new(
        cls,
        *,
        user_id: Optional[str],
        state: SessionState,
        now: datetime,
        idle_expires_at: datetime,
        absolute_expires_at: datetime,
        active_company_id: Optional[str] = None,
        source: str = "web",
        mfa_verified: bool = False,
        data: Optional[Dict] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "Session":
        return cls(
            id=_new_id(),
            user_id=user_id,
            state=state,
            created_at=now,
            idle_expires_at=idle_expires_at,
            absolute_expires_at=absolute_expires_at,
            active_company_id=active_company_id,
            source=source,
            mfa_verified=mfa_verified,
            data=dict(data or {}),
            ip_addr=ip_addr,
            user_agent=user_agent,
            last_activity_at=now,
        )

    @property
    def pending_mfa_user_id(self) -> Optional[str]:
        return self.data.get("pending_mfa_user_id")

    @property
    def remember_me(self) -> bool:
        return bool(self.data.get("remember_me", False))

    def expires_at(self) -> datetime:
        return min(self.idle_expires_at, self.absolute_expires_at)


@dataclass
class MfaCode:
    id: str
    user_id: str
    code_hash: str
    issued_at: datetime
    expires_at: datetime
    consumed_at: Optional[datetime] = None
    attempts: int = 0

    @classmethod
    def new(cls, user_id: str, code_hash: str, *, now: datetime, ttl_seconds: int) -> "MfaCode":
        return cls(
            id=_new_id(),
            user_id=user_id,
            code_hash=code_hash,
            issued_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )


@dataclass
class RecoveryCode:
    id: str
    user_id: str
    code_hash: str
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None

    @classmethod
    def new(cls, user_id: str, code_hash: str, *, now: datetime) -> "RecoveryCode":
        return cls(id=_new_id(), user_id=user_id, code_hash=code_hash, created_at=now)


@dataclass
class DeviceTrustToken:
    id: str
    user_id: str
    device_fingerprint: str
    token_hash: str
    created_at: datetime
    expires_at: datetime
    device_name: Optional[str] = None
    last_seen_at: Optional[datetime] = None
    last_ip_addr: Optional[str] = None
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        device_fingerprint: str,
        token_hash: str,
        *,
        now: datetime,
        ttl_days: int,
        device_name: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> "DeviceTrustToken":
        return cls(
            id=_new_id(),
            user_id=user_id,
            device_fingerprint=device_fingerprint,
            token_hash=token_hash,
            created_at=now,
            expires_at=now + timedelta(days=ttl_days),
            device_name=device_name,
            last_seen_at=now,
            last_ip_addr=ip_addr,
        )

    def is_usable(self, now: datetime) -> bool:
        return self.revoked_at is None and self.expires_at > now


@dataclass
class LoginEvent:
    id: str
    user_id: Optional[str]
    event_type: LoginEventType
    created_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    source: Optional[str] = None
    meta: Dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.event_type, LoginEventType):
            self.event_type = LoginEventType(self.event_type)
        if self.meta is None:
            self.meta = {}

    @classmethod
    def new(
        cls,
        user_id: Optional[str],
        event_type: LoginEventType,
        *,
        now: datetime,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        source: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> "LoginEvent":
        return cls(
            id=_new_id(),
            user_id=user_id,
            event_type=event_type,
            created_at=now,
            ip_addr=ip_addr,
            user_agent=user_agent,
            source=source,
            meta=dict(meta or {}),
        )
