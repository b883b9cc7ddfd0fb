"""Common storage utilities shared between memory and postgres implementations.

Both backends satisfy :class:`AuthStore`. Every state transition the services
depend on (consuming a code, upgrading a session, switching companies) is
expressed as a conditional write that reports whether it won, so callers
never rely on a read followed by an unconditional update.
"""

from __future__ import annotations

import dataclasses
import ipaddress
import json
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
    Type,
    TypeVar,
    runtime_checkable,
)

from tenantgate.storage.models import (
    Company,
    CompanyAccessGrant,
    DeviceTrustToken,
    LoginEvent,
    MfaCode,
    RecoveryCode,
    Session,
    SessionState,
    User,
)

T = TypeVar("T")

# Columns a conditional session update may touch
SESSION_MUTABLE_FIELDS = frozenset(
    {
        "user_id",
        "state",
        "idle_expires_at",
        "absolute_expires_at",
        "active_company_id",
        "mfa_verified",
        "data",
        "ip_addr",
        "user_agent",
        "last_activity_at",
        "revoked_at",
    }
)

LIVE_SESSION_STATES = (SessionState.ANONYMOUS, SessionState.PENDING, SessionState.VERIFIED)


@runtime_checkable
class AuthStore(Protocol):
    # users
    def create_user(
        self,
        email: str,
        *,
        home_company_id: Optional[str] = None,
        platform_role: str = "user",
        is_active: bool = True,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def set_user_active(self, user_id: str, is_active: bool) -> None: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def register_login_failure(
        self, user_id: str, *, now: datetime, window: timedelta
    ) -> Optional[User]: ...

    def set_user_lock(self, user_id: str, locked_until: Optional[datetime]) -> None: ...

    def reset_login_failures(self, user_id: str, *, now: datetime) -> None: ...

    def set_mfa_enabled(
        self, user_id: str, enabled: bool, *, now: datetime
    ) -> Optional[User]: ...

    # companies
    def create_company(
        self, name: str, *, mfa_required: bool = False, is_active: bool = True
    ) -> Company: ...

    def get_company(self, company_id: str) -> Optional[Company]: ...

    def set_company_active(self, company_id: str, is_active: bool) -> None: ...

    def list_active_companies(self) -> List[Company]: ...

    def count_active_companies(self) -> int: ...

    def grant_company_access(
        self, user_id: str, company_id: str, *, pinned: bool = False
    ) -> CompanyAccessGrant: ...

    def revoke_company_access(self, user_id: str, company_id: str) -> None: ...

    def get_company_grant(
        self, user_id: str, company_id: str
    ) -> Optional[CompanyAccessGrant]: ...

    def list_company_grants(
        self, user_id: str, *, include_revoked: bool = False
    ) -> List[CompanyAccessGrant]: ...

    def touch_company_grant(self, user_id: str, company_id: str, *, now: datetime) -> None: ...

    # sessions
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def update_session(
        self,
        session_id: str,
        *,
        expected_states: Iterable[SessionState],
        valid_at: Optional[datetime] = None,
        **fields: Any,
    ) -> Optional[Session]: ...

    def replace_session(
        self,
        old_session_id: str,
        new_session: Session,
        *,
        expected_state: SessionState,
        valid_at: datetime,
    ) -> bool: ...

    def revoke_session(self, session_id: str, *, now: datetime) -> bool: ...

    def revoke_user_sessions(
        self, user_id: str, *, now: datetime, except_session_id: Optional[str] = None
    ) -> int: ...

    def list_user_sessions(self, user_id: str) -> List[Session]: ...

    def purge_sessions(self, *, now: datetime) -> int: ...

    # one-time codes
    def create_mfa_code(self, code: MfaCode) -> MfaCode: ...

    def get_latest_mfa_code(self, user_id: str) -> Optional[MfaCode]: ...

    def increment_mfa_code_attempts(self, code_id: str) -> int: ...

    def consume_mfa_code(self, code_id: str, *, now: datetime) -> bool: ...

    def invalidate_mfa_codes(self, user_id: str) -> int: ...

    def purge_mfa_codes(self, *, now: datetime) -> int: ...

    # recovery codes
    def replace_recovery_codes(self, user_id: str, codes: List[RecoveryCode]) -> None: ...

    def list_unused_recovery_codes(self, user_id: str) -> List[RecoveryCode]: ...

    def consume_recovery_code(self, code_id: str, *, now: datetime) -> bool: ...

    def delete_recovery_codes(self, user_id: str) -> int: ...

    # device trust
    def create_device_trust(self, token: DeviceTrustToken) -> DeviceTrustToken: ...

    def get_device_trust_by_hash(self, token_hash: str) -> Optional[DeviceTrustToken]: ...

    def touch_device_trust(
        self, token_id: str, *, now: datetime, ip_addr: Optional[str] = None
    ) -> None: ...

    def list_device_trust(self, user_id: str) -> List[DeviceTrustToken]: ...

    def revoke_device_trust(self, user_id: str, token_id: str, *, now: datetime) -> bool: ...

    def revoke_user_device_trust(self, user_id: str, *, now: datetime) -> int: ...

    def purge_device_trust(self, *, now: datetime) -> int: ...

    # audit
    def record_login_event(self, event: LoginEvent) -> LoginEvent: ...

    def list_login_events(self, user_id: str, *, limit: int = 50) -> List[LoginEvent]: ...

    # lifecycle
    def verify_connection(self) -> None: ...

    def close(self) -> None: ...


# ============================================================================
# RECORD SERIALIZATION
# ============================================================================

def _encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _encode_value(v) for k, v in value.items()}
    return value


def to_record(obj: Any) -> Dict[str, Any]:
    """Flatten a model dataclass into JSON-safe primitives."""
    return {
        f.name: _encode_value(getattr(obj, f.name)) for f in dataclasses.fields(obj)
    }


def from_record(cls: Type[T], raw: Dict[str, Any]) -> T:
    """Rebuild a model dataclass from :func:`to_record` output or a database row.

    Unknown keys are ignored; ISO timestamps are parsed for ``*_at`` and
    ``*_until`` columns.
    """
    kwargs: Dict[str, Any] = {}
    for f in dataclasses.fields(cls):
        if f.name not in raw:
            continue
        value = raw[f.name]
        if f.name.endswith(("_at", "_until")) and isinstance(value, str):
            value = datetime.fromisoformat(value)
        elif f.name in {"data", "meta"}:
            value = parse_json_meta(value) or {}
        elif f.name in {"ip_addr", "last_ip_addr"} and value is not None:
            value = str(value)
        kwargs[f.name] = value
    return cls(**kwargs)


def parse_json_meta(raw_meta: Any) -> Optional[Dict]:
    """Parse metadata field from JSON string or dict."""
    if raw_meta is None:
        return None
    if isinstance(raw_meta, dict):
        return raw_meta
    if isinstance(raw_meta, (str, bytes)):
        try:
            parsed = json.loads(raw_meta)
        except ValueError:
            return None
        return parsed if isinstance(parsed, dict) else None
    return None


def sort_company_grants(grants: Iterable[CompanyAccessGrant]) -> List[CompanyAccessGrant]:
    """Pinned grants first, then most recently accessed; never-accessed last."""

    def _key(grant: CompanyAccessGrant):
        accessed = grant.last_accessed_at.timestamp() if grant.last_accessed_at else float("-inf")
        return (0 if grant.pinned else 1, -accessed)

    return sorted(grants, key=_key)


def session_is_current(session: Session, now: datetime) -> bool:
    return session.idle_expires_at > now and session.absolute_expires_at > now


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from row dict or object."""
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def parse_uuid(raw_id: Any) -> Optional[str]:
    """Canonical string form of a UUID, or None when the value is not one."""
    if isinstance(raw_id, uuid.UUID):
        return str(raw_id)
    if not isinstance(raw_id, str):
        return None
    try:
        return str(uuid.UUID(raw_id.strip()))
    except ValueError:
        return None


def parse_ip_address(raw_ip: Optional[str]) -> Optional[str]:
    if not raw_ip or not isinstance(raw_ip, str):
        return None
    try:
        return str(ipaddress.ip_address(raw_ip.strip()))
    except ValueError:
        return None


__all__ = [
    "AuthStore",
    "LIVE_SESSION_STATES",
    "SESSION_MUTABLE_FIELDS",
    "from_record",
    "parse_ip_address",
    "parse_json_meta",
    "parse_uuid",
    "safe_row_value",
    "session_is_current",
    "sort_company_grants",
    "to_record",
]
