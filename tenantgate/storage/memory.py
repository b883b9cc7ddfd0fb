from __future__ import annotations

import copy
import json
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from tenantgate.logging import get_logger
from tenantgate.storage.common import (
    LIVE_SESSION_STATES,
    SESSION_MUTABLE_FIELDS,
    from_record,
    session_is_current,
    sort_company_grants,
    to_record,
)
from tenantgate.storage.errors import ConstraintViolation
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
    utcnow,
)


class MemoryStore:
    """In-process backing store for development and tests.

    All reads and writes go through ``_data_lock`` so conditional updates are
    atomic with respect to each other. Returned models are copies; mutating
    them never changes stored state.
    """

    def __init__(self, fs_root: str = "/tmp/tenantgate", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.companies: Dict[str, Company] = {}
        self.grants: Dict[tuple[str, str], CompanyAccessGrant] = {}
        self.sessions: Dict[str, Session] = {}
        self.mfa_codes: Dict[str, MfaCode] = {}
        self.recovery_codes: Dict[str, RecoveryCode] = {}
        self.device_trust: Dict[str, DeviceTrustToken] = {}
        self.login_events: List[LoginEvent] = []
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _copy(obj):
        return copy.deepcopy(obj) if obj is not None else None

    # users
    def create_user(
        self,
        email: str,
        *,
        home_company_id: Optional[str] = None,
        platform_role: str = "user",
        is_active: bool = True,
    ) -> User:
        user = User.new(
            email,
            home_company_id=home_company_id,
            platform_role=platform_role,
            is_active=is_active,
        )
        with self._data_lock:
            if any(existing.email == user.email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if home_company_id and home_company_id not in self.companies:
                raise ConstraintViolation(
                    "home company does not exist", {"company_id": home_company_id}
                )
            self.users[user.id] = user
            self._persist_state()
            return self._copy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self._copy(self.users.get(user_id))

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return self._copy(
                next((u for u in self.users.values() if u.email == normalized), None)
            )

    def set_user_active(self, user_id: str, is_active: bool) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.is_active = is_active
            self._persist_state()

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def register_login_failure(
        self, user_id: str, *, now: datetime, window: timedelta
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.last_failed_at is None or now - user.last_failed_at > window:
                user.failed_attempts = 1
            else:
                user.failed_attempts += 1
            user.last_failed_at = now
            self._persist_state()
            return self._copy(user)

    def set_user_lock(self, user_id: str, locked_until: Optional[datetime]) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.locked_until = locked_until
            self._persist_state()

    def reset_login_failures(self, user_id: str, *, now: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.failed_attempts = 0
            user.last_failed_at = None
            user.locked_until = None
            user.last_login_at = now
            self._persist_state()

    def set_mfa_enabled(self, user_id: str, enabled: bool, *, now: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.mfa_enabled = enabled
            user.mfa_enabled_at = now if enabled else None
            self._persist_state()
            return self._copy(user)

    # companies
    def create_company(
        self, name: str, *, mfa_required: bool = False, is_active: bool = True
    ) -> Company:
        company = Company.new(name, mfa_required=mfa_required, is_active=is_active)
        with self._data_lock:
            self.companies[company.id] = company
            self._persist_state()
            return self._copy(company)

    def get_company(self, company_id: str) -> Optional[Company]:
        with self._data_lock:
            return self._copy(self.companies.get(company_id))

    def set_company_active(self, company_id: str, is_active: bool) -> None:
        with self._data_lock:
            company = self.companies.get(company_id)
            if not company:
                return
            company.is_active = is_active
            self._persist_state()

    def list_active_companies(self) -> List[Company]:
        with self._data_lock:
            active = [c for c in self.companies.values() if c.is_active]
            return [self._copy(c) for c in sorted(active, key=lambda c: c.name.lower())]

    def count_active_companies(self) -> int:
        with self._data_lock:
            return sum(1 for c in self.companies.values() if c.is_active)

    def grant_company_access(
        self, user_id: str, company_id: str, *, pinned: bool = False
    ) -> CompanyAccessGrant:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if company_id not in self.companies:
                raise ConstraintViolation("company does not exist", {"company_id": company_id})
            grant = self.grants.get((user_id, company_id))
            if grant:
                grant.is_active = True
                grant.pinned = pinned
            else:
                grant = CompanyAccessGrant(user_id=user_id, company_id=company_id, pinned=pinned)
                self.grants[(user_id, company_id)] = grant
            self._persist_state()
            return self._copy(grant)

    def revoke_company_access(self, user_id: str, company_id: str) -> None:
        with self._data_lock:
            grant = self.grants.get((user_id, company_id))
            if grant and grant.is_active:
                grant.is_active = False
                self._persist_state()

    def get_company_grant(self, user_id: str, company_id: str) -> Optional[CompanyAccessGrant]:
        with self._data_lock:
            return self._copy(self.grants.get((user_id, company_id)))

    def list_company_grants(
        self, user_id: str, *, include_revoked: bool = False
    ) -> List[CompanyAccessGrant]:
        with self._data_lock:
            grants = [
                g
                for (uid, _), g in self.grants.items()
                if uid == user_id and (include_revoked or g.is_active)
            ]
            return [self._copy(g) for g in sort_company_grants(grants)]

    def touch_company_grant(self, user_id: str, company_id: str, *, now: datetime) -> None:
        with self._data_lock:
            grant = self.grants.get((user_id, company_id))
            if grant:
                grant.last_accessed_at = now
                self._persist_state()

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.id in self.sessions:
                raise ConstraintViolation("session id collision", {"session_id": session.id})
            if session.user_id and session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            self.sessions[session.id] = self._copy(session)
            self._persist_state()
            return self._copy(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self._copy(self.sessions.get(session_id))

    def update_session(
        self,
        session_id: str,
        *,
        expected_states: Iterable[SessionState],
        valid_at: Optional[datetime] = None,
        **fields: Any,
    ) -> Optional[Session]:
        unknown = set(fields) - SESSION_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported session fields: {sorted(unknown)}")
        allowed = set(expected_states)
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.state not in allowed:
                return None
            if valid_at is not None and not session_is_current(sess, valid_at):
                return None
            for key, value in fields.items():
                setattr(sess, key, copy.deepcopy(value))
            sess.__post_init__()
            self._persist_state()
            return self._copy(sess)

    def replace_session(
        self,
        old_session_id: str,
        new_session: Session,
        *,
        expected_state: SessionState,
        valid_at: datetime,
    ) -> bool:
        with self._data_lock:
            old = self.sessions.get(old_session_id)
            if not old or old.state != expected_state:
                return False
            if not session_is_current(old, valid_at):
                return False
            if new_session.id in self.sessions:
                raise ConstraintViolation(
                    "session id collision", {"session_id": new_session.id}
                )
            old.state = SessionState.REVOKED
            old.revoked_at = valid_at
            self.sessions[new_session.id] = self._copy(new_session)
            self._persist_state()
            return True

    def revoke_session(self, session_id: str, *, now: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.state not in LIVE_SESSION_STATES:
                return False
            sess.state = SessionState.REVOKED
            sess.revoked_at = now
            self._persist_state()
            return True

    def revoke_user_sessions(
        self, user_id: str, *, now: datetime, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            revoked = 0
            for sid, sess in self.sessions.items():
                if sess.user_id != user_id or sid == except_session_id:
                    continue
                if sess.state in LIVE_SESSION_STATES:
                    sess.state = SessionState.REVOKED
                    sess.revoked_at = now
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            owned = [s for s in self.sessions.values() if s.user_id == user_id]
            owned.sort(key=lambda s: s.created_at)
            return [self._copy(s) for s in owned]

    def purge_sessions(self, *, now: datetime) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.state not in LIVE_SESSION_STATES or not session_is_current(sess, now)
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # one-time codes
    def create_mfa_code(self, code: MfaCode) -> MfaCode:
        with self._data_lock:
            # a new code supersedes every outstanding one for the user
            for cid in [
                cid
                for cid, existing in self.mfa_codes.items()
                if existing.user_id == code.user_id
            ]:
                self.mfa_codes.pop(cid, None)
            self.mfa_codes[code.id] = self._copy(code)
            self._persist_state()
            return self._copy(code)

    def get_latest_mfa_code(self, user_id: str) -> Optional[MfaCode]:
        with self._data_lock:
            candidates = [
                c
                for c in self.mfa_codes.values()
                if c.user_id == user_id and c.consumed_at is None
            ]
            if not candidates:
                return None
            return self._copy(max(candidates, key=lambda c: c.issued_at))

    def increment_mfa_code_attempts(self, code_id: str) -> int:
        with self._data_lock:
            code = self.mfa_codes.get(code_id)
            if not code:
                return 0
            code.attempts += 1
            self._persist_state()
            return code.attempts

    def consume_mfa_code(self, code_id: str, *, now: datetime) -> bool:
        with self._data_lock:
            code = self.mfa_codes.get(code_id)
            if not code or code.consumed_at is not None or code.expires_at <= now:
                return False
            code.consumed_at = now
            self._persist_state()
            return True

    def invalidate_mfa_codes(self, user_id: str) -> int:
        with self._data_lock:
            stale = [cid for cid, c in self.mfa_codes.items() if c.user_id == user_id]
            for cid in stale:
                self.mfa_codes.pop(cid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def purge_mfa_codes(self, *, now: datetime) -> int:
        with self._data_lock:
            stale = [
                cid
                for cid, c in self.mfa_codes.items()
                if c.consumed_at is not None or c.expires_at <= now
            ]
            for cid in stale:
                self.mfa_codes.pop(cid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # recovery codes
    def replace_recovery_codes(self, user_id: str, codes: List[RecoveryCode]) -> None:
        with self._data_lock:
            for cid in [cid for cid, c in self.recovery_codes.items() if c.user_id == user_id]:
                self.recovery_codes.pop(cid, None)
            for code in codes:
                self.recovery_codes[code.id] = self._copy(code)
            self._persist_state()

    def list_unused_recovery_codes(self, user_id: str) -> List[RecoveryCode]:
        with self._data_lock:
            return [
                self._copy(c)
                for c in self.recovery_codes.values()
                if c.user_id == user_id and c.used_at is None
            ]

    def consume_recovery_code(self, code_id: str, *, now: datetime) -> bool:
        with self._data_lock:
            code = self.recovery_codes.get(code_id)
            if not code or code.used_at is not None:
                return False
            code.used_at = now
            self._persist_state()
            return True

    def delete_recovery_codes(self, user_id: str) -> int:
        with self._data_lock:
            stale = [cid for cid, c in self.recovery_codes.items() if c.user_id == user_id]
            for cid in stale:
                self.recovery_codes.pop(cid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # device trust
    def create_device_trust(self, token: DeviceTrustToken) -> DeviceTrustToken:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
            self.device_trust[token.id] = self._copy(token)
            self._persist_state()
            return self._copy(token)

    def get_device_trust_by_hash(self, token_hash: str) -> Optional[DeviceTrustToken]:
        with self._data_lock:
            return self._copy(
                next(
                    (t for t in self.device_trust.values() if t.token_hash == token_hash),
                    None,
                )
            )

    def touch_device_trust(
        self, token_id: str, *, now: datetime, ip_addr: Optional[str] = None
    ) -> None:
        with self._data_lock:
            token = self.device_trust.get(token_id)
            if not token:
                return
            token.last_seen_at = now
            if ip_addr:
                token.last_ip_addr = ip_addr
            self._persist_state()

    def list_device_trust(self, user_id: str) -> List[DeviceTrustToken]:
        with self._data_lock:
            owned = [
                t
                for t in self.device_trust.values()
                if t.user_id == user_id and t.revoked_at is None
            ]
            owned.sort(key=lambda t: t.last_seen_at or t.created_at, reverse=True)
            return [self._copy(t) for t in owned]

    def revoke_device_trust(self, user_id: str, token_id: str, *, now: datetime) -> bool:
        with self._data_lock:
            token = self.device_trust.get(token_id)
            if not token or token.user_id != user_id or token.revoked_at is not None:
                return False
            token.revoked_at = now
            self._persist_state()
            return True

    def revoke_user_device_trust(self, user_id: str, *, now: datetime) -> int:
        with self._data_lock:
            revoked = 0
            for token in self.device_trust.values():
                if token.user_id == user_id and token.revoked_at is None:
                    token.revoked_at = now
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def purge_device_trust(self, *, now: datetime) -> int:
        with self._data_lock:
            stale = [tid for tid, t in self.device_trust.items() if not t.is_usable(now)]
            for tid in stale:
                self.device_trust.pop(tid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # audit
    def record_login_event(self, event: LoginEvent) -> LoginEvent:
        with self._data_lock:
            self.login_events.append(self._copy(event))
            self._persist_state()
            return event

    def list_login_events(self, user_id: str, *, limit: int = 50) -> List[LoginEvent]:
        with self._data_lock:
            # newest first; later appends win timestamp ties
            owned = [e for e in reversed(self.login_events) if e.user_id == user_id]
            owned.sort(key=lambda e: e.created_at, reverse=True)
            return [self._copy(e) for e in owned[:limit]]

    # lifecycle
    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        with self._data_lock:
            self._persist_state()

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [to_record(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "companies": [to_record(c) for c in self.companies.values()],
            "grants": [to_record(g) for g in self.grants.values()],
            "sessions": [to_record(s) for s in self.sessions.values()],
            "mfa_codes": [to_record(c) for c in self.mfa_codes.values()],
            "recovery_codes": [to_record(c) for c in self.recovery_codes.values()],
            "device_trust": [to_record(t) for t in self.device_trust.values()],
            "login_events": [to_record(e) for e in self.login_events],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", error=str(exc), path=str(path))

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            self.logger.warning("memory_store_load_failed", error=str(exc), path=str(path))
            return False
        self.users = {u["id"]: from_record(User, u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.companies = {
            c["id"]: from_record(Company, c) for c in data.get("companies", [])
        }
        self.grants = {}
        for raw in data.get("grants", []):
            grant = from_record(CompanyAccessGrant, raw)
            self.grants[(grant.user_id, grant.company_id)] = grant
        self.sessions = {
            s["id"]: from_record(Session, s) for s in data.get("sessions", [])
        }
        self.mfa_codes = {
            c["id"]: from_record(MfaCode, c) for c in data.get("mfa_codes", [])
        }
        self.recovery_codes = {
            c["id"]: from_record(RecoveryCode, c) for c in data.get("recovery_codes", [])
        }
        self.device_trust = {
            t["id"]: from_record(DeviceTrustToken, t) for t in data.get("device_trust", [])
        }
        self.login_events = [
            from_record(LoginEvent, e) for e in data.get("login_events", [])
        ]
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            loaded_at=utcnow().isoformat(),
        )
        return True
