from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from tenantgate.logging import get_logger
from tenantgate.storage.common import (
    LIVE_SESSION_STATES,
    SESSION_MUTABLE_FIELDS,
    from_record,
    parse_ip_address,
    parse_uuid,
)
from tenantgate.storage.errors import ConstraintViolation, StorageError
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

_SCHEMA_PATH = Path(__file__).with_name("schema.sql")

_LIVE_STATE_VALUES = [state.value for state in LIVE_SESSION_STATES]


def _normalize_row(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: str(value) if isinstance(value, uuid.UUID) else value
        for key, value in row.items()
    }


def _session_params(sess: Session) -> Dict[str, Any]:
    return {
        "id": sess.id,
        "user_id": sess.user_id,
        "state": sess.state.value,
        "created_at": sess.created_at,
        "idle_expires_at": sess.idle_expires_at,
        "absolute_expires_at": sess.absolute_expires_at,
        "active_company_id": sess.active_company_id,
        "source": sess.source,
        "mfa_verified": sess.mfa_verified,
        "data": json.dumps(sess.data or {}),
        "ip_addr": parse_ip_address(sess.ip_addr),
        "user_agent": sess.user_agent,
        "last_activity_at": sess.last_activity_at,
        "revoked_at": sess.revoked_at,
    }


_INSERT_SESSION = """
    INSERT INTO auth_session (
        id, user_id, state, created_at, idle_expires_at, absolute_expires_at,
        active_company_id, source, mfa_verified, data, ip_addr, user_agent,
        last_activity_at, revoked_at
    ) VALUES (
        %(id)s, %(user_id)s, %(state)s, %(created_at)s, %(idle_expires_at)s,
        %(absolute_expires_at)s, %(active_company_id)s, %(source)s, %(mfa_verified)s,
        %(data)s, %(ip_addr)s, %(user_agent)s, %(last_activity_at)s, %(revoked_at)s
    )
"""


class PostgresStore:
    """Postgres-backed auth store; conditional transitions use UPDATE ... RETURNING."""

    def __init__(self, dsn: str, *, ensure_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageError("database unavailable", {"error": str(exc)}) from exc
        except psycopg.DataError as exc:
            self.logger.warning("postgres_data_error", error=str(exc))
            raise StorageError("invalid value for query", {"error": str(exc)}) from exc

    def _ensure_schema(self) -> None:
        """Create missing tables from the bundled ``schema.sql``."""

        ddl = _SCHEMA_PATH.read_text()
        with self._connect() as conn:
            conn.execute(ddl)

    def _fetch_one(self, sql: str, params: Any = None) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return _normalize_row(row) if row else None

    def _fetch_all(self, sql: str, params: Any = None) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_normalize_row(row) for row in rows]

    def _execute(self, sql: str, params: Any = None) -> int:
        with self._connect() as conn:
            result = conn.execute(sql, params)
            return result.rowcount

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
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, home_company_id, platform_role, is_active, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        home_company_id,
                        platform_role,
                        is_active,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "home company does not exist", {"company_id": home_company_id}
            )
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        if parse_uuid(user_id) is None:
            return None
        row = self._fetch_one("SELECT * FROM app_user WHERE id = %s", (user_id,))
        return from_record(User, row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        row = self._fetch_one(
            "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
        )
        return from_record(User, row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> None:
        self._execute(
            "UPDATE app_user SET is_active = %s WHERE id = %s", (is_active, user_id)
        )

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            self._execute(
                """
                INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                VALUES (%s, %s, %s, now())
                ON CONFLICT (user_id) DO UPDATE
                SET password_hash = EXCLUDED.password_hash,
                    password_algo = EXCLUDED.password_algo,
                    last_updated_at = now()
                """,
                (user_id, password_hash, password_algo),
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        row = self._fetch_one(
            "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
            (user_id,),
        )
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    def register_login_failure(
        self, user_id: str, *, now: datetime, window: timedelta
    ) -> Optional[User]:
        row = self._fetch_one(
            """
            UPDATE app_user
            SET failed_attempts = CASE
                    WHEN last_failed_at IS NULL OR last_failed_at < %(cutoff)s THEN 1
                    ELSE failed_attempts + 1
                END,
                last_failed_at = %(now)s
            WHERE id = %(id)s
            RETURNING *
            """,
            {"id": user_id, "now": now, "cutoff": now - window},
        )
        return from_record(User, row) if row else None

    def set_user_lock(self, user_id: str, locked_until: Optional[datetime]) -> None:
        self._execute(
            "UPDATE app_user SET locked_until = %s WHERE id = %s", (locked_until, user_id)
        )

    def reset_login_failures(self, user_id: str, *, now: datetime) -> None:
        self._execute(
            """
            UPDATE app_user
            SET failed_attempts = 0, last_failed_at = NULL, locked_until = NULL, last_login_at = %s
            WHERE id = %s
            """,
            (now, user_id),
        )

    def set_mfa_enabled(self, user_id: str, enabled: bool, *, now: datetime) -> Optional[User]:
        row = self._fetch_one(
            "UPDATE app_user SET mfa_enabled = %s, mfa_enabled_at = %s WHERE id = %s RETURNING *",
            (enabled, now if enabled else None, user_id),
        )
        return from_record(User, row) if row else None

    # companies
    def create_company(
        self, name: str, *, mfa_required: bool = False, is_active: bool = True
    ) -> Company:
        company = Company.new(name, mfa_required=mfa_required, is_active=is_active)
        self._execute(
            """
            INSERT INTO company (id, name, is_active, mfa_required, created_at)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (company.id, name, is_active, mfa_required, company.created_at),
        )
        return company

    def get_company(self, company_id: str) -> Optional[Company]:
        if parse_uuid(company_id) is None:
            return None
        row = self._fetch_one("SELECT * FROM company WHERE id = %s", (company_id,))
        return from_record(Company, row) if row else None

    def set_company_active(self, company_id: str, is_active: bool) -> None:
        self._execute(
            "UPDATE company SET is_active = %s WHERE id = %s", (is_active, company_id)
        )

    def list_active_companies(self) -> List[Company]:
        rows = self._fetch_all(
            "SELECT * FROM company WHERE is_active ORDER BY lower(name)"
        )
        return [from_record(Company, row) for row in rows]

    def count_active_companies(self) -> int:
        row = self._fetch_one("SELECT count(*) AS total FROM company WHERE is_active")
        return int(row["total"]) if row else 0

    def grant_company_access(
        self, user_id: str, company_id: str, *, pinned: bool = False
    ) -> CompanyAccessGrant:
        try:
            row = self._fetch_one(
                """
                INSERT INTO company_access_grant (user_id, company_id, pinned, is_active)
                VALUES (%s, %s, %s, TRUE)
                ON CONFLICT (user_id, company_id) DO UPDATE
                SET pinned = EXCLUDED.pinned, is_active = TRUE
                RETURNING *
                """,
                (user_id, company_id, pinned),
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "grant references missing user or company",
                {"user_id": user_id, "company_id": company_id},
            )
        return from_record(CompanyAccessGrant, row)

    def revoke_company_access(self, user_id: str, company_id: str) -> None:
        self._execute(
            "UPDATE company_access_grant SET is_active = FALSE WHERE user_id = %s AND company_id = %s",
            (user_id, company_id),
        )

    def get_company_grant(self, user_id: str, company_id: str) -> Optional[CompanyAccessGrant]:
        if parse_uuid(user_id) is None or parse_uuid(company_id) is None:
            return None
        row = self._fetch_one(
            "SELECT * FROM company_access_grant WHERE user_id = %s AND company_id = %s",
            (user_id, company_id),
        )
        return from_record(CompanyAccessGrant, row) if row else None

    def list_company_grants(
        self, user_id: str, *, include_revoked: bool = False
    ) -> List[CompanyAccessGrant]:
        rows = self._fetch_all(
            """
            SELECT * FROM company_access_grant
            WHERE user_id = %s AND (is_active OR %s)
            ORDER BY pinned DESC, last_accessed_at DESC NULLS LAST
            """,
            (user_id, include_revoked),
        )
        return [from_record(CompanyAccessGrant, row) for row in rows]

    def touch_company_grant(self, user_id: str, company_id: str, *, now: datetime) -> None:
        if parse_uuid(user_id) is None or parse_uuid(company_id) is None:
            return
        self._execute(
            "UPDATE company_access_grant SET last_accessed_at = %s WHERE user_id = %s AND company_id = %s",
            (now, user_id, company_id),
        )

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            self._execute(_INSERT_SESSION, _session_params(session))
        except errors.UniqueViolation:
            raise ConstraintViolation("session id collision", {"session_id": session.id})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        if parse_uuid(session_id) is None:
            return None
        row = self._fetch_one("SELECT * FROM auth_session WHERE id = %s", (session_id,))
        return from_record(Session, row) if row else None

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
        if parse_uuid(session_id) is None:
            return None
        params: Dict[str, Any] = {
            "id": session_id,
            "states": [SessionState(s).value for s in expected_states],
        }
        assignments = []
        for key, value in fields.items():
            if key == "state":
                value = SessionState(value).value
            elif key == "data":
                value = json.dumps(value or {})
            params[f"set_{key}"] = value
            assignments.append(f"{key} = %(set_{key})s")
        if not assignments:
            # no-op write that still enforces the guard
            assignments.append("state = state")
        sql = f"UPDATE auth_session SET {', '.join(assignments)} WHERE id = %(id)s AND state = ANY(%(states)s)"
        if valid_at is not None:
            params["valid_at"] = valid_at
            sql += " AND idle_expires_at > %(valid_at)s AND absolute_expires_at > %(valid_at)s"
        sql += " RETURNING *"
        row = self._fetch_one(sql, params)
        return from_record(Session, row) if row else None

    def replace_session(
        self,
        old_session_id: str,
        new_session: Session,
        *,
        expected_state: SessionState,
        valid_at: datetime,
    ) -> bool:
        if parse_uuid(old_session_id) is None:
            return False
        with self._connect() as conn:
            with conn.transaction():
                won = conn.execute(
                    """
                    UPDATE auth_session
                    SET state = %(revoked)s, revoked_at = %(now)s
                    WHERE id = %(id)s AND state = %(expected)s
                      AND idle_expires_at > %(now)s AND absolute_expires_at > %(now)s
                    RETURNING id
                    """,
                    {
                        "id": old_session_id,
                        "expected": SessionState(expected_state).value,
                        "revoked": SessionState.REVOKED.value,
                        "now": valid_at,
                    },
                ).fetchone()
                if not won:
                    return False
                conn.execute(_INSERT_SESSION, _session_params(new_session))
        return True

    def revoke_session(self, session_id: str, *, now: datetime) -> bool:
        if parse_uuid(session_id) is None:
            return False
        row = self._fetch_one(
            """
            UPDATE auth_session SET state = %s, revoked_at = %s
            WHERE id = %s AND state = ANY(%s)
            RETURNING id
            """,
            (SessionState.REVOKED.value, now, session_id, _LIVE_STATE_VALUES),
        )
        return row is not None

    def revoke_user_sessions(
        self, user_id: str, *, now: datetime, except_session_id: Optional[str] = None
    ) -> int:
        except_session_id = parse_uuid(except_session_id)
        return self._execute(
            """
            UPDATE auth_session SET state = %s, revoked_at = %s
            WHERE user_id = %s AND state = ANY(%s)
              AND (%s::uuid IS NULL OR id <> %s::uuid)
            """,
            (
                SessionState.REVOKED.value,
                now,
                user_id,
                _LIVE_STATE_VALUES,
                except_session_id,
                except_session_id,
            ),
        )

    def list_user_sessions(self, user_id: str) -> List[Session]:
        rows = self._fetch_all(
            "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at",
            (user_id,),
        )
        return [from_record(Session, row) for row in rows]

    def purge_sessions(self, *, now: datetime) -> int:
        return self._execute(
            """
            DELETE FROM auth_session
            WHERE state <> ALL(%s) OR idle_expires_at <= %s OR absolute_expires_at <= %s
            """,
            (_LIVE_STATE_VALUES, now, now),
        )

    # one-time codes
    def create_mfa_code(self, code: MfaCode) -> MfaCode:
        with self._connect() as conn:
            with conn.transaction():
                conn.execute("DELETE FROM mfa_code WHERE user_id = %s", (code.user_id,))
                conn.execute(
                    """
                    INSERT INTO mfa_code (id, user_id, code_hash, issued_at, expires_at, consumed_at, attempts)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        code.id,
                        code.user_id,
                        code.code_hash,
                        code.issued_at,
                        code.expires_at,
                        code.consumed_at,
                        code.attempts,
                    ),
                )
        return code

    def get_latest_mfa_code(self, user_id: str) -> Optional[MfaCode]:
        row = self._fetch_one(
            """
            SELECT * FROM mfa_code
            WHERE user_id = %s AND consumed_at IS NULL
            ORDER BY issued_at DESC LIMIT 1
            """,
            (user_id,),
        )
        return from_record(MfaCode, row) if row else None

    def increment_mfa_code_attempts(self, code_id: str) -> int:
        row = self._fetch_one(
            "UPDATE mfa_code SET attempts = attempts + 1 WHERE id = %s RETURNING attempts",
            (code_id,),
        )
        return int(row["attempts"]) if row else 0

    def consume_mfa_code(self, code_id: str, *, now: datetime) -> bool:
        row = self._fetch_one(
            """
            UPDATE mfa_code SET consumed_at = %(now)s
            WHERE id = %(id)s AND consumed_at IS NULL AND expires_at > %(now)s
            RETURNING id
            """,
            {"id": code_id, "now": now},
        )
        return row is not None

    def invalidate_mfa_codes(self, user_id: str) -> int:
        return self._execute("DELETE FROM mfa_code WHERE user_id = %s", (user_id,))

    def purge_mfa_codes(self, *, now: datetime) -> int:
        return self._execute(
            "DELETE FROM mfa_code WHERE consumed_at IS NOT NULL OR expires_at <= %s",
            (now,),
        )

    # recovery codes
    def replace_recovery_codes(self, user_id: str, codes: List[RecoveryCode]) -> None:
        with self._connect() as conn:
            with conn.transaction():
                conn.execute("DELETE FROM recovery_code WHERE user_id = %s", (user_id,))
                for code in codes:
                    conn.execute(
                        """
                        INSERT INTO recovery_code (id, user_id, code_hash, created_at, used_at)
                        VALUES (%s, %s, %s, %s, %s)
                        """,
                        (code.id, user_id, code.code_hash, code.created_at, code.used_at),
                    )

    def list_unused_recovery_codes(self, user_id: str) -> List[RecoveryCode]:
        rows = self._fetch_all(
            "SELECT * FROM recovery_code WHERE user_id = %s AND used_at IS NULL",
            (user_id,),
        )
        return [from_record(RecoveryCode, row) for row in rows]

    def consume_recovery_code(self, code_id: str, *, now: datetime) -> bool:
        row = self._fetch_one(
            "UPDATE recovery_code SET used_at = %s WHERE id = %s AND used_at IS NULL RETURNING id",
            (now, code_id),
        )
        return row is not None

    def delete_recovery_codes(self, user_id: str) -> int:
        return self._execute("DELETE FROM recovery_code WHERE user_id = %s", (user_id,))

    # device trust
    def create_device_trust(self, token: DeviceTrustToken) -> DeviceTrustToken:
        try:
            self._execute(
                """
                INSERT INTO device_trust_token (
                    id, user_id, device_fingerprint, device_name, token_hash,
                    created_at, expires_at, last_seen_at, last_ip_addr, revoked_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    token.id,
                    token.user_id,
                    token.device_fingerprint,
                    token.device_name,
                    token.token_hash,
                    token.created_at,
                    token.expires_at,
                    token.last_seen_at,
                    parse_ip_address(token.last_ip_addr),
                    token.revoked_at,
                ),
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
        return token

    def get_device_trust_by_hash(self, token_hash: str) -> Optional[DeviceTrustToken]:
        row = self._fetch_one(
            "SELECT * FROM device_trust_token WHERE token_hash = %s", (token_hash,)
        )
        return from_record(DeviceTrustToken, row) if row else None

    def touch_device_trust(
        self, token_id: str, *, now: datetime, ip_addr: Optional[str] = None
    ) -> None:
        if parse_uuid(token_id) is None:
            return
        self._execute(
            """
            UPDATE device_trust_token
            SET last_seen_at = %s, last_ip_addr = COALESCE(%s::inet, last_ip_addr)
            WHERE id = %s
            """,
            (now, parse_ip_address(ip_addr), token_id),
        )

    def list_device_trust(self, user_id: str) -> List[DeviceTrustToken]:
        rows = self._fetch_all(
            """
            SELECT * FROM device_trust_token
            WHERE user_id = %s AND revoked_at IS NULL
            ORDER BY COALESCE(last_seen_at, created_at) DESC
            """,
            (user_id,),
        )
        return [from_record(DeviceTrustToken, row) for row in rows]

    def revoke_device_trust(self, user_id: str, token_id: str, *, now: datetime) -> bool:
        if parse_uuid(token_id) is None:
            return False
        row = self._fetch_one(
            """
            UPDATE device_trust_token SET revoked_at = %s
            WHERE id = %s AND user_id = %s AND revoked_at IS NULL
            RETURNING id
            """,
            (now, token_id, user_id),
        )
        return row is not None

    def revoke_user_device_trust(self, user_id: str, *, now: datetime) -> int:
        return self._execute(
            "UPDATE device_trust_token SET revoked_at = %s WHERE user_id = %s AND revoked_at IS NULL",
            (now, user_id),
        )

    def purge_device_trust(self, *, now: datetime) -> int:
        return self._execute(
            "DELETE FROM device_trust_token WHERE revoked_at IS NOT NULL OR expires_at <= %s",
            (now,),
        )

    # audit
    def record_login_event(self, event: LoginEvent) -> LoginEvent:
        self._execute(
            """
            INSERT INTO login_event (id, user_id, event_type, ip_addr, user_agent, source, created_at, meta)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                event.id,
                event.user_id,
                event.event_type.value,
                parse_ip_address(event.ip_addr),
                event.user_agent,
                event.source,
                event.created_at,
                json.dumps(event.meta or {}),
            ),
        )
        return event

    def list_login_events(self, user_id: str, *, limit: int = 50) -> List[LoginEvent]:
        rows = self._fetch_all(
            "SELECT * FROM login_event WHERE user_id = %s ORDER BY created_at DESC, seq DESC LIMIT %s",
            (user_id, limit),
        )
        return [from_record(LoginEvent, row) for row in rows]

    # lifecycle
    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self.pool.close()
