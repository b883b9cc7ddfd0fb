from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.audit import AuditLog, RequestContext
from tenantgate.service.errors import AuthFailure, Failure
from tenantgate.storage.common import AuthStore
from tenantgate.storage.models import LoginEventType, User, utcnow

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


def build_password_hasher(settings: Settings) -> PasswordHasher:
    return PasswordHasher(
        time_cost=settings.password_hash_time_cost,
        memory_cost=settings.password_hash_memory_kib,
        type=Type.ID,
    )


class CredentialVerifier:
    """Checks email and password against stored argon2id hashes.

    Failed attempts are counted in a rolling window; crossing a tier locks
    the account for that tier's duration. While locked, the password is not
    checked at all.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
        audit: Optional[AuditLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._pwd_hasher = hasher or build_password_hasher(settings)
        self.audit = audit or AuditLog(store, clock=clock)
        self._clock = clock or utcnow
        # Unknown emails verify against this so both paths cost one argon2 check
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(24))

    def _now(self) -> datetime:
        return self._clock()

    def _hash_password(self, password: str) -> Tuple[str, str]:
        digest = self._pwd_hasher.hash(password)
        return digest, PASSWORD_ALGO

    def set_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def _check_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _lock_minutes(self, attempts: int) -> int:
        s = self.settings
        tiers = (
            (s.lockout_long_attempts, s.lockout_long_minutes),
            (s.lockout_second_attempts, s.lockout_second_minutes),
            (s.lockout_first_attempts, s.lockout_first_minutes),
        )
        for threshold, minutes in tiers:
            if attempts >= threshold:
                return minutes
        return 0

    def verify(
        self, email: str, password: str, ctx: Optional[RequestContext] = None
    ) -> Union[User, Failure]:
        now = self._now()
        user = self.store.get_user_by_email(email) if email else None
        if user is None:
            self._check_hash(self._dummy_hash, password)
            logger.info("login_failed", reason="unknown_user")
            return Failure(AuthFailure.INVALID_CREDENTIALS)

        if user.is_locked(now):
            logger.warning(
                "login_blocked_locked",
                user_id=user.id,
                locked_until=user.locked_until.isoformat(),
            )
            return Failure(AuthFailure.ACCOUNT_LOCKED)

        record = self.store.get_password_record(user.id)
        if record and record[1] == PASSWORD_ALGO:
            matched = self._check_hash(record[0], password)
        else:
            if record:
                logger.warning("password_algo_mismatch", user_id=user.id, algo=record[1])
            self._check_hash(self._dummy_hash, password)
            matched = False

        if not matched:
            return self._register_failure(user, now, ctx)

        if not user.is_active:
            logger.info("login_failed", user_id=user.id, reason="inactive")
            return Failure(AuthFailure.INVALID_CREDENTIALS)

        self.store.reset_login_failures(user.id, now=now)
        if self._pwd_hasher.check_needs_rehash(record[0]):
            self.set_password(user.id, password)
            logger.info("password_rehashed", user_id=user.id)
        return self.store.get_user(user.id) or user

    def _register_failure(
        self, user: User, now: datetime, ctx: Optional[RequestContext]
    ) -> Failure:
        window = timedelta(minutes=self.settings.lockout_window_minutes)
        updated = self.store.register_login_failure(user.id, now=now, window=window)
        attempts = updated.failed_attempts if updated else 1
        self.audit.record(user.id, LoginEventType.LOGIN_FAILED, ctx, attempts=attempts)
        lock_minutes = self._lock_minutes(attempts)
        if not lock_minutes:
            logger.info("login_failed", user_id=user.id, attempts=attempts)
            return Failure(AuthFailure.INVALID_CREDENTIALS)

        locked_until = now + timedelta(minutes=lock_minutes)
        self.store.set_user_lock(user.id, locked_until)
        self.audit.record(
            user.id,
            LoginEventType.ACCOUNT_LOCKED,
            ctx,
            attempts=attempts,
            locked_until=locked_until.isoformat(),
        )
        logger.warning(
            "account_locked",
            user_id=user.id,
            attempts=attempts,
            locked_minutes=lock_minutes,
        )
        return Failure(AuthFailure.ACCOUNT_LOCKED)
