from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Union

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.audit import AuditLog, RequestContext
from tenantgate.service.background import BackgroundTasks
from tenantgate.service.credentials import build_password_hasher
from tenantgate.service.device_trust import DeviceTrustManager
from tenantgate.service.errors import AuthFailure, Failure
from tenantgate.storage.common import AuthStore
from tenantgate.storage.models import LoginEventType, MfaCode, RecoveryCode, utcnow

logger = get_logger(__name__)

CODE_DIGITS = 6
# No 0/O or 1/I so codes survive being read aloud or handwritten
RECOVERY_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
RECOVERY_CODE_LENGTH = 8

# notify(user_id, code, expires_in_seconds)
CodeNotifier = Callable[[str, str, int], None]


@dataclass(frozen=True)
class MfaCodeIssued:
    expires_in: int
    code: Optional[str] = None


@dataclass(frozen=True)
class MfaStatus:
    enabled: bool
    enabled_at: Optional[datetime]
    recovery_codes_remaining: int


def normalize_recovery_code(raw: str) -> str:
    return "".join(ch for ch in (raw or "").upper() if ch not in "- ")


def format_recovery_code(raw: str) -> str:
    half = len(raw) // 2
    return f"{raw[:half]}-{raw[half:]}"


class MfaChallengeEngine:
    """One-time email codes, recovery codes, and the MFA enable/disable switch.

    Only the most recent unconsumed, unexpired code for a user can verify.
    Codes are stored as an HMAC keyed with ``SECRET_KEY``; recovery codes as
    argon2id hashes.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        device_trust: Optional[DeviceTrustManager] = None,
        background: Optional[BackgroundTasks] = None,
        notify: Optional[CodeNotifier] = None,
        hasher: Optional[PasswordHasher] = None,
        audit: Optional[AuditLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or utcnow
        self.device_trust = device_trust or DeviceTrustManager(store, settings, clock=self._clock)
        self.background = background or BackgroundTasks(workers=1)
        self.notify = notify
        self._hasher = hasher or build_password_hasher(settings)
        self.audit = audit or AuditLog(store, clock=self._clock)

    def _now(self) -> datetime:
        return self._clock()

    def _code_hash(self, user_id: str, code: str) -> str:
        return hmac.new(
            self.settings.secret_key.encode(),
            f"{user_id}:{code}".encode(),
            hashlib.sha256,
        ).hexdigest()

    @staticmethod
    def _generate_code() -> str:
        return "".join(str(secrets.randbelow(10)) for _ in range(CODE_DIGITS))

    @staticmethod
    def _generate_recovery_code() -> str:
        return "".join(
            secrets.choice(RECOVERY_ALPHABET) for _ in range(RECOVERY_CODE_LENGTH)
        )

    # one-time codes
    def send(self, user_id: str, ctx: Optional[RequestContext] = None) -> MfaCodeIssued:
        ttl = self.settings.mfa_code_ttl_seconds
        code = self._generate_code()
        record = MfaCode.new(
            user_id, self._code_hash(user_id, code), now=self._now(), ttl_seconds=ttl
        )
        self.store.create_mfa_code(record)
        self.audit.record(user_id, LoginEventType.MFA_CHALLENGE_SENT, ctx)
        logger.info("mfa_code_sent", user_id=user_id, expires_in=ttl)
        if self.notify is not None:
            self.background.submit("mfa_code_notification", self.notify, user_id, code, ttl)
        return MfaCodeIssued(
            expires_in=ttl, code=code if self.settings.expose_mfa_codes else None
        )

    def verify(
        self, user_id: str, code: str, ctx: Optional[RequestContext] = None
    ) -> Optional[Failure]:
        """Consume the outstanding code; ``None`` means success."""
        now = self._now()
        record = self.store.get_latest_mfa_code(user_id)
        if record is None:
            return self._reject(user_id, AuthFailure.INVALID_CODE, ctx, reason="no_code")
        if record.expires_at <= now:
            return self._reject(user_id, AuthFailure.CODE_EXPIRED, ctx, reason="expired")

        attempts = self.store.increment_mfa_code_attempts(record.id)
        max_attempts = self.settings.mfa_code_max_attempts
        if attempts > max_attempts:
            self.store.invalidate_mfa_codes(user_id)
            return self._reject(user_id, AuthFailure.INVALID_CODE, ctx, reason="too_many_attempts")

        candidate = self._code_hash(user_id, (code or "").strip())
        if not hmac.compare_digest(candidate, record.code_hash):
            if attempts >= max_attempts:
                self.store.invalidate_mfa_codes(user_id)
            return self._reject(
                user_id, AuthFailure.INVALID_CODE, ctx, reason="mismatch", attempts=attempts
            )

        if not self.store.consume_mfa_code(record.id, now=now):
            # lost a race with a concurrent verify, or expired in between
            return self._reject(user_id, AuthFailure.INVALID_CODE, ctx, reason="already_consumed")
        logger.info("mfa_code_verified", user_id=user_id)
        return None

    def _reject(
        self,
        user_id: str,
        kind: AuthFailure,
        ctx: Optional[RequestContext],
        **meta,
    ) -> Failure:
        self.audit.record(user_id, LoginEventType.MFA_FAILED, ctx, failure=kind.code, **meta)
        logger.info("mfa_verify_failed", user_id=user_id, failure=kind.code, **meta)
        return Failure(kind)

    # recovery codes
    def _check_recovery_hash(self, code_hash: str, normalized: str) -> bool:
        try:
            return self._hasher.verify(code_hash, normalized)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def verify_recovery(
        self, user_id: str, code: str, ctx: Optional[RequestContext] = None
    ) -> Optional[Failure]:
        normalized = normalize_recovery_code(code)
        if len(normalized) != RECOVERY_CODE_LENGTH:
            return self._reject(user_id, AuthFailure.INVALID_RECOVERY_CODE, ctx, reason="malformed")
        match = next(
            (
                rc
                for rc in self.store.list_unused_recovery_codes(user_id)
                if self._check_recovery_hash(rc.code_hash, normalized)
            ),
            None,
        )
        if match is None or not self.store.consume_recovery_code(match.id, now=self._now()):
            return self._reject(user_id, AuthFailure.INVALID_RECOVERY_CODE, ctx, reason="mismatch")
        remaining = len(self.store.list_unused_recovery_codes(user_id))
        self.audit.record(user_id, LoginEventType.RECOVERY_CODE_USED, ctx, remaining=remaining)
        logger.info("recovery_code_used", user_id=user_id, remaining=remaining)
        return None

    def _issue_recovery_codes(self, user_id: str) -> List[str]:
        now = self._now()
        plain = [self._generate_recovery_code() for _ in range(self.settings.recovery_code_count)]
        records = [
            RecoveryCode.new(user_id, self._hasher.hash(code), now=now) for code in plain
        ]
        self.store.replace_recovery_codes(user_id, records)
        return [format_recovery_code(code) for code in plain]

    def recovery_codes_remaining(self, user_id: str) -> int:
        return len(self.store.list_unused_recovery_codes(user_id))

    # enable / disable
    def enable(
        self, user_id: str, ctx: Optional[RequestContext] = None
    ) -> Union[List[str], Failure]:
        """Turn MFA on; the returned plaintext codes are never retrievable again."""
        user = self.store.get_user(user_id)
        if user is None:
            return Failure(AuthFailure.INVALID_CREDENTIALS)
        if user.mfa_enabled:
            return Failure(AuthFailure.MFA_ALREADY_ENABLED)
        codes = self._issue_recovery_codes(user_id)
        self.store.set_mfa_enabled(user_id, True, now=self._now())
        self.audit.record(user_id, LoginEventType.MFA_ENABLED, ctx)
        logger.info("mfa_enabled", user_id=user_id)
        return codes

    def disable(self, user_id: str, ctx: Optional[RequestContext] = None) -> Optional[Failure]:
        user = self.store.get_user(user_id)
        if user is None or not user.mfa_enabled:
            return Failure(AuthFailure.MFA_NOT_ENABLED)
        self.store.set_mfa_enabled(user_id, False, now=self._now())
        self.store.delete_recovery_codes(user_id)
        self.store.invalidate_mfa_codes(user_id)
        revoked_devices = self.device_trust.revoke_all(user_id)
        self.audit.record(
            user_id, LoginEventType.MFA_DISABLED, ctx, revoked_devices=revoked_devices
        )
        logger.info("mfa_disabled", user_id=user_id, revoked_devices=revoked_devices)
        return None

    def regenerate_recovery_codes(
        self, user_id: str, ctx: Optional[RequestContext] = None
    ) -> Union[List[str], Failure]:
        user = self.store.get_user(user_id)
        if user is None or not user.mfa_enabled:
            return Failure(AuthFailure.MFA_NOT_ENABLED)
        codes = self._issue_recovery_codes(user_id)
        self.audit.record(user_id, LoginEventType.RECOVERY_CODES_REGENERATED, ctx)
        logger.info("recovery_codes_regenerated", user_id=user_id, count=len(codes))
        return codes

    def status(self, user_id: str) -> MfaStatus:
        user = self.store.get_user(user_id)
        if user is None:
            return MfaStatus(enabled=False, enabled_at=None, recovery_codes_remaining=0)
        return MfaStatus(
            enabled=user.mfa_enabled,
            enabled_at=user.mfa_enabled_at,
            recovery_codes_remaining=self.recovery_codes_remaining(user_id),
        )
