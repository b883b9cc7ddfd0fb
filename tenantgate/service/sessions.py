from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Union

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.audit import RequestContext
from tenantgate.service.errors import AuthFailure, Failure
from tenantgate.service.mfa import MfaChallengeEngine
from tenantgate.storage.common import LIVE_SESSION_STATES, AuthStore, session_is_current
from tenantgate.storage.models import Session, SessionState, User, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class MfaEvidence:
    """Proof offered to move a Pending session to Verified."""

    kind: str
    value: str

    CODE = "code"
    RECOVERY_CODE = "recovery_code"

    @classmethod
    def code(cls, value: str) -> "MfaEvidence":
        return cls(kind=cls.CODE, value=value)

    @classmethod
    def recovery_code(cls, value: str) -> "MfaEvidence":
        return cls(kind=cls.RECOVERY_CODE, value=value)


class SessionLifecycleManager:
    """Owns every session state transition.

    ``Anonymous -> Pending -> Verified -> Revoked|Expired``. Each transition
    is a conditional store write, so a revoke racing a touch or an upgrade
    always leaves the session terminal. Validity is recomputed on every call;
    nothing here caches a session between requests.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        mfa: MfaChallengeEngine,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.mfa = mfa
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def _idle_duration(self, remember_me: bool) -> timedelta:
        minutes = (
            self.settings.session_remember_me_minutes
            if remember_me
            else self.settings.session_idle_minutes
        )
        return timedelta(minutes=minutes)

    def _verified_session(
        self,
        user_id: str,
        *,
        now: datetime,
        remember_me: bool,
        mfa_verified: bool,
        active_company_id: Optional[str],
        ctx: RequestContext,
    ) -> Session:
        absolute = now + timedelta(minutes=self.settings.session_absolute_max_minutes)
        return Session.new(
            user_id=user_id,
            state=SessionState.VERIFIED,
            now=now,
            idle_expires_at=min(now + self._idle_duration(remember_me), absolute),
            absolute_expires_at=absolute,
            active_company_id=active_company_id,
            source=ctx.source,
            mfa_verified=mfa_verified,
            data={"remember_me": remember_me},
            ip_addr=ctx.ip_addr,
            user_agent=ctx.user_agent,
        )

    def open_anonymous(self, ctx: Optional[RequestContext] = None) -> Session:
        ctx = ctx or RequestContext()
        now = self._now()
        expires = now + timedelta(minutes=self.settings.session_idle_minutes)
        session = Session.new(
            user_id=None,
            state=SessionState.ANONYMOUS,
            now=now,
            idle_expires_at=expires,
            absolute_expires_at=expires,
            source=ctx.source,
            ip_addr=ctx.ip_addr,
            user_agent=ctx.user_agent,
        )
        return self.store.create_session(session)

    def create_for_login(
        self,
        user: User,
        remember_me: bool,
        ctx: Optional[RequestContext] = None,
        *,
        require_mfa: Optional[bool] = None,
        device_trusted: bool = False,
        active_company_id: Optional[str] = None,
        prior_session_id: Optional[str] = None,
    ) -> Session:
        """Open a Pending or Verified session under a freshly minted id.

        A pre-login session presented by the client is revoked, never reused.
        """
        ctx = ctx or RequestContext()
        now = self._now()
        if prior_session_id:
            self.store.revoke_session(prior_session_id, now=now)
        needs_mfa = user.mfa_enabled if require_mfa is None else require_mfa

        if needs_mfa and not device_trusted:
            pending_until = now + timedelta(minutes=self.settings.pending_session_minutes)
            session = Session.new(
                user_id=user.id,
                state=SessionState.PENDING,
                now=now,
                idle_expires_at=pending_until,
                absolute_expires_at=pending_until,
                active_company_id=active_company_id,
                source=ctx.source,
                data={"pending_mfa_user_id": user.id, "remember_me": remember_me},
                ip_addr=ctx.ip_addr,
                user_agent=ctx.user_agent,
            )
        else:
            session = self._verified_session(
                user.id,
                now=now,
                remember_me=remember_me,
                mfa_verified=needs_mfa and device_trusted,
                active_company_id=active_company_id,
                ctx=ctx,
            )
            if needs_mfa and device_trusted:
                session.data["device_trusted"] = True
        self.store.create_session(session)
        self._enforce_session_limit(user.id, keep_session_id=session.id)
        logger.info(
            "session_created",
            user_id=user.id,
            session_id=session.id,
            state=session.state.value,
            remember_me=remember_me,
        )
        return session

    def upgrade(
        self,
        session_id: str,
        evidence: MfaEvidence,
        ctx: Optional[RequestContext] = None,
    ) -> Union[Session, Failure]:
        """Pending -> Verified under a new id once the evidence checks out."""
        ctx = ctx or RequestContext()
        now = self._now()
        session = self.store.get_session(session_id)
        if (
            session is None
            or session.state != SessionState.PENDING
            or not session.pending_mfa_user_id
            or not session_is_current(session, now)
        ):
            return Failure(AuthFailure.NO_PENDING_MFA)

        user_id = session.pending_mfa_user_id
        if evidence.kind == MfaEvidence.RECOVERY_CODE:
            failure = self.mfa.verify_recovery(user_id, evidence.value, ctx)
        else:
            failure = self.mfa.verify(user_id, evidence.value, ctx)
        if failure is not None:
            return failure

        now = self._now()
        upgraded = self._verified_session(
            user_id,
            now=now,
            remember_me=session.remember_me,
            mfa_verified=True,
            active_company_id=session.active_company_id,
            ctx=RequestContext(
                ip_addr=ctx.ip_addr or session.ip_addr,
                user_agent=ctx.user_agent or session.user_agent,
                source=session.source,
            ),
        )
        if not self.store.replace_session(
            session.id, upgraded, expected_state=SessionState.PENDING, valid_at=now
        ):
            logger.warning("session_upgrade_lost_race", session_id=session.id, user_id=user_id)
            return Failure(AuthFailure.NO_PENDING_MFA)
        self._enforce_session_limit(user_id, keep_session_id=upgraded.id)
        logger.info(
            "session_upgraded",
            user_id=user_id,
            previous_session_id=session.id,
            session_id=upgraded.id,
            evidence=evidence.kind,
        )
        return upgraded

    def touch(self, session_id: str) -> Optional[Session]:
        """Slide the idle expiry forward, never past the absolute expiry."""
        now = self._now()
        session = self.store.get_session(session_id)
        if session is None or session.state != SessionState.VERIFIED:
            return None
        new_idle = min(
            now + self._idle_duration(session.remember_me), session.absolute_expires_at
        )
        # Guarded on VERIFIED so a concurrent revoke always wins
        return self.store.update_session(
            session_id,
            expected_states=(SessionState.VERIFIED,),
            valid_at=now,
            idle_expires_at=new_idle,
            last_activity_at=now,
        )

    def revoke(self, session_id: str) -> bool:
        """Idempotent; returns True only for the call that ended the session."""
        revoked = self.store.revoke_session(session_id, now=self._now())
        if revoked:
            logger.info("session_revoked", session_id=session_id)
        return revoked

    def revoke_all(self, user_id: str, except_session_id: Optional[str] = None) -> int:
        count = self.store.revoke_user_sessions(
            user_id, now=self._now(), except_session_id=except_session_id
        )
        logger.info(
            "sessions_revoked",
            user_id=user_id,
            count=count,
            kept_session_id=except_session_id,
        )
        return count

    def is_valid(self, session: Optional[Session], *, require_verified: bool = True) -> bool:
        if session is None or session.state not in LIVE_SESSION_STATES:
            return False
        if not session_is_current(session, self._now()):
            return False
        if require_verified:
            return session.state == SessionState.VERIFIED
        return True

    def validate(self, session_id: Optional[str], *, require_verified: bool = True) -> Optional[Session]:
        """Load and check a session; marks it Expired when found stale."""
        if not session_id:
            return None
        session = self.store.get_session(session_id)
        if session is None:
            return None
        if session.state in LIVE_SESSION_STATES and not session_is_current(session, self._now()):
            self.store.update_session(
                session.id,
                expected_states=(session.state,),
                state=SessionState.EXPIRED,
            )
            logger.info("session_expired", session_id=session.id, user_id=session.user_id)
            return None
        return session if self.is_valid(session, require_verified=require_verified) else None

    def list_for_user(self, user_id: str) -> List[Session]:
        now = self._now()
        return [
            s
            for s in self.store.list_user_sessions(user_id)
            if s.state in LIVE_SESSION_STATES and session_is_current(s, now)
        ]

    def _enforce_session_limit(self, user_id: str, *, keep_session_id: str) -> int:
        live = self.list_for_user(user_id)
        excess = len(live) - self.settings.max_sessions_per_user
        if excess <= 0:
            return 0
        evicted = 0
        for candidate in sorted(live, key=lambda s: s.created_at):
            if evicted >= excess:
                break
            if candidate.id == keep_session_id:
                continue
            if self.store.revoke_session(candidate.id, now=self._now()):
                evicted += 1
        logger.info("session_limit_enforced", user_id=user_id, evicted=evicted)
        return evicted

    def purge_expired(self) -> Dict[str, int]:
        """Drop terminal rows; validation never depends on this having run."""
        now = self._now()
        purged = {
            "sessions": self.store.purge_sessions(now=now),
            "mfa_codes": self.store.purge_mfa_codes(now=now),
            "device_trust": self.store.purge_device_trust(now=now),
        }
        logger.info("auth_state_purged", **purged)
        return purged
