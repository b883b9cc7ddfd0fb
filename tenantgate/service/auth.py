from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Union

from tenantgate.logging import get_logger
from tenantgate.service.audit import AuditLog, RequestContext
from tenantgate.service.background import BackgroundTasks
from tenantgate.service.company_context import CompanyContextResolver
from tenantgate.service.credentials import CredentialVerifier
from tenantgate.service.device_trust import DeviceTrustManager, device_fingerprint
from tenantgate.service.errors import AuthFailure, Failure
from tenantgate.service.mfa import MfaChallengeEngine, MfaCodeIssued, MfaStatus
from tenantgate.service.sessions import MfaEvidence, SessionLifecycleManager
from tenantgate.storage.common import AuthStore
from tenantgate.storage.models import (
    Company,
    DeviceTrustToken,
    LoginEvent,
    LoginEventType,
    Session,
    SessionState,
    User,
)

logger = get_logger(__name__)

# notice(user_id, enabled) sent after MFA is switched on or off
MfaChangeNotifier = Callable[[str, bool], None]


@dataclass(frozen=True)
class ChallengeRequired:
    session: Session
    expires_in: int
    code: Optional[str] = None


@dataclass(frozen=True)
class Established:
    session: Session
    user: User
    active_company: Optional[Company]
    can_switch_companies: bool
    device_token: Optional[str] = None
    recovery_codes_remaining: Optional[int] = None


@dataclass(frozen=True)
class AuthContext:
    """Who is calling, resolved fresh from the session on every request."""

    session_id: str
    state: SessionState
    user_id: Optional[str]
    active_company_id: Optional[str]
    mfa_verified: bool
    platform_role: Optional[str]
    session_expires_at: datetime

    @property
    def is_verified(self) -> bool:
        return self.state == SessionState.VERIFIED


@dataclass(frozen=True)
class Principal:
    user: User
    active_company: Optional[Company]
    can_switch_companies: bool
    mfa: MfaStatus
    session: Session


class AuthService:
    """Public async surface over the five auth components.

    Every method takes the session id or :class:`AuthContext` explicitly;
    nothing is read from ambient request state.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        credentials: CredentialVerifier,
        mfa: MfaChallengeEngine,
        device_trust: DeviceTrustManager,
        companies: CompanyContextResolver,
        sessions: SessionLifecycleManager,
        audit: AuditLog,
        background: Optional[BackgroundTasks] = None,
        notify_mfa_change: Optional[MfaChangeNotifier] = None,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.mfa = mfa
        self.device_trust = device_trust
        self.companies = companies
        self.sessions = sessions
        self.audit = audit
        self.background = background
        self.notify_mfa_change = notify_mfa_change
        self.logger = logger

    def _established(
        self,
        session: Session,
        *,
        device_token: Optional[str] = None,
        recovery_codes_remaining: Optional[int] = None,
    ) -> Established:
        user = self.store.get_user(session.user_id)
        return Established(
            session=session,
            user=user,
            active_company=self.companies.resolve_active_company(session),
            can_switch_companies=self.companies.can_switch_companies(user),
            device_token=device_token,
            recovery_codes_remaining=recovery_codes_remaining,
        )

    def _dispatch_mfa_notice(self, user_id: str, enabled: bool) -> None:
        if self.notify_mfa_change and self.background:
            self.background.submit(
                "mfa_change_notification", self.notify_mfa_change, user_id, enabled
            )

    # login flow
    def open_anonymous_session(self, ctx: Optional[RequestContext] = None) -> Session:
        return self.sessions.open_anonymous(ctx)

    async def login(
        self,
        email: str,
        password: str,
        remember_me: bool = False,
        ctx: Optional[RequestContext] = None,
        *,
        device_token: Optional[str] = None,
        prior_session_id: Optional[str] = None,
    ) -> Union[ChallengeRequired, Established, Failure]:
        ctx = ctx or RequestContext()
        verified = await asyncio.to_thread(self.credentials.verify, email, password, ctx)
        if isinstance(verified, Failure):
            return verified
        user = verified

        company = self.companies.select_for_login(user)
        if isinstance(company, Failure):
            return company

        require_mfa = user.mfa_enabled or company.mfa_required
        device_trusted = bool(
            require_mfa
            and device_token
            and self.device_trust.validate(user.id, device_token, ip_addr=ctx.ip_addr)
        )
        session = self.sessions.create_for_login(
            user,
            remember_me,
            ctx,
            require_mfa=require_mfa,
            device_trusted=device_trusted,
            active_company_id=company.id,
            prior_session_id=prior_session_id,
        )
        if session.state == SessionState.PENDING:
            issued = self.mfa.send(user.id, ctx)
            return ChallengeRequired(session=session, expires_in=issued.expires_in, code=issued.code)

        self.audit.record(
            user.id,
            LoginEventType.LOGIN_SUCCESS,
            ctx,
            session_id=session.id,
            device_trusted=device_trusted,
        )
        return self._established(session)

    def _pending_user(self, session_id: Optional[str]) -> Union[str, Failure]:
        session = self.sessions.validate(session_id, require_verified=False)
        if (
            session is None
            or session.state != SessionState.PENDING
            or not session.pending_mfa_user_id
        ):
            return Failure(AuthFailure.NO_PENDING_MFA)
        return session.pending_mfa_user_id

    async def send_mfa_code(
        self, session_id: Optional[str], ctx: Optional[RequestContext] = None
    ) -> Union[MfaCodeIssued, Failure]:
        user_id = self._pending_user(session_id)
        if isinstance(user_id, Failure):
            return user_id
        return self.mfa.send(user_id, ctx)

    async def verify_mfa(
        self,
        session_id: Optional[str],
        code: str,
        ctx: Optional[RequestContext] = None,
        *,
        trust_device: bool = False,
    ) -> Union[Established, Failure]:
        ctx = ctx or RequestContext()
        if not session_id:
            return Failure(AuthFailure.NO_PENDING_MFA)
        upgraded = await asyncio.to_thread(
            self.sessions.upgrade, session_id, MfaEvidence.code(code), ctx
        )
        if isinstance(upgraded, Failure):
            return upgraded
        self.audit.record(upgraded.user_id, LoginEventType.MFA_VERIFIED, ctx, evidence="code")
        self.audit.record(upgraded.user_id, LoginEventType.LOGIN_SUCCESS, ctx, session_id=upgraded.id)

        device_token = None
        if trust_device:
            device_token, record = self.device_trust.issue(
                upgraded.user_id,
                device_fingerprint(ctx.device_id, ctx.user_agent),
                user_agent=ctx.user_agent,
                ip_addr=ctx.ip_addr,
            )
            self.audit.record(
                upgraded.user_id,
                LoginEventType.DEVICE_TRUSTED,
                ctx,
                device_id=record.id,
                device_name=record.device_name,
            )
        return self._established(upgraded, device_token=device_token)

    async def verify_recovery_code(
        self,
        session_id: Optional[str],
        code: str,
        ctx: Optional[RequestContext] = None,
    ) -> Union[Established, Failure]:
        ctx = ctx or RequestContext()
        if not session_id:
            return Failure(AuthFailure.NO_PENDING_MFA)
        upgraded = await asyncio.to_thread(
            self.sessions.upgrade, session_id, MfaEvidence.recovery_code(code), ctx
        )
        if isinstance(upgraded, Failure):
            return upgraded
        self.audit.record(
            upgraded.user_id, LoginEventType.MFA_VERIFIED, ctx, evidence="recovery_code"
        )
        self.audit.record(upgraded.user_id, LoginEventType.LOGIN_SUCCESS, ctx, session_id=upgraded.id)
        remaining = self.mfa.recovery_codes_remaining(upgraded.user_id)
        return self._established(upgraded, recovery_codes_remaining=remaining)

    async def logout(
        self, session_id: Optional[str], ctx: Optional[RequestContext] = None
    ) -> bool:
        if not session_id:
            return False
        session = self.store.get_session(session_id)
        revoked = self.sessions.revoke(session_id)
        if revoked and session is not None and session.user_id:
            self.audit.record(session.user_id, LoginEventType.LOGOUT, ctx, session_id=session_id)
        return revoked

    # request authentication
    async def authenticate(
        self,
        session_id: Optional[str],
        *,
        allow_pending: bool = False,
        touch: bool = True,
    ) -> Optional[AuthContext]:
        session = self.sessions.validate(session_id, require_verified=not allow_pending)
        if session is None:
            return None
        if session.state == SessionState.VERIFIED and touch:
            session = self.sessions.touch(session.id)
            if session is None:
                return None
        platform_role = None
        if session.user_id:
            user = self.store.get_user(session.user_id)
            if user is None or not user.is_active:
                return None
            platform_role = user.platform_role
        return AuthContext(
            session_id=session.id,
            state=session.state,
            user_id=session.user_id,
            active_company_id=session.active_company_id,
            mfa_verified=session.mfa_verified,
            platform_role=platform_role,
            session_expires_at=session.expires_at(),
        )

    async def me(self, auth: AuthContext) -> Optional[Principal]:
        user = self.store.get_user(auth.user_id)
        session = self.store.get_session(auth.session_id)
        if user is None or session is None:
            return None
        return Principal(
            user=user,
            active_company=self.companies.resolve_active_company(session),
            can_switch_companies=self.companies.can_switch_companies(user),
            mfa=self.mfa.status(user.id),
            session=session,
        )

    # sessions
    async def list_sessions(self, auth: AuthContext) -> List[Session]:
        return self.sessions.list_for_user(auth.user_id)

    async def revoke_session(
        self, auth: AuthContext, session_id: str, ctx: Optional[RequestContext] = None
    ) -> Optional[Failure]:
        target = self.store.get_session(session_id)
        if (
            target is None
            or target.user_id != auth.user_id
            or not self.sessions.is_valid(target, require_verified=False)
        ):
            return Failure(AuthFailure.SESSION_NOT_FOUND)
        if self.sessions.revoke(session_id):
            self.audit.record(
                auth.user_id,
                LoginEventType.SESSION_REVOKED,
                ctx,
                session_id=session_id,
                by_session_id=auth.session_id,
            )
        return None

    async def revoke_all_other_sessions(
        self, auth: AuthContext, ctx: Optional[RequestContext] = None
    ) -> int:
        count = self.sessions.revoke_all(auth.user_id, except_session_id=auth.session_id)
        if count:
            self.audit.record(
                auth.user_id,
                LoginEventType.SESSION_REVOKED,
                ctx,
                count=count,
                kept_session_id=auth.session_id,
            )
        return count

    # companies
    async def list_companies(self, auth: AuthContext) -> List[Company]:
        user = self.store.get_user(auth.user_id)
        return self.companies.accessible_companies(user) if user else []

    async def can_switch_companies(self, auth: AuthContext) -> bool:
        user = self.store.get_user(auth.user_id)
        return self.companies.can_switch_companies(user) if user else False

    async def switch_active_company(
        self, auth: AuthContext, company_id: str, ctx: Optional[RequestContext] = None
    ) -> Union[Company, Failure]:
        session = self.store.get_session(auth.session_id)
        if session is None:
            return Failure(AuthFailure.SESSION_NOT_FOUND)
        switched = self.companies.switch_company(session, company_id)
        if isinstance(switched, Failure):
            return switched
        self.audit.record(
            auth.user_id,
            LoginEventType.COMPANY_SWITCHED,
            ctx,
            from_company_id=session.active_company_id,
            company_id=company_id,
        )
        return switched

    # MFA management
    async def mfa_status(self, auth: AuthContext) -> MfaStatus:
        return self.mfa.status(auth.user_id)

    async def enable_mfa(
        self, auth: AuthContext, ctx: Optional[RequestContext] = None
    ) -> Union[List[str], Failure]:
        codes = await asyncio.to_thread(self.mfa.enable, auth.user_id, ctx)
        if not isinstance(codes, Failure):
            self._dispatch_mfa_notice(auth.user_id, True)
        return codes

    async def disable_mfa(
        self, auth: AuthContext, ctx: Optional[RequestContext] = None
    ) -> Optional[Failure]:
        failure = self.mfa.disable(auth.user_id, ctx)
        if failure is None:
            self._dispatch_mfa_notice(auth.user_id, False)
        return failure

    async def regenerate_recovery_codes(
        self, auth: AuthContext, ctx: Optional[RequestContext] = None
    ) -> Union[List[str], Failure]:
        return await asyncio.to_thread(self.mfa.regenerate_recovery_codes, auth.user_id, ctx)

    # trusted devices
    async def list_trusted_devices(self, auth: AuthContext) -> List[DeviceTrustToken]:
        return self.device_trust.list_devices(auth.user_id)

    async def remove_trusted_device(self, auth: AuthContext, device_id: str) -> bool:
        return self.device_trust.remove(auth.user_id, device_id)

    # audit
    async def activity(self, auth: AuthContext, *, limit: int = 50) -> List[LoginEvent]:
        return self.audit.recent(auth.user_id, limit=limit)
