from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, Response

from tenantgate.api.schemas import (
    AnonymousSessionResponse,
    ChallengeResponse,
    CompanyListResponse,
    CompanyResponse,
    CompanySwitchRequest,
    Envelope,
    EstablishedResponse,
    LoginEventResponse,
    LoginRequest,
    MfaCodeSentResponse,
    MfaStatusResponse,
    MfaVerifyRequest,
    PrincipalResponse,
    RecoveryCodeRequest,
    RecoveryCodesResponse,
    RevokedCountResponse,
    SessionResponse,
    TrustedDeviceResponse,
    UserResponse,
)
from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.audit import RequestContext
from tenantgate.service.auth import AuthContext, ChallengeRequired, Established
from tenantgate.service.errors import Failure
from tenantgate.service.mfa import MfaStatus
from tenantgate.service.runtime import check_rate_limit, get_runtime
from tenantgate.storage.common import parse_ip_address
from tenantgate.storage.models import Company, Session, User, utcnow

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

RATE_LIMIT_WINDOW_SECONDS = 60


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _failure_error(failure: Failure) -> HTTPException:
    kind = failure.kind
    details = {"detail": failure.detail} if failure.detail else None
    return _http_error(kind.code, kind.message, kind.status_code, details)


async def _enforce_rate_limit(runtime, key: str, limit: int) -> None:
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, RATE_LIMIT_WINDOW_SECONDS, return_remaining=True
    )
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":", 1)[0], retry_after=reset_seconds)
        raise HTTPException(
            status_code=429,
            detail={
                "status": "error",
                "error": {"code": "rate_limited", "message": "rate limit exceeded"},
            },
            headers={"Retry-After": str(max(1, reset_seconds))},
        )


# cookies


def _seconds_until(expires_at: datetime) -> int:
    return max(0, int((expires_at - utcnow()).total_seconds()))


def _set_session_cookie(
    response: Response, settings: Settings, session_id: str, expires_at: datetime
) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        session_id,
        max_age=_seconds_until(expires_at),
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        path="/",
    )


def _clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        secure=settings.cookie_secure,
        httponly=True,
        samesite="lax",
    )


def _set_device_cookie(response: Response, settings: Settings, token: str) -> None:
    response.set_cookie(
        settings.device_trust_cookie_name,
        token,
        max_age=settings.device_trust_days * 24 * 60 * 60,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        path="/",
    )


# dependencies


def _request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip_addr=parse_ip_address(request.client.host) if request.client else None,
        user_agent=request.headers.get("user-agent"),
        source=request.headers.get("x-client-source", "web")[:32],
        device_id=request.headers.get("x-device-id"),
    )


def _session_cookie(request: Request) -> Optional[str]:
    return request.cookies.get(get_runtime().settings.session_cookie_name)


async def get_user(request: Request, response: Response) -> AuthContext:
    """Resolve and touch the verified session named by the session cookie.

    The cookie is reissued so its max-age tracks the slid idle expiry.
    """
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(_session_cookie(request))
    if not ctx:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    _set_session_cookie(response, runtime.settings, ctx.session_id, ctx.session_expires_at)
    return ctx


# serializers


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        platform_role=user.platform_role,
        mfa_enabled=user.mfa_enabled,
        home_company_id=user.home_company_id,
    )


def _company_response(company: Optional[Company]) -> Optional[CompanyResponse]:
    if company is None:
        return None
    return CompanyResponse(id=company.id, name=company.name, mfa_required=company.mfa_required)


def _session_response(session: Session, current_session_id: Optional[str] = None) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        state=session.state.value,
        created_at=session.created_at,
        expires_at=session.expires_at(),
        idle_expires_at=session.idle_expires_at,
        absolute_expires_at=session.absolute_expires_at,
        active_company_id=session.active_company_id,
        source=session.source,
        mfa_verified=session.mfa_verified,
        ip_addr=session.ip_addr,
        user_agent=session.user_agent,
        last_activity_at=session.last_activity_at,
        is_current=session.id == current_session_id,
    )


def _mfa_status_response(status: MfaStatus) -> MfaStatusResponse:
    return MfaStatusResponse(
        enabled=status.enabled,
        enabled_at=status.enabled_at,
        recovery_codes_remaining=status.recovery_codes_remaining,
    )


def _established_response(result: Established) -> EstablishedResponse:
    session = result.session
    return EstablishedResponse(
        session_id=session.id,
        session_expires_at=session.expires_at(),
        user=_user_response(result.user),
        active_company=_company_response(result.active_company),
        can_switch_companies=result.can_switch_companies,
        mfa_verified=session.mfa_verified,
        device_trusted=result.device_token is not None or bool(session.data.get("device_trusted")),
        recovery_codes_remaining=result.recovery_codes_remaining,
    )


def _apply_established(response: Response, settings: Settings, result: Established) -> None:
    _set_session_cookie(response, settings, result.session.id, result.session.expires_at())
    if result.device_token:
        _set_device_cookie(response, settings, result.device_token)


# login flow


@router.post("/auth/session", response_model=Envelope, status_code=201, tags=["auth"])
async def open_session(
    response: Response, ctx: RequestContext = Depends(_request_context)
):
    runtime = get_runtime()
    session = runtime.auth.open_anonymous_session(ctx)
    _set_session_cookie(response, runtime.settings, session.id, session.expires_at())
    return Envelope(
        status="ok",
        data=AnonymousSessionResponse(
            session_id=session.id, session_expires_at=session.expires_at()
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    ctx: RequestContext = Depends(_request_context),
):
    """Check credentials and open a Pending or Verified session.

    Raises:
        401: invalid credentials
        403: no active company for the account
        423: account locked
        429: rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"login:{body.email}", runtime.settings.login_rate_limit_per_minute
    )
    result = await runtime.auth.login(
        body.email,
        body.password,
        body.remember_me,
        ctx,
        device_token=request.cookies.get(runtime.settings.device_trust_cookie_name),
        prior_session_id=_session_cookie(request),
    )
    if isinstance(result, Failure):
        raise _failure_error(result)
    if isinstance(result, ChallengeRequired):
        _set_session_cookie(
            response, runtime.settings, result.session.id, result.session.expires_at()
        )
        return Envelope(
            status="ok",
            data=ChallengeResponse(
                session_id=result.session.id,
                session_expires_at=result.session.expires_at(),
                expires_in=result.expires_in,
                code=result.code,
            ),
        )
    _apply_established(response, runtime.settings, result)
    return Envelope(status="ok", data=_established_response(result))


@router.post("/auth/mfa/send", response_model=Envelope, tags=["auth"])
async def send_mfa_code(request: Request, ctx: RequestContext = Depends(_request_context)):
    runtime = get_runtime()
    session_id = _session_cookie(request)
    if not session_id:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    await _enforce_rate_limit(
        runtime, f"mfa:{session_id}", runtime.settings.mfa_rate_limit_per_minute
    )
    issued = await runtime.auth.send_mfa_code(session_id, ctx)
    if isinstance(issued, Failure):
        raise _failure_error(issued)
    return Envelope(
        status="ok", data=MfaCodeSentResponse(expires_in=issued.expires_in, code=issued.code)
    )


@router.post("/auth/mfa/verify", response_model=Envelope, tags=["auth"])
async def verify_mfa(
    body: MfaVerifyRequest,
    request: Request,
    response: Response,
    ctx: RequestContext = Depends(_request_context),
):
    """Upgrade the Pending session; the session cookie carries a new id afterwards."""
    runtime = get_runtime()
    session_id = _session_cookie(request)
    if not session_id:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    await _enforce_rate_limit(
        runtime, f"mfa:{session_id}", runtime.settings.mfa_rate_limit_per_minute
    )
    result = await runtime.auth.verify_mfa(
        session_id, body.code, ctx, trust_device=body.trust_device
    )
    if isinstance(result, Failure):
        raise _failure_error(result)
    _apply_established(response, runtime.settings, result)
    return Envelope(status="ok", data=_established_response(result))


@router.post("/auth/mfa/verify-recovery", response_model=Envelope, tags=["auth"])
async def verify_recovery_code(
    body: RecoveryCodeRequest,
    request: Request,
    response: Response,
    ctx: RequestContext = Depends(_request_context),
):
    runtime = get_runtime()
    session_id = _session_cookie(request)
    if not session_id:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    await _enforce_rate_limit(
        runtime, f"mfa:{session_id}", runtime.settings.mfa_rate_limit_per_minute
    )
    result = await runtime.auth.verify_recovery_code(session_id, body.code, ctx)
    if isinstance(result, Failure):
        raise _failure_error(result)
    _apply_established(response, runtime.settings, result)
    return Envelope(status="ok", data=_established_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request, response: Response, ctx: RequestContext = Depends(_request_context)
):
    runtime = get_runtime()
    revoked = await runtime.auth.logout(_session_cookie(request), ctx)
    _clear_session_cookie(response, runtime.settings)
    return Envelope(status="ok", data={"revoked": revoked})


# principal and sessions


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    me = await runtime.auth.me(principal)
    if me is None:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            user=_user_response(me.user),
            active_company=_company_response(me.active_company),
            can_switch_companies=me.can_switch_companies,
            mfa=_mfa_status_response(me.mfa),
            session=_session_response(me.session, principal.session_id),
        ),
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(principal)
    return Envelope(
        status="ok",
        data={"sessions": [_session_response(s, principal.session_id) for s in sessions]},
    )


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(
    response: Response,
    session_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
    ctx: RequestContext = Depends(_request_context),
):
    runtime = get_runtime()
    failure = await runtime.auth.revoke_session(principal, session_id, ctx)
    if failure is not None:
        raise _failure_error(failure)
    if session_id == principal.session_id:
        _clear_session_cookie(response, runtime.settings)
    return Envelope(status="ok", data={"revoked": True, "session_id": session_id})


@router.post("/auth/sessions/revoke-others", response_model=Envelope, tags=["auth"])
async def revoke_other_sessions(
    principal: AuthContext = Depends(get_user),
    ctx: RequestContext = Depends(_request_context),
):
    runtime = get_runtime()
    count = await runtime.auth.revoke_all_other_sessions(principal, ctx)
    return Envelope(status="ok", data=RevokedCountResponse(revoked=count))


# companies


@router.get("/auth/companies", response_model=Envelope, tags=["companies"])
async def list_companies(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    companies = await runtime.auth.list_companies(principal)
    can_switch = await runtime.auth.can_switch_companies(principal)
    return Envelope(
        status="ok",
        data=CompanyListResponse(
            companies=[_company_response(c) for c in companies],
            active_company_id=principal.active_company_id,
            can_switch_companies=can_switch,
        ),
    )


@router.post("/auth/companies/switch", response_model=Envelope, tags=["companies"])
async def switch_company(
    body: CompanySwitchRequest,
    principal: AuthContext = Depends(get_user),
    ctx: RequestContext = Depends(_request_context),
):
    runtime = get_runtime()
    result = await runtime.auth.switch_active_company(principal, body.company_id, ctx)
    if isinstance(result, Failure):
        raise _failure_error(result)
    return Envelope(status="ok", data={"active_company": _company_response(result)})


# MFA management


@router.get("/auth/mfa/status", response_model=Envelope, tags=["mfa"])
async def get_mfa_status(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    status = await runtime.auth.mfa_status(principal)
    return Envelope(status="ok", data=_mfa_status_response(status))


@router.post("/auth/mfa/enable", response_model=Envelope, tags=["mfa"])
async def enable_mfa(
    principal: AuthContext = Depends(get_user),
    ctx: RequestContext = Depends(_request_context),
):
    """Turn on MFA; the recovery codes in the response are shown exactly once."""
    runtime = get_runtime()
    codes = await runtime.auth.enable_mfa(principal, ctx)
    if isinstance(codes, Failure):
        raise _failure_error(codes)
    return Envelope(status="ok", data=RecoveryCodesResponse(recovery_codes=codes))


@router.post("/auth/mfa/disable", response_model=Envelope, tags=["mfa"])
async def disable_mfa(
    principal: AuthContext = Depends(get_user),
    ctx: RequestContext = Depends(_request_context),
):
    runtime = get_runtime()
    failure = await runtime.auth.disable_mfa(principal, ctx)
    if failure is not None:
        raise _failure_error(failure)
    return Envelope(status="ok", data={"enabled": False})


@router.post("/auth/mfa/recovery-codes", response_model=Envelope, tags=["mfa"])
async def regenerate_recovery_codes(
    principal: AuthContext = Depends(get_user),
    ctx: RequestContext = Depends(_request_context),
):
    runtime = get_runtime()
    codes = await runtime.auth.regenerate_recovery_codes(principal, ctx)
    if isinstance(codes, Failure):
        raise _failure_error(codes)
    return Envelope(status="ok", data=RecoveryCodesResponse(recovery_codes=codes))


# trusted devices and activity


@router.get("/auth/trusted-devices", response_model=Envelope, tags=["devices"])
async def list_trusted_devices(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    devices = await runtime.auth.list_trusted_devices(principal)
    return Envelope(
        status="ok",
        data={
            "devices": [
                TrustedDeviceResponse(
                    id=d.id,
                    device_name=d.device_name,
                    created_at=d.created_at,
                    expires_at=d.expires_at,
                    last_seen_at=d.last_seen_at,
                    last_ip_addr=d.last_ip_addr,
                )
                for d in devices
            ]
        },
    )


@router.delete("/auth/trusted-devices/{device_id}", response_model=Envelope, tags=["devices"])
async def remove_trusted_device(
    device_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    if not await runtime.auth.remove_trusted_device(principal, device_id):
        raise _http_error("not_found", "trusted device not found", status_code=404)
    return Envelope(status="ok", data={"removed": True, "device_id": device_id})


@router.get("/auth/activity", response_model=Envelope, tags=["auth"])
async def list_activity(
    limit: int = Query(50, ge=1, le=200),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    events = await runtime.auth.activity(principal, limit=limit)
    return Envelope(
        status="ok",
        data={
            "events": [
                LoginEventResponse(
                    id=e.id,
                    event_type=e.event_type.value,
                    created_at=e.created_at,
                    ip_addr=e.ip_addr,
                    user_agent=e.user_agent,
                    source=e.source,
                    meta=e.meta,
                )
                for e in events
            ]
        },
    )
