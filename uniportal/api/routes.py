from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from uniportal.api.schemas import (
    AccountSummary,
    Envelope,
    LoginRequest,
    MfaSettingRequest,
    MfaSettingResponse,
    MfaVerifyRequest,
    SectionLanding,
)
from uniportal.config import Role, Settings
from uniportal.logging import bind_account
from uniportal.service.errors import (
    AuthenticationError,
    SessionExpiredError,
    ValidationError,
)
from uniportal.service.runtime import enforce_rate_limit, get_runtime
from uniportal.storage.models import Account

router = APIRouter()

OTP_CODE_LENGTH = 6


def _cookie_secure(request: Request, settings: Settings) -> bool:
    return settings.cookie_secure or request.url.scheme == "https"


def _set_cookie(
    response: Response,
    request: Request,
    settings: Settings,
    name: str,
    value: str,
    max_age: int,
) -> None:
    response.set_cookie(
        name,
        value,
        max_age=max_age,
        path="/",
        httponly=True,
        secure=_cookie_secure(request, settings),
        samesite="lax",
    )


def _clear_cookie(response: Response, request: Request, settings: Settings, name: str) -> None:
    _set_cookie(response, request, settings, name, "", 0)


def _set_session_cookie(
    response: Response, request: Request, settings: Settings, token: str
) -> None:
    _set_cookie(
        response,
        request,
        settings,
        settings.session_cookie_name,
        token,
        settings.session_ttl_hours * 3600,
    )


def _summary(account: Account) -> dict:
    return AccountSummary(**account.summary()).model_dump()


def get_session_token(request: Request) -> Optional[str]:
    return request.cookies.get(get_runtime().settings.session_cookie_name)


async def get_current_account(request: Request) -> Account:
    account = await get_runtime().auth.current_account(get_session_token(request))
    if not account:
        raise AuthenticationError("Not authenticated")
    bind_account(account.id, account.role)
    return account


def require_role(role: Role):
    async def _dependency(request: Request) -> Account:
        account = await get_runtime().auth.require_role(get_session_token(request), role.value)
        bind_account(account.id, account.role)
        return account

    return _dependency


@router.post("/api/auth/login", tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with username or email and password.

    Accounts with email MFA enabled receive a code and a pending-MFA cookie
    instead of a session.
    """
    if not body.username_or_email or not body.password:
        raise ValidationError("Username/email and password are required")
    runtime = get_runtime()
    settings = runtime.settings
    identifier = body.username_or_email.strip()
    await enforce_rate_limit(
        runtime,
        f"login:{identifier.lower()}",
        settings.login_rate_limit_per_minute,
    )
    outcome = await runtime.auth.login(identifier, body.password)
    if outcome.requires_mfa:
        _set_cookie(
            response,
            request,
            settings,
            settings.mfa_cookie_name,
            outcome.pending_token,
            settings.mfa_pending_ttl_minutes * 60,
        )
        return Envelope(success=True, requires_mfa=True, message=outcome.message).render()

    _set_session_cookie(response, request, settings, outcome.session_token)
    return Envelope(success=True, data=_summary(outcome.account)).render()


@router.post("/api/auth/mfa/resend", tags=["auth"])
async def resend_mfa_code(request: Request):
    runtime = get_runtime()
    pending_token = request.cookies.get(runtime.settings.mfa_cookie_name)
    claims = runtime.codec.parse_pending(pending_token)
    if not claims:
        raise SessionExpiredError()
    await enforce_rate_limit(
        runtime, f"mfa:{claims.subject_id}", runtime.settings.mfa_rate_limit_per_minute
    )
    message = await runtime.auth.resend_mfa_code(pending_token)
    return Envelope(success=True, message=message).render()


@router.post("/api/auth/mfa/verify", tags=["auth"])
async def verify_mfa(body: MfaVerifyRequest, request: Request, response: Response):
    """Exchange a pending-MFA cookie and a six character code for a session."""
    if not body.code or len(body.code) != OTP_CODE_LENGTH:
        raise ValidationError("Invalid verification code")
    runtime = get_runtime()
    settings = runtime.settings
    pending_token = request.cookies.get(settings.mfa_cookie_name)
    claims = runtime.codec.parse_pending(pending_token)
    if not claims:
        raise SessionExpiredError()
    await enforce_rate_limit(
        runtime, f"mfa:{claims.subject_id}", settings.mfa_rate_limit_per_minute
    )
    outcome = await runtime.auth.verify_mfa(pending_token, body.code)
    _clear_cookie(response, request, settings, settings.mfa_cookie_name)
    _set_session_cookie(response, request, settings, outcome.session_token)
    return Envelope(success=True, data=_summary(outcome.account)).render()


@router.post("/api/auth/logout", tags=["auth"])
async def logout(request: Request, response: Response):
    settings = get_runtime().settings
    _clear_cookie(response, request, settings, settings.session_cookie_name)
    _clear_cookie(response, request, settings, settings.mfa_cookie_name)
    return Envelope(success=True).render()


@router.get("/api/auth/me", tags=["auth"])
async def me(account: Account = Depends(get_current_account)):
    data = _summary(account)
    data["mfaEmailEnabled"] = account.mfa_email_enabled
    return Envelope(success=True, data=data).render()


@router.put("/api/auth/mfa", tags=["auth"])
async def update_mfa_setting(
    body: MfaSettingRequest, account: Account = Depends(get_current_account)
):
    updated = await get_runtime().auth.set_mfa_enabled(account, body.enabled)
    data = MfaSettingResponse(mfa_email_enabled=updated.mfa_email_enabled)
    return Envelope(success=True, data=data.model_dump(by_alias=True)).render()


def _landing(section: Role, account: Account) -> dict:
    data = SectionLanding(section=section.value, user=AccountSummary(**account.summary()))
    return Envelope(success=True, data=data.model_dump()).render()


@router.get("/admin", tags=["sections"])
async def admin_home(account: Account = Depends(require_role(Role.ADMIN))):
    return _landing(Role.ADMIN, account)


@router.get("/instructor", tags=["sections"])
async def instructor_home(account: Account = Depends(require_role(Role.INSTRUCTOR))):
    return _landing(Role.INSTRUCTOR, account)


@router.get("/student", tags=["sections"])
async def student_home(account: Account = Depends(require_role(Role.STUDENT))):
    return _landing(Role.STUDENT, account)
