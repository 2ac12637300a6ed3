from __future__ import annotations

import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Request, Response
from fastapi.responses import RedirectResponse

from familyhub.api.schemas import (
    ActiveSessionResponse,
    EmailChangeRequest,
    EmailVerificationRequest,
    Envelope,
    ImpersonateRequest,
    LinkedAccountResponse,
    LinkedAccountsResponse,
    LocaleRequest,
    LoginAttemptResponse,
    LoginRequest,
    LoginResponse,
    MemberResponse,
    OAuthPendingResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    RecoveryCodesResponse,
    RegisterRequest,
    SelectProfileRequest,
    SessionResponse,
    SetPasswordRequest,
    TotpCodeRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    VerifyTwoFactorRequest,
    VerifyTwoFactorResponse,
)
from familyhub.logging import get_logger
from familyhub.service.errors import ConflictError, ForbiddenError, RateLimitedError
from familyhub.service.identity import OAuthIdentity, ResolutionAction
from familyhub.service.oauth import OAUTH_STATE_TTL_SECONDS, OAuthStateData
from familyhub.service.runtime import check_rate_limit, get_runtime, reset_rate_limit
from familyhub.service.session import SessionData, request_meta
from familyhub.storage.models import Member, MemberRole, OAuthProvider

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

OAUTH_PENDING_COOKIE = "oauth-pending"
LOCALE_COOKIE = "locale"
LOCALE_COOKIE_MAX_AGE = 60 * 60 * 24 * 365
OAUTH_FAILED_PATH = "/login?error=oauth_failed"


async def _enforce_rate_limit(
    runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    message: str = "rate limit exceeded",
) -> None:
    """Consume one token for ``key`` or raise 429 with a Retry-After hint."""
    allowed, _, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        logger.info("rate_limit_exceeded", bucket=key.split(":", 1)[0])
        raise RateLimitedError(message, retry_after=max(1, reset_seconds))


def _cookie_secure(runtime) -> bool:
    return runtime.settings.is_production


def _set_locale_cookie(runtime, response: Response, locale: str) -> None:
    response.set_cookie(
        LOCALE_COOKIE,
        locale,
        max_age=LOCALE_COOKIE_MAX_AGE,
        path="/",
        httponly=True,
        secure=_cookie_secure(runtime),
        samesite="lax",
    )


def _read_oauth_pending(runtime, request: Request) -> Optional[OAuthIdentity]:
    raw = request.cookies.get(OAUTH_PENDING_COOKIE)
    if not raw:
        return None
    result = runtime.codec.open(raw, OAuthIdentity)
    if not result.ok:
        logger.info("oauth_pending_rejected", reason=result.error)
        return None
    return result.payload


def _member_to_response(member: Member) -> MemberResponse:
    return MemberResponse(
        id=member.id,
        name=member.name,
        role=member.role.value,
        color=member.color,
        locale=member.locale,
        has_pin=bool(member.pin_hash),
    )


async def get_account_session(request: Request) -> SessionData:
    return get_runtime().sessions.require_account_session(request)


async def get_full_session(request: Request) -> SessionData:
    return get_runtime().sessions.require_full_session(request)


# -- registration, login and sessions -----------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a household and its admin member, then open an account session.

    A pending OAuth identity from the provider callback is linked to the new
    household and makes the password optional.
    """
    runtime = get_runtime()
    ip_address, _ = request_meta(request)
    await _enforce_rate_limit(
        runtime,
        f"register:{ip_address}",
        runtime.settings.register_rate_limit,
        runtime.settings.register_rate_window_seconds,
        message="Too many registration attempts. Please try again later.",
    )
    oauth_identity = _read_oauth_pending(runtime, request)
    user, member = runtime.account.register(
        email=body.email,
        password=body.password,
        family_name=body.family_name,
        admin_name=body.admin_name,
        admin_pin=body.admin_pin,
        locale=body.locale,
        color=body.color,
        oauth_identity=oauth_identity,
    )
    if oauth_identity is not None:
        response.delete_cookie(OAUTH_PENDING_COOKIE, path="/")
    runtime.sessions.set_account_session(request, response, user.id)
    _set_locale_cookie(runtime, response, user.default_locale)
    return Envelope(
        status="ok",
        data={
            "family_id": user.id,
            "member_id": member.id,
            "email_verified": user.email_verified,
        },
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Password login.

    With two-factor enabled no session is issued; the caller receives a
    short-lived ``two_factor_token`` to redeem at ``/auth/verify-2fa``.
    """
    runtime = get_runtime()
    settings = runtime.settings
    ip_address, user_agent = request_meta(request)
    await _enforce_rate_limit(
        runtime,
        f"login:ip:{ip_address}",
        settings.login_rate_limit,
        settings.login_rate_window_seconds,
        message="Too many login attempts. Please try again later.",
    )
    await _enforce_rate_limit(
        runtime,
        f"lockout:{body.email}",
        settings.lockout_threshold,
        settings.lockout_window_seconds,
        message="Account temporarily locked. Please try again later.",
    )
    result = await runtime.account.authenticate(
        body.email,
        body.password,
        remember_me=body.remember_me,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    await reset_rate_limit(runtime, f"login:ip:{ip_address}")
    await reset_rate_limit(runtime, f"lockout:{body.email}")
    if result.requires_two_factor:
        return Envelope(
            status="ok",
            data=LoginResponse(
                family_id=result.user.id,
                family_name=result.user.name,
                requires_two_factor=True,
                two_factor_token=result.pending_token,
            ),
        )
    runtime.sessions.set_account_session(
        request, response, result.user.id, remember_me=body.remember_me
    )
    return Envelope(
        status="ok",
        data=LoginResponse(family_id=result.user.id, family_name=result.user.name),
    )


@router.post("/auth/verify-2fa", response_model=Envelope, tags=["auth"])
async def verify_two_factor(
    body: VerifyTwoFactorRequest, request: Request, response: Response
):
    runtime = get_runtime()
    ip_address, _ = request_meta(request)
    totp_key = f"totp:ip:{ip_address}"
    await _enforce_rate_limit(
        runtime,
        totp_key,
        runtime.settings.totp_rate_limit,
        runtime.settings.totp_rate_window_seconds,
        message="Too many verification attempts. Please try again later.",
    )
    result = await runtime.account.verify_two_factor(
        body.token, code=body.code, recovery_code=body.recovery_code
    )
    await reset_rate_limit(runtime, totp_key)
    runtime.sessions.set_account_session(
        request, response, result.user.id, remember_me=result.remember_me
    )
    return Envelope(
        status="ok",
        data=VerifyTwoFactorResponse(
            family_id=result.user.id,
            family_name=result.user.name,
            used_recovery_code=result.used_recovery_code,
            remaining_codes=result.remaining_codes,
        ),
    )


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def get_session(request: Request):
    runtime = get_runtime()
    session = runtime.sessions.get_session(request)
    if not session:
        return Envelope(status="ok", data=SessionResponse(authenticated=False))
    user = runtime.store.get_user(session.family_id)
    return Envelope(
        status="ok",
        data=SessionResponse(
            authenticated=True,
            family_id=session.family_id,
            family_name=user.name if user else None,
            member_id=session.member_id,
            role=session.role.value if session.role else None,
            original_member_id=session.original_member_id,
            is_impersonating=session.is_impersonating,
        ),
    )


@router.get("/auth/members", response_model=Envelope, tags=["auth"])
async def list_members(session: SessionData = Depends(get_account_session)):
    runtime = get_runtime()
    members = runtime.account.list_members(session.family_id)
    return Envelope(
        status="ok", data={"items": [_member_to_response(m) for m in members]}
    )


@router.post("/auth/select-profile", response_model=Envelope, tags=["auth"])
async def select_profile(
    body: SelectProfileRequest,
    request: Request,
    response: Response,
    session: SessionData = Depends(get_account_session),
):
    """Upgrade an account session to a full session for one member."""
    runtime = get_runtime()
    member = runtime.account.get_family_member(session.family_id, body.member_id)
    if member.pin_hash:
        if not body.pin:
            runtime.account.check_member_pin(member, None)
        pin_key = f"pin:{session.family_id}:{member.id}"
        await _enforce_rate_limit(
            runtime,
            pin_key,
            runtime.settings.pin_rate_limit,
            runtime.settings.pin_rate_window_seconds,
            message="Too many PIN attempts. Please try again later.",
        )
        runtime.account.check_member_pin(member, body.pin)
        await reset_rate_limit(runtime, pin_key)
    promoted = runtime.sessions.promote_to_full_session(
        request, response, member.id, member.role
    )
    _set_locale_cookie(runtime, response, runtime.account.member_locale(member))
    return Envelope(
        status="ok",
        data=SessionResponse(
            authenticated=True,
            family_id=promoted.family_id,
            member_id=promoted.member_id,
            role=member.role.value,
        ),
    )


@router.post("/auth/switch-profile", response_model=Envelope, tags=["auth"])
async def switch_profile(
    request: Request,
    response: Response,
    session: SessionData = Depends(get_account_session),
):
    runtime = get_runtime()
    downgraded = runtime.sessions.downgrade_session(request, response)
    return Envelope(
        status="ok",
        data=SessionResponse(authenticated=True, family_id=downgraded.family_id),
    )


@router.post("/auth/impersonate", response_model=Envelope, tags=["auth"])
async def impersonate(
    body: ImpersonateRequest,
    request: Request,
    response: Response,
    session: SessionData = Depends(get_full_session),
):
    """Let an admin member act as another member of the same household."""
    runtime = get_runtime()
    acting_id = session.original_member_id or session.member_id
    acting = runtime.account.get_family_member(session.family_id, acting_id)
    if acting.role != MemberRole.ADMIN:
        raise ForbiddenError("admin member required")
    target = runtime.account.get_family_member(session.family_id, body.member_id)
    switched = runtime.sessions.switch_profile(request, response, target.id, target.role)
    return Envelope(
        status="ok",
        data=SessionResponse(
            authenticated=True,
            family_id=switched.family_id,
            member_id=switched.member_id,
            role=target.role.value,
            original_member_id=switched.original_member_id,
            is_impersonating=switched.is_impersonating,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    runtime.sessions.clear_session(request, response)
    return Envelope(status="ok", data={"message": "logged out"})


# -- OAuth ----------------------------------------------------------------------


def _app_redirect(runtime, path: str) -> RedirectResponse:
    return RedirectResponse(f"{runtime.settings.app_base_url.rstrip('/')}{path}", status_code=302)


def _safe_redirect_target(value: Optional[str]) -> Optional[str]:
    if value and value.startswith("/") and not value.startswith("//"):
        return value
    return None


@router.get("/auth/oauth/pending", response_model=Envelope, tags=["auth"])
async def oauth_pending(request: Request):
    """Identity waiting for the registration wizard; the cookie stays until registration."""
    runtime = get_runtime()
    identity = _read_oauth_pending(runtime, request)
    if identity is None:
        return Envelope(status="ok", data=None)
    return Envelope(
        status="ok",
        data=OAuthPendingResponse(
            provider=identity.provider,
            email=identity.email,
            email_verified=identity.email_verified,
            display_name=identity.display_name,
        ),
    )


@router.get("/auth/oauth/{provider}", tags=["auth"])
async def oauth_start(
    request: Request,
    provider: str = Path(..., description="OAuth provider (google or microsoft)"),
    action: Optional[str] = Query(None, max_length=16),
    redirect: Optional[str] = Query(None, max_length=512),
):
    runtime = get_runtime()
    try:
        oauth_provider = OAuthProvider(provider)
    except ValueError:
        return _app_redirect(runtime, OAUTH_FAILED_PATH)
    ip_address, _ = request_meta(request)
    allowed = await check_rate_limit(
        runtime,
        f"oauth:ip:{ip_address}",
        runtime.settings.oauth_rate_limit,
        runtime.settings.oauth_rate_window_seconds,
    )
    if not allowed:
        return _app_redirect(runtime, "/login?error=too_many_attempts")
    if not runtime.oauth.is_configured(oauth_provider):
        return _app_redirect(runtime, "/login?error=oauth_not_configured")

    state_data = OAuthStateData(nonce=secrets.token_hex(16))
    session = runtime.sessions.get_account_session(request)
    if session and action == "link":
        state_data.user_id = session.family_id
    state_data.redirect_to = _safe_redirect_target(redirect)
    state = runtime.codec.seal(state_data, OAUTH_STATE_TTL_SECONDS)
    return RedirectResponse(
        runtime.oauth.build_authorization_url(oauth_provider, state), status_code=302
    )


@router.get("/auth/oauth/{provider}/callback", tags=["auth"])
async def oauth_callback(
    request: Request,
    provider: str = Path(..., description="OAuth provider"),
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=4096),
    error: Optional[str] = Query(None, max_length=256),
):
    """Resolve the provider identity to login, link or registration.

    Every failure redirects to the login page with ``error=oauth_failed``.
    """
    runtime = get_runtime()
    try:
        oauth_provider = OAuthProvider(provider)
    except ValueError:
        return _app_redirect(runtime, OAUTH_FAILED_PATH)
    if error or not code or not state:
        logger.info(
            "oauth_callback_rejected",
            provider=oauth_provider.value,
            provider_error=error,
            missing_params=not code or not state,
        )
        return _app_redirect(runtime, OAUTH_FAILED_PATH)

    unsealed = runtime.codec.open(state, OAuthStateData)
    if not unsealed.ok or not unsealed.payload.nonce:
        logger.warning(
            "oauth_state_invalid", provider=oauth_provider.value, reason=unsealed.error
        )
        return _app_redirect(runtime, OAUTH_FAILED_PATH)
    state_data: OAuthStateData = unsealed.payload

    try:
        return await _complete_oauth_callback(
            runtime, request, oauth_provider, code, state_data
        )
    except Exception as exc:
        logger.error(
            "oauth_callback_failed",
            provider=oauth_provider.value,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _app_redirect(runtime, OAUTH_FAILED_PATH)


async def _complete_oauth_callback(
    runtime,
    request: Request,
    oauth_provider: OAuthProvider,
    code: str,
    state_data: OAuthStateData,
) -> RedirectResponse:
    identity = await runtime.oauth.exchange_code(oauth_provider, code)
    if identity is None or not identity.email or not identity.provider_account_id:
        return _app_redirect(runtime, OAUTH_FAILED_PATH)

    try:
        resolution = runtime.resolver.resolve(identity, link_to_user_id=state_data.user_id)
    except ConflictError:
        return _app_redirect(runtime, "/account?error=already_linked")

    if resolution.action in (ResolutionAction.LOGIN, ResolutionAction.LINK_AND_LOGIN):
        if state_data.user_id:
            return _app_redirect(runtime, f"/account?linked={oauth_provider.value}")
        redirect = _app_redirect(runtime, state_data.redirect_to or "/profiles")
        ip_address, user_agent = request_meta(request)
        runtime.account.record_oauth_login(
            resolution.user_id,
            identity.email,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        runtime.sessions.set_account_session(request, redirect, resolution.user_id)
        logger.info(
            "oauth_login",
            provider=oauth_provider.value,
            user_id=resolution.user_id,
            action=resolution.action.value,
        )
        return redirect

    redirect = _app_redirect(runtime, f"/register?oauth={oauth_provider.value}")
    redirect.set_cookie(
        OAUTH_PENDING_COOKIE,
        runtime.codec.seal(identity, OAUTH_STATE_TTL_SECONDS),
        max_age=OAUTH_STATE_TTL_SECONDS,
        path="/",
        httponly=True,
        secure=_cookie_secure(runtime),
        samesite="lax",
    )
    return redirect


# -- two-factor management -----------------------------------------------------


@router.get("/account/two-factor", response_model=Envelope, tags=["account"])
async def two_factor_status(session: SessionData = Depends(get_account_session)):
    runtime = get_runtime()
    status = runtime.account.two_factor_status(session.family_id)
    return Envelope(status="ok", data=TwoFactorStatusResponse(**status))


@router.post("/account/two-factor/setup", response_model=Envelope, tags=["account"])
async def two_factor_setup(session: SessionData = Depends(get_account_session)):
    runtime = get_runtime()
    setup = runtime.account.begin_two_factor_setup(session.family_id)
    return Envelope(status="ok", data=TwoFactorSetupResponse(**setup))


@router.post("/account/two-factor/confirm", response_model=Envelope, tags=["account"])
async def two_factor_confirm(
    body: TotpCodeRequest, session: SessionData = Depends(get_account_session)
):
    runtime = get_runtime()
    codes = runtime.account.confirm_two_factor_setup(session.family_id, body.code)
    return Envelope(status="ok", data=RecoveryCodesResponse(recovery_codes=codes))


@router.delete("/account/two-factor", response_model=Envelope, tags=["account"])
async def two_factor_disable(
    body: TotpCodeRequest, session: SessionData = Depends(get_account_session)
):
    runtime = get_runtime()
    runtime.account.disable_two_factor(session.family_id, body.code)
    return Envelope(status="ok", data={"enabled": False})


@router.post(
    "/account/two-factor/recovery-codes", response_model=Envelope, tags=["account"]
)
async def two_factor_regenerate_codes(
    body: TotpCodeRequest, session: SessionData = Depends(get_account_session)
):
    runtime = get_runtime()
    codes = runtime.account.regenerate_recovery_codes(session.family_id, body.code)
    return Envelope(status="ok", data=RecoveryCodesResponse(recovery_codes=codes))


# -- emailed-token flows -------------------------------------------------------


@router.post("/account/password/forgot", response_model=Envelope, tags=["account"])
async def request_password_reset(body: PasswordResetRequest):
    """Send a reset link; the response is the same whether or not the email exists."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"password-reset:{body.email}",
        runtime.settings.password_reset_rate_limit,
        runtime.settings.password_reset_rate_window_seconds,
        message="Too many reset requests. Please try again later.",
    )
    runtime.account.request_password_reset(body.email)
    return Envelope(status="ok", data={"message": "If the account exists, a reset email has been sent."})


@router.post("/account/password/change-request", response_model=Envelope, tags=["account"])
async def request_password_change(session: SessionData = Depends(get_account_session)):
    """Email a reset link to the household address."""
    runtime = get_runtime()
    user = runtime.store.get_user(session.family_id)
    await _enforce_rate_limit(
        runtime,
        f"password-reset:{user.email if user else session.family_id}",
        runtime.settings.password_reset_rate_limit,
        runtime.settings.password_reset_rate_window_seconds,
        message="Too many reset requests. Please try again later.",
    )
    runtime.account.request_password_change(session.family_id)
    return Envelope(status="ok", data={"message": "A reset email has been sent."})


@router.post("/account/password/reset", response_model=Envelope, tags=["account"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    runtime.account.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data={"message": "Password updated."})


@router.post("/account/email/verify", response_model=Envelope, tags=["account"])
async def verify_email(body: EmailVerificationRequest):
    runtime = get_runtime()
    user = runtime.account.verify_email(body.token)
    return Envelope(status="ok", data={"email": user.email, "email_verified": user.email_verified})


@router.post("/account/email/resend", response_model=Envelope, tags=["account"])
async def resend_verification(session: SessionData = Depends(get_account_session)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verification-resend:{session.family_id}",
        runtime.settings.verification_resend_rate_limit,
        runtime.settings.verification_resend_rate_window_seconds,
        message="Too many verification emails requested. Please try again later.",
    )
    runtime.account.resend_verification(session.family_id)
    return Envelope(status="ok", data={"message": "Verification email sent."})


@router.post("/account/email/change", response_model=Envelope, tags=["account"])
async def change_email(
    body: EmailChangeRequest, session: SessionData = Depends(get_account_session)
):
    runtime = get_runtime()
    runtime.account.request_email_change(session.family_id, body.new_email, body.password)
    return Envelope(
        status="ok", data={"message": "Check the new address to confirm the change."}
    )


# -- linked sign-in methods ----------------------------------------------------


@router.get("/account/linked-accounts", response_model=Envelope, tags=["account"])
async def linked_accounts(session: SessionData = Depends(get_account_session)):
    runtime = get_runtime()
    linked = runtime.account.linked_accounts(session.family_id)
    return Envelope(
        status="ok",
        data=LinkedAccountsResponse(
            accounts=[
                LinkedAccountResponse(
                    provider=a.provider,
                    email=a.email,
                    display_name=a.display_name,
                    created_at=a.created_at,
                )
                for a in linked["accounts"]
            ],
            has_password=linked["has_password"],
        ),
    )


@router.delete(
    "/account/linked-accounts/{provider}", response_model=Envelope, tags=["account"]
)
async def unlink_account(
    provider: OAuthProvider = Path(..., description="OAuth provider"),
    session: SessionData = Depends(get_account_session),
):
    runtime = get_runtime()
    runtime.account.unlink_account(session.family_id, provider)
    return Envelope(status="ok", data={"provider": provider.value, "linked": False})


@router.post("/account/password", response_model=Envelope, tags=["account"])
async def set_password(
    body: SetPasswordRequest, session: SessionData = Depends(get_account_session)
):
    runtime = get_runtime()
    runtime.account.set_password(
        session.family_id, body.new_password, current_password=body.current_password
    )
    return Envelope(status="ok", data={"has_password": True})


# -- sign-in activity ----------------------------------------------------------


@router.get("/account/sessions", response_model=Envelope, tags=["account"])
async def list_active_sessions(session: SessionData = Depends(get_account_session)):
    runtime = get_runtime()
    records = runtime.account.active_sessions(session.family_id)
    return Envelope(
        status="ok",
        data={
            "items": [
                ActiveSessionResponse(
                    id=r.id,
                    member_id=r.member_id,
                    ip_address=r.ip_address,
                    user_agent=r.user_agent,
                    created_at=r.created_at,
                    expires_at=r.expires_at,
                    current=r.session_token == session.session_token,
                )
                for r in records
            ]
        },
    )


@router.delete("/account/sessions/{session_id}", response_model=Envelope, tags=["account"])
async def invalidate_session(
    session_id: str = Path(..., max_length=64),
    session: SessionData = Depends(get_account_session),
):
    runtime = get_runtime()
    runtime.account.invalidate_session(session.family_id, session_id)
    return Envelope(status="ok", data={"id": session_id, "invalidated": True})


@router.get("/account/login-attempts", response_model=Envelope, tags=["account"])
async def list_login_attempts(
    limit: int = Query(20, ge=1, le=100),
    session: SessionData = Depends(get_account_session),
):
    runtime = get_runtime()
    attempts = runtime.account.login_attempts(session.family_id, limit)
    return Envelope(
        status="ok",
        data={
            "items": [
                LoginAttemptResponse(
                    id=a.id,
                    email=a.email,
                    success=a.success,
                    ip_address=a.ip_address,
                    user_agent=a.user_agent,
                    failure_reason=a.failure_reason,
                    created_at=a.created_at,
                )
                for a in attempts
            ]
        },
    )


@router.post("/locale", response_model=Envelope, tags=["account"])
async def set_locale(body: LocaleRequest, response: Response):
    runtime = get_runtime()
    _set_locale_cookie(runtime, response, body.locale)
    return Envelope(status="ok", data={"locale": body.locale})
