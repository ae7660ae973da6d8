from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import RedirectResponse

from gatehouse.api.deps import (
    apply_auth_cookies,
    clear_auth_cookies,
    enforce_rate_limit,
    require,
    require_feature,
)
from gatehouse.api.schemas import (
    EmailVerificationRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    RefreshTokenRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SocialAuthRequest,
    TwoFactorTokenRequest,
)
from gatehouse.logging import get_logger
from gatehouse.service.authorization import authenticated
from gatehouse.service.resolver import Principal
from gatehouse.service.runtime import get_runtime

logger = get_logger(__name__)

# Mounted under /{api_path} by the app factory.
router = APIRouter()


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Sign in with email and password, plus a TOTP ``token`` once 2FA is enabled.

    Unknown emails and wrong passwords fail with the same 401 body.
    """
    runtime = get_runtime()
    client_host = request.client.host if request.client else "unknown"
    await enforce_rate_limit(
        runtime,
        f"login:{client_host}:{(body.email or '').strip().lower()}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response,
    )
    result = await runtime.flows.login(body.email, body.password, body.token)
    apply_auth_cookies(response, result, runtime.config)
    return Envelope(status="ok", data=result.payload)


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, response: Response):
    runtime = get_runtime()
    result = await runtime.flows.register(body.model_dump())
    apply_auth_cookies(response, result, runtime.config)
    return Envelope(status="ok", data=result.payload)


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    """Destroy the cookie session. Reports ``success: false`` when there was none."""
    runtime = get_runtime()
    session_id = request.cookies.get(runtime.config.session_cookie_name)
    outcome = await runtime.flows.logout(session_id)
    clear_auth_cookies(response, runtime.config)
    return Envelope(status="ok", data=outcome)


@router.post("/passwords/email", response_model=Envelope, tags=["passwords"])
async def forgot_password(body: ForgotPasswordRequest):
    runtime = get_runtime()
    sent = await runtime.flows.forgot_password(body.email)
    return Envelope(status="ok", data={"success": sent})


@router.post("/passwords/reset", response_model=Envelope, tags=["passwords"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    changed = await runtime.flows.reset_password(body.token, body.password)
    return Envelope(status="ok", data={"success": changed})


@router.post("/two-factor/enable", response_model=Envelope, tags=["two-factor"])
async def enable_two_factor(principal: Principal = Depends(require(authenticated))):
    """Start enrollment and return the QR code as a PNG data URL.

    The secret stays pending until ``/two-factor/enable/confirm`` succeeds.
    """
    runtime = get_runtime()
    require_feature(runtime.config.two_factor_auth)
    enrollment = runtime.two_factor.enable(principal.user)
    return Envelope(status="ok", data={"data_url": enrollment["data_url"]})


@router.post("/two-factor/enable/confirm", response_model=Envelope, tags=["two-factor"])
async def confirm_two_factor(
    body: TwoFactorTokenRequest, principal: Principal = Depends(require(authenticated))
):
    runtime = get_runtime()
    require_feature(runtime.config.two_factor_auth)
    user = runtime.two_factor.confirm(principal.user, body.token)
    return Envelope(status="ok", data=runtime.flows.user_payload(user))


@router.post("/two-factor/disable", response_model=Envelope, tags=["two-factor"])
async def disable_two_factor(
    body: TwoFactorTokenRequest, principal: Principal = Depends(require(authenticated))
):
    runtime = get_runtime()
    require_feature(runtime.config.two_factor_auth)
    user = runtime.two_factor.disable(principal.user, body.token)
    return Envelope(status="ok", data=runtime.flows.user_payload(user))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: Principal = Depends(require(authenticated))):
    runtime = get_runtime()
    data = principal.user.to_public()
    if runtime.config.roles_and_permissions:
        data["roles"] = list(principal.roles)
        data["permissions"] = sorted(principal.permissions)
    return Envelope(status="ok", data={runtime.flows.user_key: data})


@router.post("/verification/confirm", response_model=Envelope, tags=["verification"])
async def confirm_email(
    body: EmailVerificationRequest, principal: Principal = Depends(require(authenticated))
):
    runtime = get_runtime()
    require_feature(runtime.config.verify_emails)
    user = await runtime.flows.confirm_email(principal.user, body.token)
    return Envelope(status="ok", data={runtime.flows.user_key: user})


@router.post("/verification/resend", response_model=Envelope, tags=["verification"])
async def resend_verification_email(principal: Principal = Depends(require(authenticated))):
    runtime = get_runtime()
    require_feature(runtime.config.verify_emails)
    sent = await runtime.flows.resend_verification_email(principal.user)
    return Envelope(status="ok", data={"success": sent})


@router.post("/social/login", response_model=Envelope, tags=["social"])
async def social_login(body: SocialAuthRequest, response: Response):
    runtime = get_runtime()
    require_feature(runtime.config.social_auth_enabled)
    result = await runtime.flows.social_auth(body.access_token, "login")
    apply_auth_cookies(response, result, runtime.config)
    return Envelope(status="ok", data=result.payload)


@router.post("/social/register", response_model=Envelope, status_code=201, tags=["social"])
async def social_register(body: SocialAuthRequest, response: Response):
    runtime = get_runtime()
    require_feature(runtime.config.social_auth_enabled)
    result = await runtime.flows.social_auth(body.access_token, "register")
    apply_auth_cookies(response, result, runtime.config)
    return Envelope(status="ok", data=result.payload)


@router.post("/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(
    request: Request,
    response: Response,
    body: Optional[RefreshTokenRequest] = None,
    principal: Principal = Depends(require(authenticated)),
):
    """Rotate the refresh token taken from the cookie, or from the body.

    Presenting an already-rotated token blocks its owner.
    """
    runtime = get_runtime()
    token_value = request.cookies.get(runtime.config.refresh_token_cookie_name) or (
        body.refresh_token if body else None
    )
    result = await runtime.flows.refresh(token_value)
    apply_auth_cookies(response, result, runtime.config)
    return Envelope(status="ok", data=result.payload)


@router.delete("/refresh-token", response_model=Envelope, tags=["auth"])
async def remove_refresh_token(
    response: Response, principal: Principal = Depends(require(authenticated))
):
    runtime = get_runtime()
    clear_auth_cookies(response, runtime.config, session=False)
    return Envelope(
        status="ok", data={"success": runtime.refresh_tokens.remove_refresh_tokens()}
    )


@router.get("/{provider}/redirect", tags=["social"])
async def social_redirect(provider: str):
    """Send the browser to the provider's consent page."""
    runtime = get_runtime()
    require_feature(runtime.config.social_auth_enabled)
    target = await runtime.social.authorization_url(provider)
    return RedirectResponse(target["authorization_url"], status_code=302)


@router.get("/{provider}/callback", tags=["social"])
async def social_callback(
    provider: str, code: Optional[str] = None, state: Optional[str] = None
):
    """Exchange the provider code and hand the temporal token to the client.

    The client then calls ``/social/login`` or ``/social/register`` with it.
    """
    runtime = get_runtime()
    require_feature(runtime.config.social_auth_enabled)
    identity = await runtime.social.handle_callback(provider, code, state)
    redirect_to = runtime.social.client_redirect_url(identity.temporal_token)
    if redirect_to:
        return RedirectResponse(redirect_to, status_code=302)
    return Envelope(
        status="ok",
        data={"access_token": identity.temporal_token, "provider": provider},
    )
