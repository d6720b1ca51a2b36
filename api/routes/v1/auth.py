"""
api/routes/v1/auth.py -- First-party authentication endpoints.

Routes:
  POST /api/v1/auth/login            -- password (+ MFA) login; sets JWT cookie
  POST /api/v1/auth/refresh          -- new access token from a refresh token
  POST /api/v1/auth/logout           -- revoke all sessions; clears cookie (requires auth)
  GET  /api/v1/auth/me               -- current user info (requires auth)
  POST /api/v1/auth/register         -- self-service sign-up (SELF_REGISTRATION_ENABLED)
  POST /api/v1/auth/forgot-password  -- queue a reset link; always 202
  POST /api/v1/auth/reset-password   -- redeem a reset token

Security:
  [H2] login, register and forgot-password are rate-limited per IP.
  [C1] LoginPipeline uses authenticate_user() for timing equalization.
  [M5] Cache-Control: no-store on every response that carries a token.
  forgot-password answers 202 whether or not the address exists.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_limit
from api.models import (
    ErrorDetail,
    ErrorResponse,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    ResetPasswordRequest,
    UserResponse,
)
from auth.dependencies import client_ip, get_current_user, user_agent
from auth.models import User
from auth.pipeline import LoginPipeline
from auth.tokens import clear_auth_cookie, set_auth_cookie
from core.config import get_settings
from core.errors import IdentityError

# Auth policy:
# - POST /auth/login, /auth/refresh, /auth/register,
#        /auth/forgot-password, /auth/reset-password:   public
# - POST /auth/logout, GET /auth/me:                     requires auth (get_current_user)
router = APIRouter()


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def identity_error_response(exc: IdentityError) -> JSONResponse:
    return _no_store(
        JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
        )
    )


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Run the login decision pipeline and set the JWT cookie on success.

    MFA-required responses are 401 with code "mfa_required"; the client
    resubmits the same body with mfa_code.
    """
    pipeline: LoginPipeline = request.app.state.login_pipeline
    try:
        result = pipeline.login(
            body.username,
            body.password,
            mfa_code=body.mfa_code,
            ip=client_ip(request),
            user_agent=user_agent(request),
            app_id=body.app_id,
        )
    except IdentityError as exc:
        return identity_error_response(exc)

    tokens = result.tokens
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            expires_in=tokens.expires_in,
            mfa_required=result.mfa_required,
            password_change_required=result.password_change_required,
            user=UserResponse.from_user(result.user),
        ).model_dump(),
    )
    set_auth_cookie(resp, tokens.access_token, tokens.expires_in)
    return _no_store(resp)


@router.post("/auth/refresh", response_model=RefreshResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Mint a new access token. Risk and policy are not re-evaluated."""
    pipeline: LoginPipeline = request.app.state.login_pipeline
    try:
        refreshed = pipeline.refresh(body.refresh_token)
    except IdentityError as exc:
        return identity_error_response(exc)
    resp = JSONResponse(
        content=RefreshResponse(
            access_token=refreshed.access_token,
            token_type=refreshed.token_type,
            expires_in=refreshed.expires_in,
        ).model_dump()
    )
    set_auth_cookie(resp, refreshed.access_token, refreshed.expires_in)
    return _no_store(resp)


@limiter.limit(login_limit)  # [H2]
@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> UserResponse:
    if not get_settings().self_registration_enabled:
        raise HTTPException(
            status_code=403,
            detail={"code": "registration_disabled", "message": "Self-registration is disabled."},
        )
    pipeline: LoginPipeline = request.app.state.login_pipeline
    user = pipeline.register(body.username, body.email, body.password, display_name=body.display_name)
    return UserResponse.from_user(user)


@limiter.limit(login_limit)  # [H2]
@router.post("/auth/forgot-password", response_model=MessageResponse, status_code=202)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    request.app.state.login_pipeline.forgot_password(body.email)
    return MessageResponse(message="If the address is registered, a reset link has been sent.")


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    request.app.state.login_pipeline.reset_password(body.token, body.new_password)
    return MessageResponse(message="Password updated. Please sign in again.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    body: LogoutRequest | None = None,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    """Revoke every session of the caller and clear the cookie."""
    pipeline: LoginPipeline = request.app.state.login_pipeline
    pipeline.logout(current_user, refresh_token=body.refresh_token if body else None)
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_auth_cookie(resp)
    return resp


@router.get("/auth/me", response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return identity information for the currently authenticated user."""
    return UserResponse.from_user(current_user)
