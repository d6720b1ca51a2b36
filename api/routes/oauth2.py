"""
api/routes/oauth2.py -- OAuth 2.0 / OIDC protocol endpoints.

Routes:
  GET  /oauth2/authorize  -- 302 to redirect_uri with code/state, or JSON error
  POST /oauth2/token      -- form-encoded token endpoint (rate-limited)
  GET  /oauth2/userinfo   -- Bearer token -> OIDC claims

Errors use the RFC 6749 vocabulary ({"error", "error_description"}) rendered
by authlib, never the first-party ErrorResponse envelope.

An unauthenticated browser at /authorize is sent to LOGIN_URL with the full
authorize URL as ?redirect=, and comes back here after signing in.
"""

from __future__ import annotations

from authlib.common.urls import add_params_to_uri
from authlib.oauth2.base import OAuth2Error
from fastapi import APIRouter, Form, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import limiter, token_limit
from auth.dependencies import bearer_token, client_ip, try_get_current_user, user_agent
from core.config import get_settings
from federation.oauth2 import OAuth2Provider, parse_basic_auth

router = APIRouter()


def oauth2_error_response(exc: OAuth2Error) -> JSONResponse:
    status, body, headers = exc()
    resp = JSONResponse(status_code=status, content=body)
    for name, value in headers:
        if name.lower() != "content-type":
            resp.headers[name] = value
    resp.headers["Cache-Control"] = "no-store"
    return resp


def login_redirect(request: Request) -> RedirectResponse:
    target = request.url.path
    if request.url.query:
        target = f"{target}?{request.url.query}"
    return RedirectResponse(add_params_to_uri(get_settings().login_url, [("redirect", target)]), status_code=302)


@router.get("/oauth2/authorize")
def authorize(
    request: Request,
    response_type: str = "",
    client_id: str = "",
    redirect_uri: str = "",
    scope: str = "",
    state: str | None = None,
):
    provider: OAuth2Provider = request.app.state.oauth2_provider
    try:
        client = provider.validate_authorization_request(response_type, client_id, redirect_uri)
    except OAuth2Error as exc:
        return oauth2_error_response(exc)

    user = try_get_current_user(request)
    if user is None:
        return login_redirect(request)

    try:
        location = provider.create_authorization_code(client, user, redirect_uri, scope=scope, state=state)
    except OAuth2Error as exc:
        return oauth2_error_response(exc)
    return RedirectResponse(location, status_code=302)


@limiter.limit(token_limit)
@router.post("/oauth2/token")
def token(
    request: Request,
    grant_type: str = Form(""),
    code: str = Form(""),
    redirect_uri: str = Form(""),
    client_id: str = Form(""),
    client_secret: str = Form(""),
    username: str = Form(""),
    password: str = Form(""),
    refresh_token: str = Form(""),
    scope: str = Form(""),
) -> JSONResponse:
    """RFC 6749 token endpoint. Client auth: client_secret_basic or client_secret_post."""
    params = {
        "grant_type": grant_type,
        "code": code,
        "redirect_uri": redirect_uri,
        "client_id": client_id,
        "client_secret": client_secret,
        "username": username,
        "password": password,
        "refresh_token": refresh_token,
        "scope": scope,
    }
    provider: OAuth2Provider = request.app.state.oauth2_provider
    try:
        body = provider.exchange(
            params,
            basic_auth=parse_basic_auth(request.headers.get("Authorization", "")),
            ip=client_ip(request),
            user_agent=user_agent(request),
        )
    except OAuth2Error as exc:
        return oauth2_error_response(exc)
    resp = JSONResponse(content=body)
    resp.headers["Cache-Control"] = "no-store"
    resp.headers["Pragma"] = "no-cache"
    return resp


@router.get("/oauth2/userinfo")
def userinfo(request: Request) -> JSONResponse:
    provider: OAuth2Provider = request.app.state.oauth2_provider
    try:
        claims = provider.userinfo(bearer_token(request) or "")
    except OAuth2Error as exc:
        resp = oauth2_error_response(exc)
        resp.headers["WWW-Authenticate"] = f'Bearer error="{exc.error}"'
        return resp
    return JSONResponse(content=claims)
