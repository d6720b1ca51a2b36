"""
api/routes/cas.py -- CAS protocol endpoints.

Routes:
  GET /cas/login?service=                  -- issue a service ticket and redirect
  GET /cas/validate?ticket=&service=       -- CAS 1.0 plaintext
  GET /cas/serviceValidate?ticket=&service= -- CAS 2.0 XML
  GET /cas/logout                          -- revoke sessions, clear cookie

validate returns exactly "yes\\n<username>\\n" or "no\\n" (text/plain), with
no envelope, whatever went wrong.

logout never redirects. CAS services are not registered with a URL, so a
?service= target could be anything; it is ignored and the answer is JSON.
"""

from __future__ import annotations

from authlib.common.urls import add_params_to_uri
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response

from auth.dependencies import try_get_current_user
from auth.tokens import clear_auth_cookie
from core.config import get_settings
from federation.cas import CASServer

router = APIRouter()


@router.get("/cas/login")
def cas_login(request: Request, service: str = ""):
    cas: CASServer = request.app.state.cas_server
    user = try_get_current_user(request)
    if user is None:
        target = add_params_to_uri("/cas/login", [("service", service)]) if service else "/cas/login"
        return RedirectResponse(add_params_to_uri(get_settings().login_url, [("redirect", target)]), status_code=302)
    issued = cas.issue_ticket(user, service)
    if not service:
        return JSONResponse(content={"ticket": issued.ticket})
    return RedirectResponse(issued.redirect_url, status_code=302)


@router.get("/cas/validate")
def cas_validate(request: Request, ticket: str = "", service: str = "") -> PlainTextResponse:
    cas: CASServer = request.app.state.cas_server
    return PlainTextResponse(cas.validate_v1(ticket, service))


@router.get("/cas/serviceValidate")
def cas_service_validate(request: Request, ticket: str = "", service: str = "") -> Response:
    cas: CASServer = request.app.state.cas_server
    return Response(content=cas.validate_v2(ticket, service), media_type="application/xml")


@router.get("/cas/logout")
def cas_logout(request: Request) -> JSONResponse:
    user = try_get_current_user(request)
    if user is not None:
        request.app.state.session_issuer.revoke_all(user.id)
    resp = JSONResponse(content={"message": "Logged out."})
    clear_auth_cookie(resp)
    return resp
