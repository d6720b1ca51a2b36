"""
api/routes/saml.py -- SAML 2.0 IdP endpoints.

Routes:
  GET|POST /saml/sso?app_id=       -- SP- or IdP-initiated SSO; POST-binding Response
  GET      /saml/metadata?app_id=  -- EntityDescriptor XML
  GET|POST /saml/slo?app_id=       -- single logout (SP- or IdP-initiated)

Errors inside the protocol go back to the SP as a Response/LogoutResponse
with a non-Success StatusCode. Only "no such SAML app" (404) and broken
signing material (500) are plain HTTP errors.

An unauthenticated browser is sent to LOGIN_URL. A POSTed AuthnRequest is
carried over as query parameters, so the return trip is a plain GET.
"""

from __future__ import annotations

import base64
import logging
from typing import Optional

from authlib.common.urls import add_params_to_uri
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from auth.dependencies import try_get_current_user
from auth.tokens import clear_auth_cookie
from core.config import get_settings
from federation.models import SAMLConfig
from federation.saml import (
    STATUS_REQUESTER,
    SAMLConfigurationError,
    SAMLIdentityProvider,
    SAMLRequestError,
    parse_logout_request,
    post_form,
)

logger = logging.getLogger("gatekeeper.saml")

router = APIRouter()


def _config(idp: SAMLIdentityProvider, app_id: int) -> SAMLConfig:
    config = idp.get_config(app_id)
    if config is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "SAML application not found."})
    return config


async def _saml_params(request: Request) -> tuple[str, str, str]:
    """Return (SAMLRequest, SAMLResponse, RelayState) from the query or form body."""
    values = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        values.update({k: str(v) for k, v in form.items()})
    return values.get("SAMLRequest", ""), values.get("SAMLResponse", ""), values.get("RelayState", "")


def _configuration_error(exc: SAMLConfigurationError) -> JSONResponse:
    logger.error("SAML configuration error: %s", exc)
    return JSONResponse(
        status_code=500,
        content={"error": {"code": "saml_configuration_error", "message": "SAML signing is misconfigured."}},
    )


@router.api_route("/saml/sso", methods=["GET", "POST"])
async def sso(request: Request, app_id: int):
    idp: SAMLIdentityProvider = request.app.state.saml_provider
    config = _config(idp, app_id)
    saml_request, _, relay_state = await _saml_params(request)

    try:
        authn = idp.read_authn_request(config, saml_request) if saml_request else None
    except SAMLRequestError as exc:
        logger.warning("Rejected AuthnRequest for app %s: %s", app_id, exc)
        payload = idp.error_response(config, STATUS_REQUESTER, str(exc))
        return HTMLResponse(post_form(config.acs_url, "SAMLResponse", payload, relay_state))

    user = try_get_current_user(request)
    if user is None:
        params = [("app_id", str(app_id))]
        if saml_request:
            params.append(("SAMLRequest", saml_request))
        if relay_state:
            params.append(("RelayState", relay_state))
        target = add_params_to_uri("/saml/sso", params)
        return RedirectResponse(add_params_to_uri(get_settings().login_url, [("redirect", target)]), status_code=302)

    try:
        payload = idp.sso_response(config, user, authn)
    except SAMLConfigurationError as exc:
        return _configuration_error(exc)
    return HTMLResponse(post_form(config.acs_url, "SAMLResponse", payload, relay_state))


@router.get("/saml/metadata")
def metadata(request: Request, app_id: int) -> Response:
    idp: SAMLIdentityProvider = request.app.state.saml_provider
    config = _config(idp, app_id)
    try:
        xml = idp.metadata(config)
    except SAMLConfigurationError as exc:
        return _configuration_error(exc)
    return Response(content=xml, media_type="application/samlmetadata+xml")


@router.api_route("/saml/slo", methods=["GET", "POST"])
async def slo(request: Request, app_id: int):
    idp: SAMLIdentityProvider = request.app.state.saml_provider
    config = _config(idp, app_id)
    saml_request, _, relay_state = await _saml_params(request)

    if not saml_request:
        # IdP-initiated: end the local session
        user = try_get_current_user(request)
        if user is not None:
            request.app.state.session_issuer.revoke_all(user.id)
        resp = _after_logout(config, relay_state)
        clear_auth_cookie(resp)
        return resp

    in_response_to: Optional[str] = None
    try:
        logout_request = parse_logout_request(saml_request)
        in_response_to = logout_request.id
        response_xml = idp.logout(config, logout_request)
    except SAMLRequestError as exc:
        logger.warning("Rejected LogoutRequest for app %s: %s", app_id, exc)
        response_xml = idp.logout_response(config, STATUS_REQUESTER, in_response_to)

    if not config.slo_url:
        return JSONResponse(content={"message": "Logged out."})
    if request.method == "GET":
        return RedirectResponse(idp.logout_redirect(config, response_xml, relay_state), status_code=302)
    encoded = base64.b64encode(response_xml.encode("utf-8")).decode("ascii")
    return HTMLResponse(post_form(config.slo_url, "SAMLResponse", encoded, relay_state))


def _after_logout(config: SAMLConfig, relay_state: str) -> Response:
    if relay_state.startswith(("http://", "https://")) and config.slo_url and relay_state.startswith(config.slo_url):
        return RedirectResponse(relay_state, status_code=302)
    return JSONResponse(content={"message": "Logged out."})
