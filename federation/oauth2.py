"""
federation/oauth2.py -- OAuth 2.0 authorization server (RFC 6749) with an
OIDC-style userinfo endpoint.

Grants: authorization_code, client_credentials, password, refresh_token.

Artifacts (all in the ephemeral store):
  oauth2:code:{c}     {client_id, user_id, redirect_uri, scope}  10 min, get_and_delete
  oauth2:token:{t}    {client_id, user_id, scope}                 1 h,   get
  oauth2:refresh:{t}  {client_id, user_id, scope}                 7 d,   get

Every issued pair is also persisted as an OAuthToken row holding HMACs of
both tokens, so userinfo keeps working for an unexpired token if the
ephemeral entry is gone (e.g. after a memory-store restart). The same
fallback covers an unreachable store; the token endpoint answers
temporarily_unavailable (503) instead.

Errors are authlib's RFC 6749 error classes. The route layer renders them
with exc() -> (status, body, headers), so the wire format is authlib's
{"error", "error_description"} JSON with Cache-Control: no-store.

Security:
  - redirect_uri must match a registered URI exactly (no prefix matching).
  - A code is redeemed with get_and_delete before anything else is checked,
    so a code presented with the wrong client is burned, not retried.
  - Client secrets are compared as HMACs in constant time.
  - The password grant runs the same timing-equalized check as the login
    pipeline and feeds the same failed-login counters.

Layer rule: imports core/, ephemeral/, auth/ and federation/ only.
"""

from __future__ import annotations

import base64
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import unquote

from authlib.common.security import generate_token
from authlib.common.urls import add_params_to_uri
from authlib.oauth2.base import OAuth2Error
from authlib.oauth2.rfc6749.errors import (
    InvalidClientError,
    InvalidGrantError,
    InvalidRequestError,
    UnauthorizedClientError,
)

from auth.models import LoginAttempt, User
from auth.risk import RiskEngine
from auth.store import UserStore
from auth.tokens import authenticate_user, hash_token, verify_token_hash
from core.config import Settings, get_settings
from core.errors import StoreUnavailable
from ephemeral.store import EphemeralStore
from federation.models import OAuthClient, OAuthToken
from federation.store import FederationStore

logger = logging.getLogger("gatekeeper.oauth2")

CODE_PREFIX = "oauth2:code:"
TOKEN_PREFIX = "oauth2:token:"
REFRESH_PREFIX = "oauth2:refresh:"

SUPPORTED_GRANTS = ("authorization_code", "client_credentials", "password", "refresh_token")


def invalid_token(description: str = "The access token is invalid or has expired") -> OAuth2Error:
    return OAuth2Error(description=description, status_code=401, error="invalid_token")


def temporarily_unavailable() -> OAuth2Error:
    return OAuth2Error(
        description="The authorization server is temporarily unavailable",
        status_code=503,
        error="temporarily_unavailable",
    )


def parse_basic_auth(header: str) -> Optional[tuple[str, str]]:
    """Decode `Authorization: Basic ...` into (client_id, client_secret).

    RFC 6749 2.3.1: both parts are form-urlencoded before base64.
    Returns None for anything that is not well-formed Basic auth.
    """
    if not header or not header.lower().startswith("basic "):
        return None
    try:
        decoded = base64.b64decode(header[6:].strip(), validate=True).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return None
    client_id, sep, secret = decoded.partition(":")
    if not sep:
        return None
    return unquote(client_id), unquote(secret)


class OAuth2Provider:
    def __init__(
        self,
        federation: FederationStore,
        users: UserStore,
        store: EphemeralStore,
        risk: RiskEngine,
        settings: Optional[Settings] = None,
    ) -> None:
        self._federation = federation
        self._users = users
        self._store = store
        self._risk = risk
        self._settings = settings or get_settings()

    # ------------------------------------------------------------------
    # /oauth2/authorize
    # ------------------------------------------------------------------

    def validate_authorization_request(self, response_type: str, client_id: str, redirect_uri: str) -> OAuthClient:
        """Check an authorization request before anything is shown to the user.

        Order: response_type, client, redirect_uri, grant allow-list.
        """
        if response_type != "code":
            raise OAuth2Error(
                description="Only response_type=code is supported",
                error="unsupported_response_type",
            )
        client = self._federation.get_oauth_client(client_id) if client_id else None
        if client is None:
            raise InvalidClientError(description="Unknown client_id")
        if redirect_uri not in client.redirect_uris:
            raise InvalidRequestError(description="redirect_uri is not registered for this client")
        if not client.allows_grant("authorization_code"):
            raise UnauthorizedClientError(description="Client may not use the authorization_code grant")
        return client

    def create_authorization_code(
        self,
        client: OAuthClient,
        user: User,
        redirect_uri: str,
        scope: str = "",
        state: Optional[str] = None,
    ) -> str:
        """Store a fresh code and return the redirect location carrying it."""
        code = generate_token(48)
        try:
            self._store.put(
                CODE_PREFIX + code,
                {"client_id": client.client_id, "user_id": user.id, "redirect_uri": redirect_uri, "scope": scope},
                ttl=self._settings.oauth2_code_ttl_seconds,
            )
        except StoreUnavailable:
            logger.error("Ephemeral store unavailable -- no authorization code for client %r", client.client_id)
            raise temporarily_unavailable()
        params = [("code", code)]
        if state:
            params.append(("state", state))
        return add_params_to_uri(redirect_uri, params)

    # ------------------------------------------------------------------
    # /oauth2/token
    # ------------------------------------------------------------------

    def authenticate_client(self, client_id: str, client_secret: str) -> OAuthClient:
        client = self._federation.get_oauth_client(client_id) if client_id else None
        if client is None or not client_secret or not verify_token_hash(client_secret, client.client_secret_hash):
            raise InvalidClientError(description="Client authentication failed", status_code=401)
        return client

    def exchange(
        self,
        params: dict,
        basic_auth: Optional[tuple[str, str]] = None,
        ip: str = "",
        user_agent: str = "",
    ) -> dict:
        """Run the token endpoint for one request. Returns the JSON body.

        An unreachable ephemeral store surfaces as temporarily_unavailable (503).
        """
        grant_type = params.get("grant_type") or ""
        if grant_type not in SUPPORTED_GRANTS:
            raise OAuth2Error(
                description=f"grant_type={grant_type} is not supported",
                error="unsupported_grant_type",
            )

        client_id, client_secret = basic_auth or (params.get("client_id", ""), params.get("client_secret", ""))
        client: Optional[OAuthClient] = None
        if grant_type != "password" or client_id:
            client = self.authenticate_client(client_id, client_secret)
            if not client.allows_grant(grant_type):
                raise UnauthorizedClientError(description=f"Client may not use the {grant_type} grant")

        try:
            if grant_type == "authorization_code":
                return self._authorization_code(client, params)
            if grant_type == "client_credentials":
                return self._issue(client.client_id, None, params.get("scope", ""), with_refresh=False)
            if grant_type == "password":
                return self._password(client, params, ip, user_agent)
            return self._refresh(client, params)
        except StoreUnavailable:
            logger.error("Ephemeral store unavailable -- %s grant refused", grant_type)
            raise temporarily_unavailable()

    def _authorization_code(self, client: OAuthClient, params: dict) -> dict:
        code = params.get("code") or ""
        if not code:
            raise InvalidRequestError(description="Missing code")
        record = self._store.get_and_delete(CODE_PREFIX + code)
        if record is None:
            raise InvalidGrantError(description="Authorization code is invalid or expired")
        if record["client_id"] != client.client_id or record["redirect_uri"] != params.get("redirect_uri", ""):
            logger.warning("Authorization code presented with mismatched client or redirect_uri")
            raise InvalidGrantError(description="Authorization code was issued to another client or redirect_uri")
        user = self._users.get_by_id(int(record["user_id"]))
        if user is None or not user.is_active:
            raise InvalidGrantError(description="Resource owner is not active")
        return self._issue(client.client_id, user.id, record.get("scope", ""), with_refresh=True)

    def _password(self, client: Optional[OAuthClient], params: dict, ip: str, user_agent: str) -> dict:
        username = params.get("username") or ""
        password = params.get("password") or ""
        if not username or not password:
            raise InvalidRequestError(description="username and password are required")
        user = authenticate_user(self._users, username, password)
        if user is None:
            self._risk.record_failed_login(username, ip)
            self._users.record_login_attempt(
                LoginAttempt(
                    username=username,
                    ip_address=ip,
                    user_agent=user_agent,
                    success=False,
                    failure_reason="invalid_credentials",
                )
            )
            raise InvalidGrantError(description="Invalid username or password")
        return self._issue(client.client_id if client else "", user.id, params.get("scope", ""), with_refresh=True)

    def _refresh(self, client: OAuthClient, params: dict) -> dict:
        refresh_token = params.get("refresh_token") or ""
        record = self._store.get(REFRESH_PREFIX + refresh_token) if refresh_token else None
        if record is None:
            raise InvalidGrantError(description="Refresh token is invalid or expired")
        if record["client_id"] != client.client_id:
            raise InvalidGrantError(description="Refresh token was issued to another client")
        user_id = record.get("user_id")
        if user_id is not None:
            user = self._users.get_by_id(int(user_id))
            if user is None or not user.is_active:
                raise InvalidGrantError(description="Resource owner is not active")
        return self._issue(client.client_id, user_id, record.get("scope", ""), with_refresh=False)

    def _issue(self, client_id: str, user_id: Optional[int], scope: str, with_refresh: bool) -> dict:
        ttl = self._settings.oauth2_access_token_ttl_seconds
        record = {"client_id": client_id, "user_id": user_id, "scope": scope}
        access = generate_token(48)
        self._store.put(TOKEN_PREFIX + access, record, ttl=ttl)
        body = {"access_token": access, "token_type": "Bearer", "expires_in": ttl}
        refresh_hash = ""
        if with_refresh:
            refresh = generate_token(48)
            self._store.put(REFRESH_PREFIX + refresh, record, ttl=self._settings.oauth2_refresh_token_ttl_seconds)
            body["refresh_token"] = refresh
            refresh_hash = hash_token(refresh)
        if scope:
            body["scope"] = scope
        self._federation.record_oauth_token(
            OAuthToken(
                client_id=client_id,
                user_id=user_id,
                access_token_hash=hash_token(access),
                refresh_token_hash=refresh_hash,
                scope=scope,
                expires_at=datetime.now(timezone.utc) + timedelta(seconds=ttl),
            )
        )
        logger.info("Issued OAuth2 token to client %r for user %s", client_id, user_id)
        return body

    # ------------------------------------------------------------------
    # /oauth2/userinfo
    # ------------------------------------------------------------------

    def userinfo(self, access_token: str) -> dict:
        if not access_token:
            raise invalid_token("Missing access token")
        try:
            record = self._store.get(TOKEN_PREFIX + access_token)
        except StoreUnavailable:
            logger.warning("Ephemeral store unavailable -- userinfo falls back to the token table")
            record = None
        if record is not None:
            user_id = record.get("user_id")
        else:
            row = self._federation.get_oauth_token(hash_token(access_token))
            if row is None:
                raise invalid_token()
            user_id = row.user_id
        if user_id is None:
            raise invalid_token("Token is not associated with a user")
        user = self._users.get_by_id(int(user_id))
        if user is None or not user.is_active:
            raise invalid_token()
        return {
            "sub": str(user.id),
            "name": user.display_name or user.username,
            "preferred_username": user.username,
            "email": user.email,
            "email_verified": user.email_verified,
            "phone_number": user.phone,
            "phone_number_verified": user.phone_verified,
            "picture": user.avatar_url,
        }
