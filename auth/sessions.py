"""
auth/sessions.py -- Token and session issuance.

Shared by the login pipeline (first-party sessions) and the OAuth2 layer
(which reuses the refresh-token lookup semantics for its own records).

Three artifacts come out of a successful login:
  access token  -- stateless HS256 JWT (auth.tokens.create_access_token)
  refresh token -- opaque string; its only state is the ephemeral entry
                   refresh_token:{token} -> {"user_id": ...}
  session row   -- revocable shadow of the access token (HMAC of the JWT)

Revocation is eventual: logout deletes session rows but an already-issued
JWT stays cryptographically valid until it expires.

Layer rule: imports core/, ephemeral/ and auth/ only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from auth.models import Session, User
from auth.store import UserStore
from auth.tokens import create_access_token, generate_opaque_token, hash_token
from core.config import Settings, get_settings
from core.errors import AccountDisabled, InvalidArtifact
from ephemeral.store import EphemeralStore

logger = logging.getLogger("gatekeeper.sessions")

REFRESH_PREFIX = "refresh_token:"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    session_id: int
    token_type: str = "Bearer"


@dataclass(frozen=True)
class RefreshedToken:
    access_token: str
    expires_in: int
    user: User
    token_type: str = "Bearer"


class SessionIssuer:
    """Mints token pairs, persists sessions, and serves refresh lookups."""

    def __init__(self, users: UserStore, store: EphemeralStore, settings: Optional[Settings] = None) -> None:
        self._users = users
        self._store = store
        self._settings = settings or get_settings()

    def issue(self, user: User, ip: str, user_agent: str, session_minutes: int = 0) -> TokenPair:
        """Mint a token pair and persist the session row.

        session_minutes > 0 overrides the configured access token lifetime
        (set by a conditional access policy).
        """
        lifetime = session_minutes * 60 if session_minutes > 0 else self._settings.access_token_expire_seconds
        now = datetime.now(timezone.utc)
        access = create_access_token(user.id, user.username, user.roles, expire_seconds=lifetime, now=now)

        refresh = generate_opaque_token()
        self._store.put(
            REFRESH_PREFIX + refresh,
            {"user_id": user.id},
            ttl=self._settings.refresh_token_expire_seconds,
        )

        session_id = self._users.create_session(
            Session(
                user_id=user.id,
                ip_address=ip,
                user_agent=user_agent,
                token_hash=hash_token(access),
                expires_at=now + timedelta(seconds=lifetime),
                created_at=now,
            )
        )
        return TokenPair(access_token=access, refresh_token=refresh, expires_in=lifetime, session_id=session_id)

    def refresh(self, refresh_token: str) -> RefreshedToken:
        """Re-mint an access token from a refresh token.

        The lookup is non-destructive: a refresh token stays usable until its
        own TTL lapses. Risk and policy are not re-evaluated here.
        """
        record = self._store.get(REFRESH_PREFIX + refresh_token) if refresh_token else None
        if record is None:
            raise InvalidArtifact("Invalid refresh token.")
        user = self._users.get_by_id(int(record["user_id"]))
        if user is None or not user.is_active:
            raise AccountDisabled()
        lifetime = self._settings.access_token_expire_seconds
        access = create_access_token(user.id, user.username, user.roles, expire_seconds=lifetime)
        return RefreshedToken(access_token=access, expires_in=lifetime, user=user)

    def revoke_refresh_token(self, refresh_token: str) -> None:
        self._store.delete(REFRESH_PREFIX + refresh_token)

    def revoke_all(self, user_id: int) -> int:
        """Delete every session row for the user. Returns how many were removed."""
        removed = self._users.delete_sessions(user_id)
        logger.info("Revoked %d session(s) for user %s", removed, user_id)
        return removed
