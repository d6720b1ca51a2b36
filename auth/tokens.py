"""
auth/tokens.py -- JWT, password hashing, and opaque-token utilities.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       user_id, username, role names, issuer, issued-at and expiry. They are
       self-contained: verifying one needs no store lookup. Verification
       returns None on any failure -- route layer turns that into a 401.

  Passwords: bcrypt directly. The _DUMMY_HASH constant enables timing
       equalization in authenticate_user() so response time does not reveal
       whether a username exists [C1].

  Opaque tokens (refresh tokens, OAuth2 tokens, reset tokens):
       secrets.token_urlsafe(32) gives 256 bits of entropy. Where a token
       must be persisted in SQL we store HMAC-SHA256(SECRET_KEY, token) so
       a DB dump does not yield usable credentials and lookup stays O(1).
       OAuth client secrets are hashed the same way.

  SECRET_KEY: sourced from core.config.get_settings() at call time, so tests
       can clear the settings cache and re-read the environment.

Layer rule: no imports from api/, federation/, policy/, or notify/. Import
from core/ is allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import unicodedata
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from core.config import Settings, get_settings
from core.errors import WeakPassword

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("gatekeeper.auth")

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates at 72 bytes; the API layer caps password fields at 255
    characters (Pydantic max_length), which keeps the input bounded.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash -- treat as a mismatch, never as a match.
        return False


def _is_special(char: str) -> bool:
    # Unicode punctuation (P*) or symbol (S*)
    return unicodedata.category(char)[0] in ("P", "S")


def check_password_policy(plain: str, settings: Settings | None = None) -> None:
    """Raise WeakPassword naming the first PASSWORD_* rule the password breaks.

    Length is checked first, then uppercase, lowercase, digit and special
    character in that order. Only the length rule is on by default.
    """
    settings = settings or get_settings()
    if len(plain) < settings.password_min_length:
        raise WeakPassword(f"Password must be at least {settings.password_min_length} characters.")
    if settings.password_require_uppercase and not any(c.isupper() for c in plain):
        raise WeakPassword("Password must contain at least one uppercase letter.")
    if settings.password_require_lowercase and not any(c.islower() for c in plain):
        raise WeakPassword("Password must contain at least one lowercase letter.")
    if settings.password_require_numbers and not any(c.isdigit() for c in plain):
        raise WeakPassword("Password must contain at least one number.")
    if settings.password_require_special and not any(_is_special(c) for c in plain):
        raise WeakPassword("Password must contain at least one special character.")


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("gatekeeper_timing_dummy")


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(
    user_id: int,
    username: str,
    roles: list[str],
    expire_seconds: int = 0,
    now: datetime | None = None,
) -> str:
    """Encode a signed JWT with user identity and configurable expiry.

    Args:
        user_id:        Numeric user ID stored in the DB.
        username:       Username, also stored as the subject claim.
        roles:          Role names at issue time. Not refreshed until the next token.
        expire_seconds: Lifetime in seconds. If 0 (default), uses
                        Settings.access_token_expire_minutes. Conditional
                        access session overrides are passed in here.
        now:            Issue time; defaults to the current UTC time.
    """
    settings = get_settings()
    duration = expire_seconds if expire_seconds > 0 else settings.access_token_expire_seconds
    issued = now or datetime.now(timezone.utc)
    payload = {
        "sub": username,
        "user_id": user_id,
        "username": username,
        "roles": list(roles),
        "iss": settings.jwt_issuer,
        "iat": issued,
        "exp": issued + timedelta(seconds=duration),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure.

    Signature, expiry and issuer are all checked. Returning None (rather than
    raising) keeps the caller simple: any invalid token is unauthenticated.
    """
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[_ALGORITHM],
            issuer=settings.jwt_issuer,
        )
    except JWTError:
        return None
    if "user_id" not in payload or "roles" not in payload:
        return None
    return payload


# ---------------------------------------------------------------------------
# User authentication (constant-time) [C1]
# ---------------------------------------------------------------------------


def authenticate_user(store: UserStore, identifier: str, password: str) -> User | None:
    """Authenticate a username-or-email / password pair with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown identifier: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    A disabled account is rejected only after the password check so its
    timing matches an active account. Returns the User on success, None on
    any failure -- callers cannot tell the causes apart, by design of the API.
    """
    user = store.get_by_login(identifier)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if not user.is_active:
        return None
    return user


# ---------------------------------------------------------------------------
# Opaque tokens
# ---------------------------------------------------------------------------


def generate_opaque_token() -> str:
    """Return a URL-safe random token with 256 bits of entropy."""
    return secrets.token_urlsafe(32)


def hash_token(raw: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw) as a hex string.

    Deterministic, so the store can look a token up by hash. An attacker who
    obtains the DB cannot use the stored values without also knowing SECRET_KEY.
    """
    return hmac.new(
        get_settings().secret_key.encode(),
        raw.encode(),
        hashlib.sha256,
    ).hexdigest()


def verify_token_hash(raw: str, expected_hash: str) -> bool:
    """Constant-time comparison of hash_token(raw) against a stored hash."""
    return hmac.compare_digest(hash_token(raw), expected_hash)


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the JWT access token as an httpOnly cookie on the response.

    The federation endpoints (/oauth2/authorize, /saml/sso, /cas/login) read
    this cookie to recognise a browser that has already signed in.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": sent on top-level cross-site GET navigations (needed for
        SP redirects into /saml/sso and /cas/login) but not on cross-site POST.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the JWT expiry so both expire together.
    """
    settings = get_settings()
    duration = expire_seconds if expire_seconds > 0 else settings.access_token_expire_seconds
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=duration,
    )


def clear_auth_cookie(response) -> None:
    response.delete_cookie("access_token")
