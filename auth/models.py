"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, no persistence logic). Stores
build these from rows and return them fully populated -- a User always
arrives with its role names, never as a handle that lazily loads them.

Timestamps are timezone-aware UTC datetimes. The store converts to and from
ISO 8601 text at the persistence boundary.

Layer rule: no imports from api/, federation/, policy/, or notify/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class User:
    """A principal that can authenticate.

    status is "active" or "disabled". Disabling is the only way to stop a
    principal from authenticating -- records are never physically deleted
    from the authentication path.

    mfa_enabled is set when the first MFA device is verified and cleared when
    the last verified device is removed.
    """

    username: str
    email: str
    id: int | None = None
    hashed_password: str | None = None
    display_name: str = ""
    phone: str = ""
    phone_verified: bool = False
    email_verified: bool = False
    avatar_url: str = ""
    status: str = "active"
    mfa_enabled: bool = False
    last_login_at: datetime | None = None
    created_at: datetime | None = None
    roles: list[str] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass
class Device:
    """A (user, fingerprint) pair seen at login.

    device_id is the fingerprint from auth.risk.device_fingerprint() -- a hash
    of user agent and IP. It is a weak identifier: the same browser on a new
    network is a new device. Documented limitation, not a bug.
    """

    user_id: int
    device_id: str
    device_name: str = "Unknown Device"
    device_type: str = "desktop"
    os: str = "Unknown OS"
    browser: str = "Unknown Browser"
    ip_address: str = ""
    user_agent: str = ""
    trusted: bool = False
    first_seen_at: datetime | None = None
    last_seen_at: datetime | None = None
    login_count: int = 0
    failed_login_count: int = 0
    id: int | None = None


@dataclass
class LoginAttempt:
    """Append-only record of one login decision.

    username is what the caller submitted, not a resolved identity -- for an
    unknown user it is the only key available. user_id is None in that case.
    """

    username: str
    ip_address: str
    user_agent: str
    success: bool
    device_id: str = ""
    risk_score: int = 0
    mfa_required: bool = False
    failure_reason: str = ""
    user_id: int | None = None
    created_at: datetime | None = None
    id: int | None = None


@dataclass
class MFADevice:
    """A second factor. Only verified devices gate login.

    method is "totp", "sms" or "email". secret holds the base32 TOTP seed;
    contact holds the phone number or email address for OTP delivery.
    """

    user_id: int
    method: str
    name: str = ""
    secret: str = ""
    contact: str = ""
    verified: bool = False
    created_at: datetime | None = None
    id: int | None = None


@dataclass
class Session:
    """Server-side shadow of an issued access token.

    token_hash is HMAC-SHA256 of the JWT (see auth.tokens.hash_token); the raw
    token is never stored. Deleting the row is revocation -- eventual, because
    the JWT itself stays valid until it expires.
    """

    user_id: int
    ip_address: str
    user_agent: str
    expires_at: datetime
    token_hash: str = ""
    created_at: datetime | None = None
    id: int | None = None
