"""
API request and response models for the Gatekeeper first-party REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

The federation routes (/oauth2, /saml, /cas) do not use these models -- each
protocol has its own wire format.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from auth.models import Device, MFADevice, Session, User

# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    username accepts a username or an email address. max_length caps
    bcrypt input (it truncates at 72 bytes anyway).
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)
    mfa_code: Optional[str] = Field(default=None, max_length=16)
    app_id: Optional[int] = None


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    display_name: str
    status: str
    mfa_enabled: bool
    roles: list[str]
    last_login_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            display_name=user.display_name,
            status=user.status,
            mfa_enabled=user.mfa_enabled,
            roles=list(user.roles),
            last_login_at=user.last_login_at.isoformat() if user.last_login_at else None,
        )


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str
    expires_in: int
    mfa_required: bool
    password_change_required: bool
    user: UserResponse


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=512)


class RefreshResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str
    expires_in: int


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=512)


class RegisterRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=3, max_length=64, pattern=r"^[A-Za-z0-9_.-]+$")
    email: EmailStr
    password: str = Field(min_length=1, max_length=255)
    display_name: str = Field(default="", max_length=255)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1, max_length=512)
    new_password: str = Field(min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# MFA
# ---------------------------------------------------------------------------


class MFADeviceResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    method: str
    name: str
    verified: bool
    created_at: Optional[str] = None

    @classmethod
    def from_device(cls, device: MFADevice) -> "MFADeviceResponse":
        return cls(
            id=device.id,
            method=device.method,
            name=device.name,
            verified=device.verified,
            created_at=device.created_at.isoformat() if device.created_at else None,
        )


class TOTPEnrollRequest(BaseModel):
    name: str = Field(default="Authenticator", max_length=100)


class TOTPEnrollResponse(BaseModel):
    """The secret is returned once, for manual entry when a QR scan is not possible."""

    model_config = ConfigDict(frozen=True)

    device_id: int
    secret: str
    provisioning_uri: str


class SMSEnrollRequest(BaseModel):
    phone: str = Field(min_length=6, max_length=32, pattern=r"^\+?[0-9 ()-]+$")


class EmailEnrollRequest(BaseModel):
    email: Optional[EmailStr] = None


class MFAVerifyRequest(BaseModel):
    code: str = Field(min_length=6, max_length=8, pattern=r"^[0-9]+$")


class EnrollmentStartedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_id: int
    message: str


# ---------------------------------------------------------------------------
# Devices and sessions
# ---------------------------------------------------------------------------


class DeviceResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_id: str
    device_name: str
    device_type: str
    os: str
    browser: str
    ip_address: str
    trusted: bool
    login_count: int
    first_seen_at: Optional[str] = None
    last_seen_at: Optional[str] = None

    @classmethod
    def from_device(cls, device: Device) -> "DeviceResponse":
        return cls(
            device_id=device.device_id,
            device_name=device.device_name,
            device_type=device.device_type,
            os=device.os,
            browser=device.browser,
            ip_address=device.ip_address,
            trusted=device.trusted,
            login_count=device.login_count,
            first_seen_at=device.first_seen_at.isoformat() if device.first_seen_at else None,
            last_seen_at=device.last_seen_at.isoformat() if device.last_seen_at else None,
        )


class SessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    ip_address: str
    user_agent: str
    created_at: Optional[str]
    expires_at: str

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(
            id=session.id,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            created_at=session.created_at.isoformat() if session.created_at else None,
            expires_at=session.expires_at.isoformat(),
        )
