"""
auth/mfa.py -- Second-factor enrolment and verification.

Methods:
  totp   pyotp.TOTP over a base32 seed stored on the device row. A code is
         accepted within one 30 s step either side of now, and only once:
         the replay marker mfa:totp:{uid}:{code} (90 s) is claimed with
         incr() and a count above 1 rejects the code.
  sms    6-digit code at mfa:sms:{uid}   (5 min), sent via the notifier
  email  6-digit code at mfa:email:{uid} (10 min), sent via the notifier

Login challenges for sms/email users use a separate key, mfa:login:{uid}
(5 min), so an enrolment in progress cannot be satisfied with a login code
or vice versa.

Every stored OTP is read with get_and_delete(), so it is single-use even
when two requests race. Comparisons use hmac.compare_digest.

Layer rule: imports core/, ephemeral/ and auth/ only. The notifier is
duck-typed (send_sms_code / send_email_code) so auth/ does not import notify/.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from dataclasses import dataclass
from typing import Optional

import pyotp

from auth.models import MFADevice, User
from auth.store import UserStore
from core.config import Settings, get_settings
from core.errors import InvalidArtifact, MFAInvalid
from ephemeral.store import EphemeralStore

logger = logging.getLogger("gatekeeper.mfa")

METHODS = ("totp", "sms", "email")

SMS_CODE_TTL = 300
EMAIL_CODE_TTL = 600
LOGIN_CODE_TTL = 300
TOTP_REPLAY_TTL = 90


def _otp() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


def _same(expected: str, supplied: str) -> bool:
    return hmac.compare_digest(str(expected).encode(), str(supplied).strip().encode())


@dataclass(frozen=True)
class TOTPEnrollment:
    device_id: int
    secret: str
    provisioning_uri: str


class MFAService:
    def __init__(
        self,
        users: UserStore,
        store: EphemeralStore,
        notifier,
        settings: Optional[Settings] = None,
    ) -> None:
        self._users = users
        self._store = store
        self._notifier = notifier
        self._settings = settings or get_settings()

    # ------------------------------------------------------------------
    # TOTP
    # ------------------------------------------------------------------

    def enroll_totp(self, user: User, name: str = "Authenticator") -> TOTPEnrollment:
        """Create an unverified TOTP device and return its seed and otpauth:// URI."""
        secret = pyotp.random_base32()
        device_id = self._users.create_mfa_device(
            MFADevice(user_id=user.id, method="totp", name=name, secret=secret)
        )
        uri = pyotp.TOTP(secret).provisioning_uri(name=user.email, issuer_name=self._settings.totp_issuer_name)
        return TOTPEnrollment(device_id=device_id, secret=secret, provisioning_uri=uri)

    def confirm_totp(self, user: User, code: str) -> MFADevice:
        """Verify the pending TOTP device with a current code."""
        device = self._users.get_pending_mfa_device(user.id, "totp")
        if device is None:
            raise InvalidArtifact("No TOTP enrolment in progress.")
        if not self.check_totp(device, code):
            raise MFAInvalid()
        self._users.mark_mfa_verified(device.id)
        logger.info("TOTP device %s verified for user %s", device.id, user.id)
        device.verified = True
        return device

    def check_totp(self, device: MFADevice, code: str) -> bool:
        """True if code is current (+-1 step) and has not been used before."""
        code = (code or "").strip()
        if not code or not pyotp.TOTP(device.secret).verify(code, valid_window=1):
            return False
        if self._store.incr(f"mfa:totp:{device.user_id}:{code}", ttl=TOTP_REPLAY_TTL) > 1:
            logger.warning("Replayed TOTP code rejected for user %s", device.user_id)
            return False
        return True

    # ------------------------------------------------------------------
    # SMS / email
    # ------------------------------------------------------------------

    def enroll_sms(self, user: User, phone: str) -> int:
        device_id = self._users.create_mfa_device(
            MFADevice(user_id=user.id, method="sms", name="SMS", contact=phone)
        )
        code = _otp()
        self._store.put(f"mfa:sms:{user.id}", {"code": code, "device_id": device_id}, ttl=SMS_CODE_TTL)
        self._notifier.send_sms_code(phone, code)
        return device_id

    def confirm_sms(self, user: User, code: str) -> MFADevice:
        return self._confirm_code(user, "sms", code)

    def enroll_email(self, user: User, email: str = "") -> int:
        address = email or user.email
        device_id = self._users.create_mfa_device(
            MFADevice(user_id=user.id, method="email", name="Email", contact=address)
        )
        code = _otp()
        self._store.put(f"mfa:email:{user.id}", {"code": code, "device_id": device_id}, ttl=EMAIL_CODE_TTL)
        self._notifier.send_email_code(address, code)
        return device_id

    def confirm_email(self, user: User, code: str) -> MFADevice:
        return self._confirm_code(user, "email", code)

    def _confirm_code(self, user: User, method: str, code: str) -> MFADevice:
        record = self._store.get_and_delete(f"mfa:{method}:{user.id}")
        if record is None:
            raise InvalidArtifact("Verification code expired or already used.")
        if not _same(record["code"], code):
            raise MFAInvalid()
        device = next(
            (d for d in self._users.list_mfa_devices(user.id) if d.id == record["device_id"]),
            None,
        )
        if device is None:
            raise InvalidArtifact("MFA device no longer exists.")
        self._users.mark_mfa_verified(device.id)
        device.verified = True
        return device

    # ------------------------------------------------------------------
    # Login challenge
    # ------------------------------------------------------------------

    def send_login_code(self, device: MFADevice) -> None:
        code = _otp()
        self._store.put(f"mfa:login:{device.user_id}", {"code": code, "device_id": device.id}, ttl=LOGIN_CODE_TTL)
        if device.method == "sms":
            self._notifier.send_sms_code(device.contact, code)
        else:
            self._notifier.send_email_code(device.contact, code)

    def check_login_code(self, user_id: int, code: str) -> bool:
        record = self._store.get_and_delete(f"mfa:login:{user_id}")
        return record is not None and _same(record["code"], code)

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list_devices(self, user_id: int) -> list[MFADevice]:
        return self._users.list_mfa_devices(user_id)

    def delete_device(self, user_id: int, device_pk: int) -> bool:
        return self._users.delete_mfa_device(device_pk, user_id)
