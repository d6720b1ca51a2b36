"""
tests/test_pipeline.py -- LoginPipeline end to end, without HTTP.

Every test builds a fresh service graph (conftest.build_services) over
private in-memory stores, logs in from a private address at a fixed time
of day, and asserts on both the outcome and the bookkeeping it leaves.
"""

from __future__ import annotations

import re
import time

import pyotp
import pytest

from auth.pipeline import RESET_PREFIX
from auth.risk import device_fingerprint
from auth.tokens import decode_access_token
from conftest import TEST_PASSWORD, build_services, create_user, night_clock
from core.errors import (
    DuplicateAccount,
    InvalidArtifact,
    InvalidCredential,
    MFAInvalid,
    MFARequired,
    PolicyBlocked,
    WeakPassword,
)

IP = "10.0.0.5"
UA = "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) Firefox/121.0"


def _login(svc, username="alice", password=TEST_PASSWORD, **kwargs):
    kwargs.setdefault("ip", IP)
    kwargs.setdefault("user_agent", UA)
    return svc.pipeline.login(username, password, **kwargs)


class TestSuccessfulLogin:
    def test_tokens_decode_to_same_user(self, services) -> None:
        user = create_user(services.users)
        result = _login(services)
        assert result.tokens.access_token
        assert result.tokens.refresh_token
        payload = decode_access_token(result.tokens.access_token)
        assert payload["user_id"] == user.id
        assert payload["roles"] == ["user"]

    def test_login_by_email(self, services) -> None:
        create_user(services.users)
        assert _login(services, "alice@example.com").user.username == "alice"

    def test_bookkeeping(self, services) -> None:
        user = create_user(services.users)
        result = _login(services)

        assert result.attempt.success
        assert result.attempt.user_id == user.id
        assert result.attempt.device_id == device_fingerprint(UA, IP)

        device = services.users.get_device(user.id, device_fingerprint(UA, IP))
        assert device is not None
        assert device.login_count == 1
        assert device.browser == "Firefox"
        assert device.os == "macOS"

        sessions = services.users.list_sessions(user.id)
        assert [s.id for s in sessions] == [result.tokens.session_id]
        assert services.users.get_by_id(user.id).last_login_at is not None
        assert ("user.login", {"user_id": user.id, "username": "alice", "ip_address": IP,
                               "risk_score": result.risk.score}) in services.events.emitted

    def test_second_login_from_same_device_counts_again(self, services) -> None:
        user = create_user(services.users)
        _login(services)
        second = _login(services)
        device = services.users.get_device(user.id, device_fingerprint(UA, IP))
        assert device.login_count == 2
        assert second.risk.score < 50
        assert not second.risk.factors.new_device

    def test_refresh_mints_new_access_token(self, services) -> None:
        user = create_user(services.users)
        result = _login(services)
        refreshed = services.pipeline.refresh(result.tokens.refresh_token)
        assert decode_access_token(refreshed.access_token)["user_id"] == user.id

    def test_refresh_with_unknown_token(self, services) -> None:
        with pytest.raises(InvalidArtifact):
            services.pipeline.refresh("not-a-token")


class TestFailedLogin:
    def test_wrong_password_records_attempt_and_one_failure(self, services) -> None:
        create_user(services.users)
        before = services.risk.failed_attempts(IP, "alice")

        with pytest.raises(InvalidCredential):
            _login(services, password="wrong-password")

        assert services.risk.failed_attempts(IP, "alice") == before + 1
        attempts = services.users.list_login_attempts(username="alice")
        assert len(attempts) == 1
        assert not attempts[0].success
        assert attempts[0].failure_reason == "invalid_credentials"
        assert services.events.emitted[-1][0] == "user.login_failed"

    def test_unknown_user_is_indistinguishable(self, services) -> None:
        create_user(services.users)
        with pytest.raises(InvalidCredential) as unknown:
            _login(services, username="mallory")
        with pytest.raises(InvalidCredential) as wrong:
            _login(services, password="wrong-password")
        assert unknown.value.message == wrong.value.message
        assert services.risk.failed_attempts(IP, "mallory") == 1

    def test_disabled_user_gets_invalid_credential(self, services) -> None:
        create_user(services.users, status="disabled")
        with pytest.raises(InvalidCredential):
            _login(services)

    def test_lockout_after_threshold(self) -> None:
        svc = build_services(login_lockout_threshold=3)
        try:
            create_user(svc.users)
            for _ in range(3):
                with pytest.raises(InvalidCredential):
                    _login(svc, password="wrong-password")
            # correct password, still refused
            with pytest.raises(InvalidCredential):
                _login(svc)
            assert svc.users.list_login_attempts(username="alice")[0].failure_reason == "locked_out"
        finally:
            svc.close()


class TestPolicy:
    def test_block_policy_refuses_and_records(self, services) -> None:
        create_user(services.users)
        services.policies.create_from_dict(
            {"name": "no private nets", "priority": 100,
             "conditions": {"ip": {"ranges": ["10.0.0.0/8"]}}, "actions": {"block": True}}
        )
        with pytest.raises(PolicyBlocked) as exc:
            _login(services)
        assert exc.value.message == "Blocked by policy: no private nets"
        assert services.users.list_login_attempts(username="alice")[0].failure_reason == "policy_blocked"

    def test_policy_mfa_without_device(self, services) -> None:
        create_user(services.users)
        services.policies.create_from_dict({"name": "mfa everywhere", "actions": {"require_mfa": True}})
        with pytest.raises(MFARequired) as exc:
            _login(services)
        assert exc.value.message == "MFA required by policy"

    def test_session_duration_override(self, services) -> None:
        create_user(services.users)
        services.policies.create_from_dict({"name": "short", "actions": {"session_duration": 5}})
        result = _login(services)
        assert result.tokens.expires_in == 300

    def test_password_change_flag(self, services) -> None:
        create_user(services.users)
        services.policies.create_from_dict({"name": "rotate", "actions": {"require_password_change": True}})
        assert _login(services).password_change_required


class TestRiskMFA:
    def test_risk_55_allowed_when_configured(self) -> None:
        """Brand-new device at night with no prior login: 55, no device enrolled."""
        svc = build_services(clock=night_clock, on_risk_mfa_unavailable="allow")
        try:
            create_user(svc.users)
            result = _login(svc)
            assert result.risk.score == 55
            assert result.attempt.success
            assert result.attempt.mfa_required
        finally:
            svc.close()

    def test_risk_55_denied_by_default(self) -> None:
        svc = build_services(clock=night_clock, on_risk_mfa_unavailable="deny")
        try:
            create_user(svc.users)
            with pytest.raises(MFARequired):
                _login(svc)
            attempt = svc.users.list_login_attempts(username="alice")[0]
            assert not attempt.success
            assert attempt.mfa_required
        finally:
            svc.close()


def _code_in(body: str) -> str:
    return re.search(r"\b(\d{6})\b", body).group(1)


def _enroll_totp(svc, user) -> pyotp.TOTP:
    """Enrol and verify a TOTP device. The confirmation code is now burned."""
    enrollment = svc.mfa.enroll_totp(user)
    totp = pyotp.TOTP(enrollment.secret)
    svc.mfa.confirm_totp(user, totp.now())
    return totp


def _next_code(totp: pyotp.TOTP) -> str:
    """The code for the next 30 s step -- accepted (valid_window=1) and unused."""
    return totp.at(int(time.time()) + 30)


def _invalid_code(totp: pyotp.TOTP) -> str:
    now = int(time.time())
    valid = {totp.at(now - 30), totp.at(now), totp.at(now + 30)}
    return next(c for c in ("000000", "111111", "222222", "333333") if c not in valid)


class TestMFAChallenge:
    def test_totp_required_then_accepted(self, services) -> None:
        user = create_user(services.users)
        totp = _enroll_totp(services, user)

        with pytest.raises(MFARequired) as exc:
            _login(services)
        assert exc.value.message == "MFA code required"

        result = _login(services, mfa_code=_next_code(totp))
        assert result.mfa_required
        assert result.attempt.success

    def test_totp_code_cannot_be_replayed(self, services) -> None:
        user = create_user(services.users)
        totp = _enroll_totp(services, user)
        code = _next_code(totp)
        _login(services, mfa_code=code)
        with pytest.raises(MFAInvalid):
            _login(services, mfa_code=code)

    def test_wrong_totp_is_recorded(self, services) -> None:
        user = create_user(services.users)
        totp = _enroll_totp(services, user)

        with pytest.raises(MFAInvalid):
            _login(services, mfa_code=_invalid_code(totp))
        assert services.risk.failed_attempts(IP, "alice") == 1
        assert services.users.list_login_attempts(username="alice")[0].failure_reason == "mfa_invalid"

    def test_email_code_round_trip(self, services) -> None:
        user = create_user(services.users)
        services.mfa.enroll_email(user)
        services.mfa.confirm_email(user, _code_in(services.transport.sent[-1].body))

        with pytest.raises(MFARequired) as exc:
            _login(services)
        assert exc.value.message == "MFA code sent"
        login_code = _code_in(services.transport.sent[-1].body)

        assert _login(services, mfa_code=login_code).attempt.success
        # single use
        with pytest.raises(MFAInvalid):
            _login(services, mfa_code=login_code)

    def test_enrolment_code_is_single_use(self, services) -> None:
        user = create_user(services.users)
        services.mfa.enroll_sms(user, "+15550100")
        enrol_code = _code_in(services.transport.sent[-1].body)
        services.mfa.confirm_sms(user, enrol_code)
        with pytest.raises(MFARequired):
            _login(services)
        with pytest.raises(InvalidArtifact):
            services.mfa.confirm_sms(user, enrol_code)

    def test_mfa_flag_without_device(self, services) -> None:
        create_user(services.users, mfa_enabled=True)
        with pytest.raises(MFARequired) as exc:
            _login(services)
        assert exc.value.message == "MFA device not enrolled"


class TestAccountLifecycle:
    def test_register_then_login(self, services) -> None:
        user = services.pipeline.register("bob", "bob@example.com", "longenough1")
        assert user.id is not None
        assert user.roles == ["user"]
        assert _login(services, "bob", "longenough1").user.id == user.id
        assert ("user.created", {"user_id": user.id, "username": "bob"}) in services.events.emitted

    def test_register_duplicate(self, services) -> None:
        create_user(services.users)
        with pytest.raises(DuplicateAccount):
            services.pipeline.register("alice", "other@example.com", "longenough1")

    def test_register_weak_password(self, services) -> None:
        with pytest.raises(WeakPassword):
            services.pipeline.register("bob", "bob@example.com", "short")

    def test_register_follows_configured_policy(self) -> None:
        svc = build_services(password_require_numbers=True, password_require_special=True)
        try:
            with pytest.raises(WeakPassword):
                svc.pipeline.register("bob", "bob@example.com", "longenough1")
            assert svc.users.get_by_login("bob") is None
            assert svc.pipeline.register("bob", "bob@example.com", "long-enough1").username == "bob"
        finally:
            svc.close()

    def test_reset_round_trip(self, services) -> None:
        user = create_user(services.users)
        _login(services)
        services.pipeline.forgot_password("alice@example.com")
        message = services.transport.sent[-1]
        assert message.recipient == "alice@example.com"
        token = message.body.split("token=")[1].split()[0]

        services.pipeline.reset_password(token, "brand-new-password")
        assert services.users.list_sessions(user.id) == []
        assert _login(services, password="brand-new-password").attempt.success
        with pytest.raises(InvalidCredential):
            _login(services)
        with pytest.raises(InvalidArtifact):
            services.pipeline.reset_password(token, "another-password")

    def test_weak_reset_does_not_consume_token(self, services) -> None:
        create_user(services.users)
        services.pipeline.forgot_password("alice@example.com")
        token = services.transport.sent[-1].body.split("token=")[1].split()[0]
        with pytest.raises(WeakPassword):
            services.pipeline.reset_password(token, "short")
        assert services.ephemeral.get(RESET_PREFIX + token) is not None

    def test_forgot_password_unknown_address_is_silent(self, services) -> None:
        services.pipeline.forgot_password("nobody@example.com")
        assert services.transport.sent == []

    def test_logout_revokes_sessions_and_refresh_token(self, services) -> None:
        user = create_user(services.users)
        result = _login(services)
        removed = services.pipeline.logout(user, refresh_token=result.tokens.refresh_token)
        assert removed == 1
        with pytest.raises(InvalidArtifact):
            services.pipeline.refresh(result.tokens.refresh_token)
