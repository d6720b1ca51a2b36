"""
auth/pipeline.py -- The login decision pipeline.

One call to LoginPipeline.login() takes a credential submission all the way
to an issued session or a typed refusal:

  1. resolve + verify credentials (timing-equalized)     -> InvalidCredential
  2. fingerprint the device, score risk, evaluate policy
  3. policy block                                        -> PolicyBlocked
     policy require_mfa with no verified device          -> MFARequired
  4. MFA required = account flag OR risk >= 50 OR policy
  5. challenge: TOTP, or an SMS/email one-time code       -> MFARequired / MFAInvalid
  6. issue tokens, write session, upsert device, record attempt, emit user.login

Bookkeeping for a failure (failed-login counter, attempt row, device
failure count) is always written BEFORE the error is raised, so a caller
that aborts on the exception cannot skip it.

Risk-required MFA for a user with no verified device is decided by
ON_RISK_MFA_UNAVAILABLE: "deny" refuses the login, "allow" lets it through
with a WARNING log and mfa_required=true on the attempt row.

Security:
  Unknown user, disabled user and wrong password take the same path and
  raise the same InvalidCredential [C1]. Counters are keyed by the
  submitted identifier, so they count even when no user resolves.

Layer rule: imports core/, ephemeral/, auth/ and policy/ only. The notifier
and event sink are injected and duck-typed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from auth.mfa import MFAService
from auth.models import Device, LoginAttempt, User
from auth.risk import RiskAssessment, RiskEngine, device_fingerprint, should_require_mfa
from auth.sessions import RefreshedToken, SessionIssuer, TokenPair
from auth.store import UserStore
from auth.tokens import authenticate_user, check_password_policy, generate_opaque_token, hash_password
from core.config import Settings, get_settings
from core.errors import DuplicateAccount, InvalidArtifact, InvalidCredential, MFAInvalid, MFARequired, PolicyBlocked
from core.useragent import describe_user_agent
from ephemeral.store import EphemeralStore
from policy.evaluator import AccessDecision, ConditionalAccessEvaluator

logger = logging.getLogger("gatekeeper.login")

RESET_PREFIX = "password_reset:"
RESET_TTL_SECONDS = 3600


@dataclass
class LoginResult:
    user: User
    tokens: TokenPair
    risk: RiskAssessment
    decision: AccessDecision
    attempt: LoginAttempt
    mfa_required: bool = False
    password_change_required: bool = False


class LoginPipeline:
    def __init__(
        self,
        users: UserStore,
        store: EphemeralStore,
        risk: RiskEngine,
        evaluator: ConditionalAccessEvaluator,
        sessions: SessionIssuer,
        mfa: MFAService,
        notifier,
        events,
        settings: Optional[Settings] = None,
    ) -> None:
        self._users = users
        self._store = store
        self._risk = risk
        self._evaluator = evaluator
        self._sessions = sessions
        self._mfa = mfa
        self._notifier = notifier
        self._events = events
        self._settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(
        self,
        identifier: str,
        password: str,
        mfa_code: Optional[str] = None,
        ip: str = "",
        user_agent: str = "",
        app_id: Optional[int] = None,
    ) -> LoginResult:
        threshold = self._settings.login_lockout_threshold
        if threshold > 0 and self._risk.failed_attempts(ip, identifier) >= threshold:
            self._record(identifier, ip, user_agent, failure_reason="locked_out")
            logger.warning("Login for %r from %s refused: lockout threshold reached", identifier, ip)
            raise InvalidCredential()

        user = authenticate_user(self._users, identifier, password)
        if user is None:
            self._risk.record_failed_login(identifier, ip)
            self._record(identifier, ip, user_agent, failure_reason="invalid_credentials")
            self._events.emit("user.login_failed", {"username": identifier, "ip_address": ip})
            raise InvalidCredential()

        device_id = device_fingerprint(user_agent, ip)
        assessment = self._risk.assess(user, ip, user_agent, device_id, identifier)
        decision = self._evaluator.evaluate(
            user.id, app_id, ip, user_agent, user.roles, risk_score=assessment.score
        )

        def fail(reason: str, mfa_required: bool = False) -> None:
            self._record(
                identifier,
                ip,
                user_agent,
                user_id=user.id,
                device_id=device_id,
                risk_score=assessment.score,
                mfa_required=mfa_required,
                failure_reason=reason,
            )

        if decision.blocked:
            fail("policy_blocked")
            raise PolicyBlocked(decision.block_reason)

        verified = self._users.list_mfa_devices(user.id, verified_only=True)
        if decision.require_mfa and not verified:
            fail("mfa_not_enrolled", mfa_required=True)
            raise MFARequired("MFA required by policy")

        risk_mfa = should_require_mfa(assessment.score, user.mfa_enabled)
        mfa_required = user.mfa_enabled or risk_mfa or decision.require_mfa

        if mfa_required:
            totp = next((d for d in verified if d.method == "totp"), None)
            if totp is not None:
                if not mfa_code:
                    fail("mfa_required", mfa_required=True)
                    raise MFARequired("MFA code required")
                if not self._mfa.check_totp(totp, mfa_code):
                    self._mfa_failed(identifier, ip, user.id, device_id, fail)
            elif verified:
                if not mfa_code:
                    self._mfa.send_login_code(verified[0])
                    fail("mfa_required", mfa_required=True)
                    raise MFARequired("MFA code sent")
                if not self._mfa.check_login_code(user.id, mfa_code):
                    self._mfa_failed(identifier, ip, user.id, device_id, fail)
            elif user.mfa_enabled:
                fail("mfa_not_enrolled", mfa_required=True)
                raise MFARequired("MFA device not enrolled")
            elif self._settings.on_risk_mfa_unavailable == "allow":
                logger.warning(
                    "Risk score %d for user %s requires MFA but no device is enrolled -- allowing",
                    assessment.score,
                    user.id,
                )
            else:
                fail("mfa_not_enrolled", mfa_required=True)
                raise MFARequired("MFA required but no MFA device is enrolled")

        # -- success -----------------------------------------------------
        tokens = self._sessions.issue(
            user, ip, user_agent, session_minutes=decision.session_duration_override
        )
        now = datetime.now(timezone.utc)
        self._users.update_last_login(user.id, now)
        self._upsert_device(user.id, device_id, ip, user_agent, now)
        attempt = self._record(
            identifier,
            ip,
            user_agent,
            success=True,
            user_id=user.id,
            device_id=device_id,
            risk_score=assessment.score,
            mfa_required=mfa_required,
        )
        self._events.emit(
            "user.login",
            {"user_id": user.id, "username": user.username, "ip_address": ip, "risk_score": assessment.score},
        )
        logger.info("User %s logged in from %s (risk %d)", user.id, ip, assessment.score)
        return LoginResult(
            user=user,
            tokens=tokens,
            risk=assessment,
            decision=decision,
            attempt=attempt,
            mfa_required=mfa_required,
            password_change_required=decision.require_password_change,
        )

    def _mfa_failed(self, identifier: str, ip: str, user_id: int, device_id: str, fail) -> None:
        self._risk.record_failed_login(identifier, ip)
        self._users.record_device_failure(user_id, device_id)
        fail("mfa_invalid", mfa_required=True)
        raise MFAInvalid()

    def _upsert_device(self, user_id: int, device_id: str, ip: str, user_agent: str, now: datetime) -> None:
        existing = self._users.get_device(user_id, device_id)
        if existing is not None:
            # assess() already counted this login
            self._users.touch_device(existing.id, now, ip_address=ip, user_agent=user_agent)
            return
        info = describe_user_agent(user_agent)
        self._users.create_device(
            Device(
                user_id=user_id,
                device_id=device_id,
                device_name=f"{info.browser} on {info.os}",
                device_type=info.device_type,
                os=info.os,
                browser=info.browser,
                ip_address=ip,
                user_agent=user_agent,
                first_seen_at=now,
                last_seen_at=now,
                login_count=1,
            )
        )

    def _record(self, username: str, ip: str, user_agent: str, success: bool = False, **fields) -> LoginAttempt:
        return self._users.record_login_attempt(
            LoginAttempt(username=username, ip_address=ip, user_agent=user_agent, success=success, **fields)
        )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str) -> RefreshedToken:
        return self._sessions.refresh(refresh_token)

    def logout(self, user: User, refresh_token: Optional[str] = None) -> int:
        if refresh_token:
            self._sessions.revoke_refresh_token(refresh_token)
        removed = self._sessions.revoke_all(user.id)
        self._events.emit("user.logout", {"user_id": user.id, "username": user.username})
        return removed

    # ------------------------------------------------------------------
    # Account lifecycle
    # ------------------------------------------------------------------

    def register(
        self,
        username: str,
        email: str,
        password: str,
        display_name: str = "",
        roles: Optional[list[str]] = None,
    ) -> User:
        if self._users.exists(username, email):
            raise DuplicateAccount()
        check_password_policy(password, self._settings)
        user = User(
            username=username,
            email=email,
            hashed_password=hash_password(password),
            display_name=display_name or username,
        )
        user.id = self._users.create_user(user, roles=roles if roles is not None else ["user"])
        created = self._users.get_by_id(user.id)
        self._events.emit("user.created", {"user_id": created.id, "username": created.username})
        logger.info("Created user %s (%s)", created.id, created.username)
        return created

    def forgot_password(self, email: str) -> None:
        """Queue a reset link. Silent for unknown or disabled accounts (no enumeration)."""
        user = self._users.get_by_email(email)
        if user is None or not user.is_active:
            logger.info("Password reset requested for unknown address")
            return
        token = generate_opaque_token()
        self._store.put(RESET_PREFIX + token, {"user_id": user.id}, ttl=RESET_TTL_SECONDS)
        self._notifier.send_password_reset(user.email, token)

    def reset_password(self, token: str, new_password: str) -> User:
        check_password_policy(new_password, self._settings)
        record = self._store.get_and_delete(RESET_PREFIX + token) if token else None
        if record is None:
            raise InvalidArtifact("Invalid or expired reset token.")
        user = self._users.get_by_id(int(record["user_id"]))
        if user is None:
            raise InvalidArtifact("Invalid or expired reset token.")
        self._users.update_user(user.id, hashed_password=hash_password(new_password))
        self._sessions.revoke_all(user.id)
        self._events.emit("user.password_reset", {"user_id": user.id, "username": user.username})
        return user
