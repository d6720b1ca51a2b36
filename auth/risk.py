"""
auth/risk.py -- Login risk scoring.

Produces an integer score in [0, 100] plus the factor breakdown behind it.
Weights:

  new device (no row for this fingerprint)          +20
  known device marked trusted                       -10
  new IP (no prior session, or differs from latest) +15
  each failed attempt for (ip, username), last hour +5   (+20 more above 5)
  off-hours (hour < 8 or hour > 22, risk_timezone)  +10
  dormant: > 30 days since last login               +25
           > 7 days since last login                +15
  first-ever login                                  +10
  IP reputation // 10                               +0..+8
  user-agent changed on a known device              +10

IP reputation is local only: loopback/private -> 0, unparseable -> 50,
otherwise from the ip_failed_logins:{ip} counter (0 -> 10, 1-5 -> 20,
6-10 -> 50, >10 -> 80).

The counters live in the injected EphemeralStore -- there is no
process-global state -- and the clock is injectable, so a score is
reproducible for a given stored history and instant.

Side effect: assess() refreshes last_seen_at and bumps login_count on an
existing device row. New devices are created by the pipeline only after a
successful login, so a failed login never plants a "known" device.

Layer rule: imports core/, ephemeral/ and auth/ only.
"""

from __future__ import annotations

import hashlib
import ipaddress
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from auth.models import User
from auth.store import UserStore
from ephemeral.store import EphemeralStore

logger = logging.getLogger("gatekeeper.risk")

FAILED_LOGIN_WINDOW_SECONDS = 3600
MFA_SCORE_THRESHOLD = 50

_WEIGHT_NEW_DEVICE = 20
_WEIGHT_TRUSTED_DEVICE = -10
_WEIGHT_NEW_IP = 15
_WEIGHT_PER_FAILURE = 5
_WEIGHT_MANY_FAILURES = 20
_MANY_FAILURES = 5
_WEIGHT_OFF_HOURS = 10
_WEIGHT_DORMANT_WEEK = 15
_WEIGHT_DORMANT_MONTH = 25
_WEIGHT_FIRST_LOGIN = 10
_WEIGHT_UA_CHANGE = 10


def failed_login_key(ip: str, username: str) -> str:
    return f"failed_login:{ip}:{username}"


def ip_failed_key(ip: str) -> str:
    return f"ip_failed_logins:{ip}"


def device_fingerprint(user_agent: str, ip: str) -> str:
    """First 16 bytes of sha256("{ua}|{ip}") as hex (32 chars)."""
    digest = hashlib.sha256(f"{user_agent}|{ip}".encode("utf-8")).digest()
    return digest[:16].hex()


def ip_reputation(ip: str, recent_failures: int) -> int:
    """Return a 0-100 badness score for an address. Higher is riskier."""
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return 50
    if addr.is_loopback or addr.is_private:
        return 0
    if recent_failures > 10:
        return 80
    if recent_failures > 5:
        return 50
    if recent_failures > 0:
        return 20
    return 10


def should_require_mfa(score: int, mfa_enabled: bool = False) -> bool:
    """Risk verdict only. mfa_enabled does not change it -- the pipeline ORs
    the account flag and any policy requirement in separately."""
    return score >= MFA_SCORE_THRESHOLD


@dataclass
class RiskFactors:
    new_device: bool = False
    device_trusted: bool = False
    new_ip_address: bool = False
    failed_login_attempts: int = 0
    unusual_time: bool = False
    first_login: bool = False
    hours_since_last_login: Optional[int] = None
    ip_reputation: int = 0
    unusual_user_agent: bool = False


@dataclass
class RiskAssessment:
    score: int
    factors: RiskFactors
    device_id: str

    @property
    def requires_mfa(self) -> bool:
        return should_require_mfa(self.score)

    def to_dict(self) -> dict:
        return {"score": self.score, "device_id": self.device_id, "factors": asdict(self.factors)}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RiskEngine:
    """Scores login context against stored history.

    Args:
        users:     repository for devices, sessions and the user's last login.
        counters:  ephemeral store holding the failed-login counters.
        clock:     returns the current aware datetime; injectable for tests.
        tz:        IANA zone name used for the off-hours factor.
    """

    def __init__(
        self,
        users: UserStore,
        counters: EphemeralStore,
        clock: Callable[[], datetime] = _utc_now,
        tz: str = "UTC",
    ) -> None:
        self._users = users
        self._counters = counters
        self._clock = clock
        self._tz = ZoneInfo(tz)

    def assess(self, user: User, ip: str, user_agent: str, device_id: str, username: str) -> RiskAssessment:
        """Score one login for an already-authenticated user.

        username is the identifier the caller submitted; failed-attempt
        counters are keyed by it so pre-authentication failures (where no
        user id is known) are counted under the same key.
        """
        now = self._clock()
        factors = RiskFactors()
        score = 0

        device = self._users.get_device(user.id, device_id)
        if device is None:
            factors.new_device = True
            score += _WEIGHT_NEW_DEVICE
        else:
            factors.device_trusted = device.trusted
            if device.trusted:
                score += _WEIGHT_TRUSTED_DEVICE
            self._users.touch_device(device.id, now, count_login=True)

        last_session = self._users.latest_session(user.id)
        if last_session is None or last_session.ip_address != ip:
            factors.new_ip_address = True
            score += _WEIGHT_NEW_IP

        failures = self._counters.counter(failed_login_key(ip, username))
        factors.failed_login_attempts = failures
        score += failures * _WEIGHT_PER_FAILURE
        if failures > _MANY_FAILURES:
            score += _WEIGHT_MANY_FAILURES

        hour = now.astimezone(self._tz).hour
        if hour < 8 or hour > 22:
            factors.unusual_time = True
            score += _WEIGHT_OFF_HOURS

        if user.last_login_at is None:
            factors.first_login = True
            score += _WEIGHT_FIRST_LOGIN
        else:
            hours_since = int((now - user.last_login_at).total_seconds() // 3600)
            factors.hours_since_last_login = hours_since
            if hours_since > 24 * 30:
                score += _WEIGHT_DORMANT_MONTH
            elif hours_since > 24 * 7:
                score += _WEIGHT_DORMANT_WEEK

        factors.ip_reputation = ip_reputation(ip, self._counters.counter(ip_failed_key(ip)))
        score += factors.ip_reputation // 10

        if device is not None and device.user_agent != user_agent:
            factors.unusual_user_agent = True
            score += _WEIGHT_UA_CHANGE

        score = max(0, min(100, score))
        logger.debug("Risk for user %s from %s: %d", user.id, ip, score)
        return RiskAssessment(score=score, factors=factors, device_id=device_id)

    def record_failed_login(self, username: str, ip: str) -> int:
        """Count a failed attempt against (ip, username) and against the IP.

        Counting is approximate under races (lost updates are acceptable).
        Returns the new per-(ip, username) count.
        """
        count = self._counters.incr(failed_login_key(ip, username), ttl=FAILED_LOGIN_WINDOW_SECONDS)
        self._counters.incr(ip_failed_key(ip), ttl=FAILED_LOGIN_WINDOW_SECONDS)
        return count

    def failed_attempts(self, ip: str, username: str) -> int:
        return self._counters.counter(failed_login_key(ip, username))
