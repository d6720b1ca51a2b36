"""
policy/evaluator.py -- Conditional access evaluation.

Walks the enabled policies in priority order (DESC, ties by insertion
order) and folds the actions of every matching policy into one decision:

  block                    terminal -- stop at the first matching block
  allow                    OR across matches, reported as explicitly_allowed
  require_mfa              OR across matches
  require_password_change  OR across matches
  session_duration         last non-zero value in evaluation order
  no match at all          allow, nothing extra required

Because evaluation goes highest priority first and block short-circuits, a
block at priority 100 wins over an allow at priority 1 however the rows
happen to be stored.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from policy.conditions import AccessContext, Policy
from policy.store import PolicyStore

logger = logging.getLogger("gatekeeper.policy")


@dataclass(frozen=True)
class AccessDecision:
    allow: bool = True
    # a matching policy said allow, as opposed to nothing matching at all
    explicitly_allowed: bool = False
    require_mfa: bool = False
    require_password_change: bool = False
    session_duration_override: int = 0  # minutes; 0 = keep the configured lifetime
    block_reason: str = ""
    matched: tuple[str, ...] = ()

    @property
    def blocked(self) -> bool:
        return not self.allow


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def evaluate_policies(policies: Iterable[Policy], ctx: AccessContext) -> AccessDecision:
    """Pure fold over already-ordered policies. Disabled policies are skipped."""
    explicitly_allowed = False
    require_mfa = False
    require_password_change = False
    session_duration = 0
    matched: list[str] = []

    for policy in policies:
        if not policy.enabled or not policy.matches(ctx):
            continue
        matched.append(policy.name)
        actions = policy.actions
        if actions.block:
            return AccessDecision(
                allow=False,
                block_reason=f"Blocked by policy: {policy.name}",
                matched=tuple(matched),
            )
        explicitly_allowed = explicitly_allowed or actions.allow
        require_mfa = require_mfa or actions.require_mfa
        require_password_change = require_password_change or actions.require_password_change
        if actions.session_duration > 0:
            session_duration = actions.session_duration

    return AccessDecision(
        allow=True,
        explicitly_allowed=explicitly_allowed,
        require_mfa=require_mfa,
        require_password_change=require_password_change,
        session_duration_override=session_duration,
        matched=tuple(matched),
    )


class ConditionalAccessEvaluator:
    """Loads enabled policies and evaluates them for one request context.

    Args:
        store: policy repository.
        clock: returns the current aware datetime; injectable for tests.
        tz:    IANA zone in which weekday/hour windows are interpreted.
    """

    def __init__(
        self,
        store: PolicyStore,
        clock: Callable[[], datetime] = _utc_now,
        tz: str = "UTC",
    ) -> None:
        self._store = store
        self._clock = clock
        self._tz = ZoneInfo(tz)

    def evaluate(
        self,
        user_id: int,
        app_id: Optional[int],
        ip: str,
        user_agent: str,
        roles: Iterable[str],
        risk_score: Optional[int] = None,
    ) -> AccessDecision:
        ctx = AccessContext(
            user_id=user_id,
            roles=tuple(roles),
            app_id=app_id,
            ip=ip,
            user_agent=user_agent,
            now=self._clock().astimezone(self._tz),
            risk_score=risk_score,
        )
        decision = evaluate_policies(self._store.list_enabled(), ctx)
        if decision.blocked:
            logger.warning("Conditional access blocked user %s from %s: %s", user_id, ip, decision.block_reason)
        return decision
