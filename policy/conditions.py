"""
policy/conditions.py -- Typed conditional access conditions and actions.

Each condition category is its own frozen dataclass; a policy holds at most
one of each. Together they form a tagged union keyed by the class attribute
`kind`:

    UserCondition    "user"    user_ids, roles
    AppCondition     "app"     app_ids
    IPCondition      "ip"      ranges (exact address or CIDR)
    DeviceCondition  "device"  device_types, platforms
    TimeCondition    "time"    days, start_hour, end_hour
    RiskCondition    "risk"    min_score, max_score

Validation happens in __post_init__, i.e. when a policy is built from admin
input and saved -- a bad CIDR or weekday name is rejected then, never
discovered halfway through a login. parse_conditions() is the single entry
point for untrusted dicts (JSON from the DB or an admin payload).

A category with no values is a wildcard, so parse_conditions() drops it
instead of storing an always-true condition.

Layer rule: imports core/ only.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, fields
from datetime import datetime
from typing import ClassVar, Optional, Union

from core.useragent import describe_user_agent

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
DEVICE_TYPES = ("desktop", "mobile", "tablet")


class InvalidCondition(ValueError):
    """Raised when a condition payload cannot be turned into a typed condition."""


@dataclass(frozen=True)
class AccessContext:
    """Everything a condition may look at. `now` is already in the policy time zone."""

    user_id: int
    roles: tuple[str, ...]
    app_id: Optional[int]
    ip: str
    user_agent: str
    now: datetime
    risk_score: Optional[int] = None


# ---------------------------------------------------------------------------
# Condition types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UserCondition:
    """Matches if the user id is listed or the user holds any listed role."""

    kind: ClassVar[str] = "user"
    user_ids: tuple[int, ...] = ()
    roles: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "user_ids", tuple(_as_int(v, "user_ids") for v in self.user_ids))
        object.__setattr__(self, "roles", tuple(str(r) for r in self.roles))

    def is_empty(self) -> bool:
        return not self.user_ids and not self.roles

    def matches(self, ctx: AccessContext) -> bool:
        if ctx.user_id in self.user_ids:
            return True
        return any(role in self.roles for role in ctx.roles)


@dataclass(frozen=True)
class AppCondition:
    kind: ClassVar[str] = "app"
    app_ids: tuple[int, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "app_ids", tuple(_as_int(v, "app_ids") for v in self.app_ids))

    def is_empty(self) -> bool:
        return not self.app_ids

    def matches(self, ctx: AccessContext) -> bool:
        return ctx.app_id is not None and ctx.app_id in self.app_ids


@dataclass(frozen=True)
class IPCondition:
    """Matches if the address equals an entry or falls inside a CIDR entry.

    Entries are normalized on construction ("10.0.0.0/8", "192.0.2.7").
    An unparseable client address never matches.
    """

    kind: ClassVar[str] = "ip"
    ranges: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        normalized = []
        for entry in self.ranges:
            try:
                normalized.append(str(ipaddress.ip_network(str(entry).strip(), strict=False)))
            except ValueError as exc:
                raise InvalidCondition(f"ip: {entry!r} is not an address or CIDR range") from exc
        object.__setattr__(self, "ranges", tuple(normalized))

    def is_empty(self) -> bool:
        return not self.ranges

    def matches(self, ctx: AccessContext) -> bool:
        try:
            addr = ipaddress.ip_address(ctx.ip)
        except ValueError:
            return False
        return any(addr in ipaddress.ip_network(r) for r in self.ranges)


@dataclass(frozen=True)
class DeviceCondition:
    """Matches on the coarse User-Agent classification (type or platform)."""

    kind: ClassVar[str] = "device"
    device_types: tuple[str, ...] = ()
    platforms: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        types = tuple(str(t).lower() for t in self.device_types)
        for t in types:
            if t not in DEVICE_TYPES:
                raise InvalidCondition(f"device: unknown device type {t!r}")
        object.__setattr__(self, "device_types", types)
        object.__setattr__(self, "platforms", tuple(str(p) for p in self.platforms))

    def is_empty(self) -> bool:
        return not self.device_types and not self.platforms

    def matches(self, ctx: AccessContext) -> bool:
        info = describe_user_agent(ctx.user_agent)
        if self.device_types and info.device_type not in self.device_types:
            return False
        if self.platforms and info.os.lower() not in {p.lower() for p in self.platforms}:
            return False
        return True


@dataclass(frozen=True)
class TimeCondition:
    """Weekday set and/or an hour window [start_hour, end_hour).

    Both parts must hold when both are given. Hours are 0-24; a window
    needs start_hour < end_hour (no wrap past midnight -- split such a
    window into two policies).
    """

    kind: ClassVar[str] = "time"
    days: tuple[str, ...] = ()
    start_hour: Optional[int] = None
    end_hour: Optional[int] = None

    def __post_init__(self) -> None:
        days = tuple(str(d).strip().lower() for d in self.days)
        for d in days:
            if d not in WEEKDAYS:
                raise InvalidCondition(f"time: unknown weekday {d!r}")
        object.__setattr__(self, "days", days)
        if (self.start_hour is None) != (self.end_hour is None):
            raise InvalidCondition("time: start_hour and end_hour must be given together")
        if self.start_hour is not None:
            start = _as_int(self.start_hour, "start_hour")
            end = _as_int(self.end_hour, "end_hour")
            if not (0 <= start < end <= 24):
                raise InvalidCondition("time: hours must satisfy 0 <= start_hour < end_hour <= 24")
            object.__setattr__(self, "start_hour", start)
            object.__setattr__(self, "end_hour", end)

    def is_empty(self) -> bool:
        return not self.days and self.start_hour is None

    def matches(self, ctx: AccessContext) -> bool:
        if self.days and WEEKDAYS[ctx.now.weekday()] not in self.days:
            return False
        if self.start_hour is not None and not (self.start_hour <= ctx.now.hour < self.end_hour):
            return False
        return True


@dataclass(frozen=True)
class RiskCondition:
    """Matches when the login's risk score lies in [min_score, max_score].

    Outside a login (no score available) the condition does not match.
    """

    kind: ClassVar[str] = "risk"
    min_score: Optional[int] = None
    max_score: Optional[int] = None

    def __post_init__(self) -> None:
        for name in ("min_score", "max_score"):
            value = getattr(self, name)
            if value is not None:
                value = _as_int(value, name)
                if not 0 <= value <= 100:
                    raise InvalidCondition(f"risk: {name} must be within 0..100")
                object.__setattr__(self, name, value)
        if self.min_score is not None and self.max_score is not None and self.min_score > self.max_score:
            raise InvalidCondition("risk: min_score exceeds max_score")

    def is_empty(self) -> bool:
        return self.min_score is None and self.max_score is None

    def matches(self, ctx: AccessContext) -> bool:
        if ctx.risk_score is None:
            return False
        if self.min_score is not None and ctx.risk_score < self.min_score:
            return False
        if self.max_score is not None and ctx.risk_score > self.max_score:
            return False
        return True


Condition = Union[UserCondition, AppCondition, IPCondition, DeviceCondition, TimeCondition, RiskCondition]

_CONDITION_TYPES: dict[str, type] = {
    cls.kind: cls for cls in (UserCondition, AppCondition, IPCondition, DeviceCondition, TimeCondition, RiskCondition)
}


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PolicyActions:
    """What a matching policy does. session_duration is in minutes; 0 = no override."""

    block: bool = False
    allow: bool = False
    require_mfa: bool = False
    require_password_change: bool = False
    session_duration: int = 0

    def __post_init__(self) -> None:
        if self.session_duration < 0:
            raise InvalidCondition("actions: session_duration cannot be negative")

    @classmethod
    def from_dict(cls, data: dict) -> "PolicyActions":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise InvalidCondition(f"actions: unknown keys {sorted(unknown)}")
        return cls(
            block=bool(data.get("block", False)),
            allow=bool(data.get("allow", False)),
            require_mfa=bool(data.get("require_mfa", False)),
            require_password_change=bool(data.get("require_password_change", False)),
            session_duration=_as_int(data.get("session_duration", 0), "session_duration"),
        )

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


# ---------------------------------------------------------------------------
# (De)serialization
# ---------------------------------------------------------------------------


def parse_conditions(data: dict) -> tuple[Condition, ...]:
    """Build typed conditions from {"kind": {...fields}}. Empty categories are dropped.

    Raises InvalidCondition on unknown categories, unknown fields or bad values.
    """
    if not isinstance(data, dict):
        raise InvalidCondition("conditions must be an object keyed by category")
    parsed: list[Condition] = []
    for kind, body in data.items():
        cls = _CONDITION_TYPES.get(kind)
        if cls is None:
            raise InvalidCondition(f"unknown condition category {kind!r}")
        if not isinstance(body, dict):
            raise InvalidCondition(f"{kind}: expected an object")
        allowed = {f.name for f in fields(cls)}
        unknown = set(body) - allowed
        if unknown:
            raise InvalidCondition(f"{kind}: unknown keys {sorted(unknown)}")
        kwargs = {k: tuple(v) if isinstance(v, list) else v for k, v in body.items()}
        try:
            condition = cls(**kwargs)
        except TypeError as exc:
            raise InvalidCondition(f"{kind}: {exc}") from exc
        if not condition.is_empty():
            parsed.append(condition)
    return tuple(parsed)


def conditions_to_dict(conditions: tuple[Condition, ...]) -> dict:
    out: dict = {}
    for condition in conditions:
        body = {}
        for f in fields(condition):
            value = getattr(condition, f.name)
            body[f.name] = list(value) if isinstance(value, tuple) else value
        out[condition.kind] = body
    return out


def _as_int(value, name: str) -> int:
    if isinstance(value, bool):
        raise InvalidCondition(f"{name}: expected an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidCondition(f"{name}: expected an integer") from exc


# ---------------------------------------------------------------------------
# Aggregate
# ---------------------------------------------------------------------------


@dataclass
class Policy:
    """A named, prioritized rule. Higher priority is evaluated first."""

    name: str
    conditions: tuple[Condition, ...] = ()
    actions: PolicyActions = PolicyActions()
    priority: int = 0
    enabled: bool = True
    description: str = ""
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    def matches(self, ctx: AccessContext) -> bool:
        return all(condition.matches(ctx) for condition in self.conditions)
