"""
policy/store.py -- SQLAlchemy Core persistence for conditional access policies.

Pattern: Repository + Data Mapper (same shape as auth/store.py).

Conditions and actions are stored as JSON text. They are validated on the
way in (create_policy receives already-typed objects, and create_from_dict
runs parse_conditions) and parsed back into typed objects on the way out,
so the evaluator only ever sees validated Condition instances.

list_enabled() fixes the evaluation order: priority DESC, then insertion
order (id ASC) for ties.

Layer rule: imports core/ and policy/ only (plus auth.store's engine helper).
"""

from __future__ import annotations

import json
from pathlib import Path

from sqlalchemy import Column, Integer, MetaData, String, Table, Text

from auth.store import from_iso, make_engine, now_utc, to_iso
from policy.conditions import Policy, PolicyActions, conditions_to_dict, parse_conditions

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'gatekeeper_policy.db'}"

_metadata = MetaData()

_policies = Table(
    "conditional_access_policies",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("enabled", Integer, nullable=False, server_default="1"),
    Column("priority", Integer, nullable=False, server_default="0"),
    Column("conditions", Text, nullable=False),  # JSON, see conditions_to_dict()
    Column("actions", Text, nullable=False),  # JSON, see PolicyActions.to_dict()
    Column("created_at", String(32), nullable=False),
)


class PolicyStore:
    """Repository for ConditionalAccessPolicy records.

    Usage:
        store = PolicyStore()
        store.create_from_dict({
            "name": "Block outside office",
            "priority": 100,
            "conditions": {"ip": {"ranges": ["10.0.0.0/8"]}},
            "actions": {"block": True},
        })
        store.list_enabled()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    def create_policy(self, policy: Policy) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _policies.insert().values(
                    name=policy.name,
                    description=policy.description,
                    enabled=1 if policy.enabled else 0,
                    priority=policy.priority,
                    conditions=json.dumps(conditions_to_dict(policy.conditions)),
                    actions=json.dumps(policy.actions.to_dict()),
                    created_at=to_iso(now_utc()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def create_from_dict(self, data: dict) -> int:
        """Validate an untrusted policy payload and save it.

        Raises policy.conditions.InvalidCondition on any bad field.
        """
        policy = Policy(
            name=str(data["name"]),
            description=str(data.get("description", "")),
            enabled=bool(data.get("enabled", True)),
            priority=int(data.get("priority", 0)),
            conditions=parse_conditions(data.get("conditions") or {}),
            actions=PolicyActions.from_dict(data.get("actions") or {}),
        )
        return self.create_policy(policy)

    def get_policy(self, policy_id: int) -> Policy | None:
        with self.engine.connect() as conn:
            row = conn.execute(_policies.select().where(_policies.c.id == policy_id)).fetchone()
        return _row_to_policy(row) if row is not None else None

    def list_policies(self) -> list[Policy]:
        with self.engine.connect() as conn:
            rows = conn.execute(_policies.select().order_by(_policies.c.priority.desc(), _policies.c.id)).fetchall()
        return [_row_to_policy(r) for r in rows]

    def list_enabled(self) -> list[Policy]:
        """Enabled policies in evaluation order: priority DESC, id ASC."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _policies.select()
                .where(_policies.c.enabled == 1)
                .order_by(_policies.c.priority.desc(), _policies.c.id)
            ).fetchall()
        return [_row_to_policy(r) for r in rows]

    def set_enabled(self, policy_id: int, enabled: bool) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _policies.update().where(_policies.c.id == policy_id).values(enabled=1 if enabled else 0)
            )
            conn.commit()
        return result.rowcount > 0


def _row_to_policy(row) -> Policy:
    return Policy(
        id=row.id,
        name=row.name,
        description=row.description or "",
        enabled=bool(row.enabled),
        priority=row.priority,
        conditions=parse_conditions(json.loads(row.conditions)),
        actions=PolicyActions.from_dict(json.loads(row.actions)),
        created_at=from_iso(row.created_at),
    )
