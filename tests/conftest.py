"""
tests/conftest.py -- Shared test fixtures for Gatekeeper.

This module provides:
  - make_stores(): isolated in-memory DBs for users, policies and federation
  - build_services(): the full service graph over those stores, no HTTP
  - _patch_lifespan(): wires test stores into app.state via wire_services
  - api_client: TestClient over the real app with a registered test user
  - signing_pair: a throwaway RSA key and self-signed certificate (PEM)

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.

Risk: TestClient reports its peer as "testclient", which is not an IP
address, so every HTTP login carries a non-zero reputation score. HTTP
fixtures therefore run with on_risk_mfa_unavailable="allow"; unit tests
use private addresses and a fixed clock instead.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, wire_services
from auth.mfa import MFAService
from auth.models import User
from auth.pipeline import LoginPipeline
from auth.risk import RiskEngine
from auth.sessions import SessionIssuer
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import Settings, get_settings
from core.errors import StoreUnavailable
from ephemeral.store import MemoryStore
from federation.store import FederationStore
from notify.delivery import InlineDelivery
from notify.events import EventSink
from notify.notifications import LogTransport, Notifier
from policy.evaluator import ConditionalAccessEvaluator
from policy.store import PolicyStore

# Rate limits are exercised separately; keep them out of functional tests.
limiter.enabled = False

TEST_PASSWORD = "correct-horse-battery"


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _memory_url(name: str) -> str:
    return f"sqlite:///file:test_{name}?mode=memory&cache=shared&uri=true"


def make_stores(db_suffix: str | None = None) -> tuple[UserStore, PolicyStore, FederationStore]:
    """Create isolated named shared-memory SQLite stores.

    Args:
        db_suffix: Unique string appended to the DB names so test modules
                   don't share state. A random one is used when omitted.
    """
    suffix = db_suffix or uuid.uuid4().hex[:12]
    return (
        UserStore(db_url=_memory_url(f"users_{suffix}")),
        PolicyStore(db_url=_memory_url(f"policy_{suffix}")),
        FederationStore(db_url=_memory_url(f"federation_{suffix}")),
    )


def create_user(users: UserStore, username: str = "alice", password: str = TEST_PASSWORD, **fields) -> User:
    user = User(
        username=username,
        email=fields.pop("email", f"{username}@example.com"),
        hashed_password=hash_password(password),
        display_name=fields.pop("display_name", username.title()),
        **fields,
    )
    user_id = users.create_user(user, roles=fields.get("roles") or ["user"])
    return users.get_by_id(user_id)


def settings_with(**overrides) -> Settings:
    return get_settings().model_copy(update=overrides)


def daytime_clock() -> datetime:
    """Today at 12:00 UTC -- never off-hours."""
    return datetime.now(timezone.utc).replace(hour=12, minute=0, second=0, microsecond=0)


def night_clock() -> datetime:
    """Today at 03:00 UTC -- always off-hours."""
    return datetime.now(timezone.utc).replace(hour=3, minute=0, second=0, microsecond=0)


# ---------------------------------------------------------------------------
# Service graph without HTTP
# ---------------------------------------------------------------------------


class RecordingTransport(LogTransport):
    """LogTransport that also keeps every message for assertions."""

    def __init__(self) -> None:
        self.sent = []

    def send(self, message) -> None:
        super().send(message)
        self.sent.append(message)


class RecordingEvents(EventSink):
    """EventSink with no webhook URLs that remembers what it was asked to emit."""

    def __init__(self) -> None:
        super().__init__(InlineDelivery(), [])
        self.emitted: list[tuple[str, dict]] = []

    def emit(self, event: str, data: dict) -> None:
        super().emit(event, data)
        self.emitted.append((event, data))


class UnreachableStore(MemoryStore):
    """MemoryStore whose artifact operations fail the way RedisStore does when Redis is down."""

    def put(self, key: str, value: dict, ttl: int) -> None:
        raise StoreUnavailable()

    def get(self, key: str):
        raise StoreUnavailable()

    def get_and_delete(self, key: str):
        raise StoreUnavailable()

    def incr(self, key: str, ttl: int) -> int:
        raise StoreUnavailable()


@dataclass
class Services:
    users: UserStore
    policies: PolicyStore
    federation: FederationStore
    ephemeral: MemoryStore
    settings: Settings
    transport: RecordingTransport
    events: RecordingEvents
    risk: RiskEngine
    sessions: SessionIssuer
    mfa: MFAService
    pipeline: LoginPipeline

    def close(self) -> None:
        self.users.close()
        self.policies.close()
        self.federation.close()


def build_services(clock=daytime_clock, **setting_overrides) -> Services:
    users, policies, federation = make_stores()
    ephemeral = MemoryStore()
    settings = settings_with(**setting_overrides)
    transport = RecordingTransport()
    notifier = Notifier(transport, InlineDelivery(), settings.reset_link_base)
    events = RecordingEvents()
    risk = RiskEngine(users, ephemeral, clock=clock)
    evaluator = ConditionalAccessEvaluator(policies, clock=clock)
    sessions = SessionIssuer(users, ephemeral, settings)
    mfa = MFAService(users, ephemeral, notifier, settings)
    pipeline = LoginPipeline(users, ephemeral, risk, evaluator, sessions, mfa, notifier, events, settings)
    return Services(
        users=users,
        policies=policies,
        federation=federation,
        ephemeral=ephemeral,
        settings=settings,
        transport=transport,
        events=events,
        risk=risk,
        sessions=sessions,
        mfa=mfa,
        pipeline=pipeline,
    )


@pytest.fixture
def services() -> Generator[Services, None, None]:
    svc = build_services()
    yield svc
    svc.close()


# ---------------------------------------------------------------------------
# Signing material
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def signing_pair() -> tuple[str, str]:
    """Return (certificate_pem, private_key_pem) for a throwaway RSA key."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "gatekeeper-test")])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .sign(key, hashes.SHA256())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    return cert_pem, key_pem


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(
    users: UserStore,
    policies: PolicyStore,
    federation: FederationStore,
    ephemeral: MemoryStore,
    settings: Settings,
):
    """Return an async context manager that replaces the real lifespan.

    Runs the production wire_services() over pre-created test stores, with
    inline delivery so notifications happen before the response returns.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, settings, users, policies, federation, ephemeral, delivery=InlineDelivery())
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@dataclass
class ApiContext:
    client: TestClient
    users: UserStore
    policies: PolicyStore
    federation: FederationStore
    ephemeral: MemoryStore
    user: User


@pytest.fixture(scope="module")
def api_client(request) -> Generator[ApiContext, None, None]:
    """Yield an ApiContext for HTTP integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use isolated in-memory stores.
    follow_redirects=False so tests can assert on redirect locations.
    """
    users, policies, federation = make_stores(request.module.__name__.rsplit(".", 1)[-1])
    ephemeral = MemoryStore()
    user = create_user(users, "alice")

    app.router.lifespan_context = _patch_lifespan(
        users, policies, federation, ephemeral, settings_with(on_risk_mfa_unavailable="allow")
    )

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield ApiContext(client, users, policies, federation, ephemeral, user)

    users.close()
    policies.close()
    federation.close()


def login(client: TestClient, username: str = "alice", password: str = TEST_PASSWORD, **extra):
    return client.post("/api/v1/auth/login", json={"username": username, "password": password, **extra})
