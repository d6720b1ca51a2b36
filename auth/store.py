"""
auth/store.py -- SQLAlchemy Core persistence layer for authentication entities.

Pattern: Repository + Data Mapper.
UserStore is the repository; the _row_to_* functions are the mappers.
Route, pipeline and engine code never touches SQL directly.

Every read returns a fully populated value object. get_by_id() and
get_by_login() attach the user's role names in the same connection -- no
caller ever has to "load" roles afterwards.

Security:
  All queries use bound parameters. No f-strings in SQL.

  login_attempts is append-only: there is an insert and a select, and no
  update or delete method exists for it.

  sessions.token_hash holds HMAC-SHA256 of the access token. The raw token
  is never persisted.

Timestamps are stored as ISO 8601 UTC text with fixed microsecond precision
so that string comparison in SQL (expires_at < :now) orders correctly.

Layer rule: no imports from api/, federation/, policy/, or notify/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import Device, LoginAttempt, MFADevice, Session, User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'gatekeeper_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),
    Column("display_name", String(255), nullable=False, server_default=""),
    Column("phone", String(32), nullable=False, server_default=""),
    Column("phone_verified", Integer, nullable=False, server_default="0"),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("avatar_url", Text, nullable=False, server_default=""),
    Column("status", String(16), nullable=False, server_default="active"),
    Column("mfa_enabled", Integer, nullable=False, server_default="0"),
    Column("last_login_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("user_id", Integer, nullable=False),
    Column("role", String(64), nullable=False),
    UniqueConstraint("user_id", "role"),
)

_devices = Table(
    "devices",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("device_id", String(64), nullable=False),
    Column("device_name", String(255), nullable=False),
    Column("device_type", String(16), nullable=False),
    Column("os", String(64), nullable=False),
    Column("browser", String(64), nullable=False),
    Column("ip_address", String(64), nullable=False),
    Column("user_agent", Text, nullable=False),
    Column("trusted", Integer, nullable=False, server_default="0"),
    Column("first_seen_at", String(32), nullable=False),
    Column("last_seen_at", String(32), nullable=False),
    Column("login_count", Integer, nullable=False, server_default="0"),
    Column("failed_login_count", Integer, nullable=False, server_default="0"),
    UniqueConstraint("user_id", "device_id"),
)

_login_attempts = Table(
    "login_attempts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer),  # NULL when the submitted username resolved to nobody
    Column("username", String(255), nullable=False),
    Column("ip_address", String(64), nullable=False),
    Column("user_agent", Text, nullable=False),
    Column("device_id", String(64), nullable=False),
    Column("success", Integer, nullable=False),
    Column("risk_score", Integer, nullable=False),
    Column("mfa_required", Integer, nullable=False),
    Column("failure_reason", String(64), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_mfa_devices = Table(
    "mfa_devices",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("method", String(16), nullable=False),  # "totp", "sms", "email"
    Column("name", String(255), nullable=False),
    Column("secret", Text, nullable=False),
    Column("contact", String(255), nullable=False),
    Column("verified", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("ip_address", String(64), nullable=False),
    Column("user_agent", Text, nullable=False),
    Column("token_hash", String(64), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    """Create an engine with the SQLite settings every store needs.

    check_same_thread=False because FastAPI runs sync routes on a thread pool.
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users, roles, devices, login attempts, MFA devices and sessions.

    Usage:
        store = UserStore()
        uid = store.create_user(User(username="alice", email="a@example.com",
                                     hashed_password=hash_password("secret")), roles=["admin"])
        user = store.get_by_login("a@example.com")   # username OR email
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except Exception:
            return False

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User, roles: list[str] | None = None) -> int:
        """Insert a new user (and its roles) and return the assigned ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email already
        exists. Callers that pre-check with exists() still need to handle it:
        two concurrent registrations can both pass the pre-check.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    email=user.email,
                    hashed_password=user.hashed_password,
                    display_name=user.display_name,
                    phone=user.phone,
                    phone_verified=1 if user.phone_verified else 0,
                    email_verified=1 if user.email_verified else 0,
                    avatar_url=user.avatar_url,
                    status=user.status,
                    mfa_enabled=1 if user.mfa_enabled else 0,
                    created_at=to_iso(now_utc()),
                )
            )
            user_id = result.inserted_primary_key[0]
            for role in sorted(set(roles or user.roles)):
                conn.execute(_user_roles.insert().values(user_id=user_id, role=role))
            conn.commit()
        return user_id

    def exists(self, username: str, email: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_users.c.id).where(or_(_users.c.username == username, _users.c.email == email))
            ).fetchone()
        return row is not None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
            if row is None:
                return None
            return _row_to_user(row, self._roles(conn, row.id))

    def get_by_login(self, identifier: str) -> User | None:
        """Look up a user by exact username OR exact email. None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(or_(_users.c.username == identifier, _users.c.email == identifier))
            ).fetchone()
            if row is None:
                return None
            return _row_to_user(row, self._roles(conn, row.id))

    def get_by_email(self, email: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
            if row is None:
                return None
            return _row_to_user(row, self._roles(conn, row.id))

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable columns on an existing user.

        Accepted fields: hashed_password, display_name, phone, phone_verified,
        email_verified, avatar_url, status, mfa_enabled. Booleans are converted
        to 0/1. Returns True if a row was updated.
        """
        allowed = {
            "hashed_password",
            "display_name",
            "phone",
            "phone_verified",
            "email_verified",
            "avatar_url",
            "status",
            "mfa_enabled",
        }
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        for flag in ("phone_verified", "email_verified", "mfa_enabled"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int, when: datetime | None = None) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _users.update().where(_users.c.id == user_id).values(last_login_at=to_iso(when or now_utc()))
            )
            conn.commit()

    @staticmethod
    def _roles(conn, user_id: int) -> list[str]:
        rows = conn.execute(
            select(_user_roles.c.role).where(_user_roles.c.user_id == user_id).order_by(_user_roles.c.role)
        ).fetchall()
        return [r.role for r in rows]

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    def get_device(self, user_id: int, device_id: str) -> Device | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _devices.select().where((_devices.c.user_id == user_id) & (_devices.c.device_id == device_id))
            ).fetchone()
        return _row_to_device(row) if row is not None else None

    def create_device(self, device: Device) -> int:
        """Insert a device. Raises IntegrityError if (user_id, device_id) exists."""
        seen = to_iso(device.first_seen_at or now_utc())
        with self.engine.connect() as conn:
            result = conn.execute(
                _devices.insert().values(
                    user_id=device.user_id,
                    device_id=device.device_id,
                    device_name=device.device_name,
                    device_type=device.device_type,
                    os=device.os,
                    browser=device.browser,
                    ip_address=device.ip_address,
                    user_agent=device.user_agent,
                    trusted=1 if device.trusted else 0,
                    first_seen_at=seen,
                    last_seen_at=to_iso(device.last_seen_at) or seen,
                    login_count=device.login_count,
                    failed_login_count=device.failed_login_count,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def touch_device(
        self,
        device_pk: int,
        when: datetime,
        count_login: bool = False,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Refresh last_seen_at, optionally bumping login_count and the network details."""
        values: dict = {"last_seen_at": to_iso(when)}
        if count_login:
            values["login_count"] = _devices.c.login_count + 1
        if ip_address is not None:
            values["ip_address"] = ip_address
        if user_agent is not None:
            values["user_agent"] = user_agent
        with self.engine.connect() as conn:
            conn.execute(_devices.update().where(_devices.c.id == device_pk).values(**values))
            conn.commit()

    def record_device_failure(self, user_id: int, device_id: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _devices.update()
                .where((_devices.c.user_id == user_id) & (_devices.c.device_id == device_id))
                .values(failed_login_count=_devices.c.failed_login_count + 1)
            )
            conn.commit()

    def set_device_trusted(self, user_id: int, device_id: str, trusted: bool) -> bool:
        """Mark a device trusted/untrusted. Scoped to user_id [IDOR guard]."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _devices.update()
                .where((_devices.c.user_id == user_id) & (_devices.c.device_id == device_id))
                .values(trusted=1 if trusted else 0)
            )
            conn.commit()
        return result.rowcount > 0

    def list_devices(self, user_id: int) -> list[Device]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _devices.select().where(_devices.c.user_id == user_id).order_by(_devices.c.last_seen_at.desc())
            ).fetchall()
        return [_row_to_device(r) for r in rows]

    def delete_device(self, user_id: int, device_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _devices.delete().where((_devices.c.user_id == user_id) & (_devices.c.device_id == device_id))
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Login attempts (append-only)
    # ------------------------------------------------------------------

    def record_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt:
        """Append an attempt and return it with id and created_at filled in."""
        created = attempt.created_at or now_utc()
        with self.engine.connect() as conn:
            result = conn.execute(
                _login_attempts.insert().values(
                    user_id=attempt.user_id,
                    username=attempt.username,
                    ip_address=attempt.ip_address,
                    user_agent=attempt.user_agent,
                    device_id=attempt.device_id,
                    success=1 if attempt.success else 0,
                    risk_score=attempt.risk_score,
                    mfa_required=1 if attempt.mfa_required else 0,
                    failure_reason=attempt.failure_reason,
                    created_at=to_iso(created),
                )
            )
            conn.commit()
            attempt_id = result.inserted_primary_key[0]
        attempt.id = attempt_id
        attempt.created_at = created
        return attempt

    def list_login_attempts(
        self,
        user_id: int | None = None,
        username: str | None = None,
        limit: int = 50,
    ) -> list[LoginAttempt]:
        """Most recent attempts first, filtered by user id and/or submitted username."""
        query = _login_attempts.select()
        if user_id is not None:
            query = query.where(_login_attempts.c.user_id == user_id)
        if username is not None:
            query = query.where(_login_attempts.c.username == username)
        query = query.order_by(_login_attempts.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_attempt(r) for r in rows]

    # ------------------------------------------------------------------
    # MFA devices
    # ------------------------------------------------------------------

    def create_mfa_device(self, device: MFADevice) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _mfa_devices.insert().values(
                    user_id=device.user_id,
                    method=device.method,
                    name=device.name,
                    secret=device.secret,
                    contact=device.contact,
                    verified=1 if device.verified else 0,
                    created_at=to_iso(now_utc()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def list_mfa_devices(self, user_id: int, verified_only: bool = False) -> list[MFADevice]:
        query = _mfa_devices.select().where(_mfa_devices.c.user_id == user_id)
        if verified_only:
            query = query.where(_mfa_devices.c.verified == 1)
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_mfa_devices.c.id)).fetchall()
        return [_row_to_mfa_device(r) for r in rows]

    def get_pending_mfa_device(self, user_id: int, method: str) -> MFADevice | None:
        """Most recently created unverified device for a method (enrolment in progress)."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _mfa_devices.select()
                .where(
                    (_mfa_devices.c.user_id == user_id)
                    & (_mfa_devices.c.method == method)
                    & (_mfa_devices.c.verified == 0)
                )
                .order_by(_mfa_devices.c.id.desc())
            ).fetchone()
        return _row_to_mfa_device(row) if row is not None else None

    def mark_mfa_verified(self, device_pk: int) -> None:
        """Verify a device and enable MFA on its owner in one transaction."""
        with self.engine.connect() as conn:
            row = conn.execute(select(_mfa_devices.c.user_id).where(_mfa_devices.c.id == device_pk)).fetchone()
            if row is None:
                return
            conn.execute(_mfa_devices.update().where(_mfa_devices.c.id == device_pk).values(verified=1))
            conn.execute(_users.update().where(_users.c.id == row.user_id).values(mfa_enabled=1))
            conn.commit()

    def delete_mfa_device(self, device_pk: int, user_id: int) -> bool:
        """Delete a device [IDOR guard] and clear mfa_enabled if none verified remain."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _mfa_devices.delete().where((_mfa_devices.c.id == device_pk) & (_mfa_devices.c.user_id == user_id))
            )
            remaining = conn.execute(
                select(func.count())
                .select_from(_mfa_devices)
                .where((_mfa_devices.c.user_id == user_id) & (_mfa_devices.c.verified == 1))
            ).scalar()
            if not remaining:
                conn.execute(_users.update().where(_users.c.id == user_id).values(mfa_enabled=0))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.insert().values(
                    user_id=session.user_id,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    token_hash=session.token_hash,
                    expires_at=to_iso(session.expires_at),
                    created_at=to_iso(session.created_at or now_utc()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def latest_session(self, user_id: int) -> Session | None:
        """Most recently created session for a user, expired or not."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _sessions.select().where(_sessions.c.user_id == user_id).order_by(_sessions.c.id.desc())
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_sessions(self, user_id: int, active_only: bool = True) -> list[Session]:
        query = _sessions.select().where(_sessions.c.user_id == user_id)
        if active_only:
            query = query.where(_sessions.c.expires_at > to_iso(now_utc()))
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_sessions.c.id.desc())).fetchall()
        return [_row_to_session(r) for r in rows]

    def delete_session(self, session_id: int, user_id: int) -> bool:
        """Revoke one session. user_id is checked so callers can only revoke their own."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.delete().where((_sessions.c.id == session_id) & (_sessions.c.user_id == user_id))
            )
            conn.commit()
        return result.rowcount > 0

    def delete_sessions(self, user_id: int) -> int:
        """Revoke every session for a user. Returns the number removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
            conn.commit()
        return result.rowcount

    def purge_expired_sessions(self, now: datetime | None = None) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at < to_iso(now or now_utc())))
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Mappers
# ---------------------------------------------------------------------------


def _row_to_user(row, roles: list[str]) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        display_name=row.display_name or "",
        phone=row.phone or "",
        phone_verified=bool(row.phone_verified),
        email_verified=bool(row.email_verified),
        avatar_url=row.avatar_url or "",
        status=row.status,
        mfa_enabled=bool(row.mfa_enabled),
        last_login_at=from_iso(row.last_login_at),
        created_at=from_iso(row.created_at),
        roles=roles,
    )


def _row_to_device(row) -> Device:
    return Device(
        id=row.id,
        user_id=row.user_id,
        device_id=row.device_id,
        device_name=row.device_name,
        device_type=row.device_type,
        os=row.os,
        browser=row.browser,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        trusted=bool(row.trusted),
        first_seen_at=from_iso(row.first_seen_at),
        last_seen_at=from_iso(row.last_seen_at),
        login_count=row.login_count,
        failed_login_count=row.failed_login_count,
    )


def _row_to_attempt(row) -> LoginAttempt:
    return LoginAttempt(
        id=row.id,
        user_id=row.user_id,
        username=row.username,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        device_id=row.device_id,
        success=bool(row.success),
        risk_score=row.risk_score,
        mfa_required=bool(row.mfa_required),
        failure_reason=row.failure_reason,
        created_at=from_iso(row.created_at),
    )


def _row_to_mfa_device(row) -> MFADevice:
    return MFADevice(
        id=row.id,
        user_id=row.user_id,
        method=row.method,
        name=row.name,
        secret=row.secret,
        contact=row.contact,
        verified=bool(row.verified),
        created_at=from_iso(row.created_at),
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        token_hash=row.token_hash,
        expires_at=from_iso(row.expires_at),
        created_at=from_iso(row.created_at),
    )
