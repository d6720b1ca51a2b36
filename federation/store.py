"""
federation/store.py -- SQLAlchemy Core persistence for applications and
relying-party configuration.

Pattern: Repository + Data Mapper (same shape as auth/store.py). List
columns (redirect_uris, grant_types, scopes) and the SAML attribute map are
JSON text. Lookups return fully populated dataclasses.

Security:
  client_secret_hash, access_token_hash and refresh_token_hash are HMACs.
  The plaintext values never reach this module.

Layer rule: imports core/, auth.store (engine helpers) and federation/ only.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

from sqlalchemy import Column, ForeignKey, Integer, MetaData, String, Table, Text

from auth.store import from_iso, make_engine, now_utc, to_iso
from federation.models import (
    PROTOCOLS,
    Application,
    OAuthClient,
    OAuthToken,
    SAMLConfig,
    validate_attribute_map,
)

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'gatekeeper_federation.db'}"

_metadata = MetaData()

_applications = Table(
    "applications",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("protocol", String(16), nullable=False),  # oauth2 | saml | cas
    Column("enabled", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

_oauth_clients = Table(
    "oauth_clients",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("application_id", Integer, ForeignKey("applications.id"), nullable=False, index=True),
    Column("client_id", String(128), nullable=False, unique=True),
    Column("client_secret_hash", String(64), nullable=False),
    Column("redirect_uris", Text, nullable=False, server_default="[]"),
    Column("grant_types", Text, nullable=False, server_default="[]"),
    Column("scopes", Text, nullable=False, server_default="[]"),
    Column("created_at", String(32), nullable=False),
)

_oauth_tokens = Table(
    "oauth_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("client_id", String(128), nullable=False, index=True),
    Column("user_id", Integer, nullable=True, index=True),
    Column("access_token_hash", String(64), nullable=False, unique=True),
    Column("refresh_token_hash", String(64), nullable=False, server_default=""),
    Column("token_type", String(16), nullable=False, server_default="Bearer"),
    Column("scope", Text, nullable=False, server_default=""),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_saml_configs = Table(
    "saml_configs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("application_id", Integer, ForeignKey("applications.id"), nullable=False, unique=True),
    Column("entity_id", String(512), nullable=False),
    Column("acs_url", String(1024), nullable=False),
    Column("slo_url", String(1024), nullable=False, server_default=""),
    Column("certificate", Text, nullable=False),
    Column("private_key", Text, nullable=False),
    Column("attribute_map", Text, nullable=False, server_default="{}"),
    Column("name_id_format", String(255), nullable=False),
    Column("created_at", String(32), nullable=False),
)


class FederationStore:
    """Repository for applications, OAuth clients/tokens and SAML configs."""

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------

    def create_application(self, app: Application) -> int:
        if app.protocol not in PROTOCOLS:
            raise ValueError(f"Unsupported protocol {app.protocol!r}")
        with self.engine.connect() as conn:
            result = conn.execute(
                _applications.insert().values(
                    name=app.name,
                    description=app.description,
                    protocol=app.protocol,
                    enabled=1 if app.enabled else 0,
                    created_at=to_iso(now_utc()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    # ------------------------------------------------------------------
    # OAuth clients
    # ------------------------------------------------------------------

    def create_oauth_client(self, client: OAuthClient) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _oauth_clients.insert().values(
                    application_id=client.application_id,
                    client_id=client.client_id,
                    client_secret_hash=client.client_secret_hash,
                    redirect_uris=json.dumps(list(client.redirect_uris)),
                    grant_types=json.dumps(list(client.grant_types)),
                    scopes=json.dumps(list(client.scopes)),
                    created_at=to_iso(now_utc()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_oauth_client(self, client_id: str) -> OAuthClient | None:
        """Return the client only if its application exists and is enabled."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _oauth_clients.select()
                .join(_applications, _applications.c.id == _oauth_clients.c.application_id)
                .where((_oauth_clients.c.client_id == client_id) & (_applications.c.enabled == 1))
            ).fetchone()
        return _row_to_client(row) if row is not None else None

    # ------------------------------------------------------------------
    # OAuth tokens
    # ------------------------------------------------------------------

    def record_oauth_token(self, token: OAuthToken) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _oauth_tokens.insert().values(
                    client_id=token.client_id,
                    user_id=token.user_id,
                    access_token_hash=token.access_token_hash,
                    refresh_token_hash=token.refresh_token_hash,
                    token_type=token.token_type,
                    scope=token.scope,
                    expires_at=to_iso(token.expires_at),
                    created_at=to_iso(now_utc()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_oauth_token(self, access_token_hash: str, now: datetime | None = None) -> OAuthToken | None:
        """Return an unexpired token record by access-token hash."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _oauth_tokens.select().where(_oauth_tokens.c.access_token_hash == access_token_hash)
            ).fetchone()
        if row is None:
            return None
        token = _row_to_token(row)
        if token.expires_at <= (now or now_utc()):
            return None
        return token

    # ------------------------------------------------------------------
    # SAML
    # ------------------------------------------------------------------

    def create_saml_config(self, config: SAMLConfig) -> int:
        """Insert a SAML config. Raises InvalidAttributeMap for a field that may not be released."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _saml_configs.insert().values(
                    application_id=config.application_id,
                    entity_id=config.entity_id,
                    acs_url=config.acs_url,
                    slo_url=config.slo_url,
                    certificate=config.certificate,
                    private_key=config.private_key,
                    attribute_map=json.dumps(validate_attribute_map(config.attribute_map)),
                    name_id_format=config.name_id_format,
                    created_at=to_iso(now_utc()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_saml_config(self, app_id: int) -> SAMLConfig | None:
        """SAML config for an enabled application, or None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _saml_configs.select()
                .join(_applications, _applications.c.id == _saml_configs.c.application_id)
                .where((_saml_configs.c.application_id == app_id) & (_applications.c.enabled == 1))
            ).fetchone()
        return _row_to_saml(row) if row is not None else None


def _row_to_client(row) -> OAuthClient:
    return OAuthClient(
        id=row.id,
        application_id=row.application_id,
        client_id=row.client_id,
        client_secret_hash=row.client_secret_hash,
        redirect_uris=json.loads(row.redirect_uris or "[]"),
        grant_types=json.loads(row.grant_types or "[]"),
        scopes=json.loads(row.scopes or "[]"),
        created_at=from_iso(row.created_at),
    )


def _row_to_token(row) -> OAuthToken:
    return OAuthToken(
        id=row.id,
        client_id=row.client_id,
        user_id=row.user_id,
        access_token_hash=row.access_token_hash,
        refresh_token_hash=row.refresh_token_hash or "",
        token_type=row.token_type,
        scope=row.scope or "",
        expires_at=from_iso(row.expires_at),
        created_at=from_iso(row.created_at),
    )


def _row_to_saml(row) -> SAMLConfig:
    return SAMLConfig(
        id=row.id,
        application_id=row.application_id,
        entity_id=row.entity_id,
        acs_url=row.acs_url,
        slo_url=row.slo_url or "",
        certificate=row.certificate,
        private_key=row.private_key,
        attribute_map=json.loads(row.attribute_map or "{}"),
        name_id_format=row.name_id_format,
        created_at=from_iso(row.created_at),
    )
