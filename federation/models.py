"""
federation/models.py -- Dataclasses for relying-party registrations.

An Application is the unit conditional access policies target (app_ids).
Each application speaks one protocol and carries the matching config:

  oauth2  -> one or more OAuthClient rows
  saml    -> exactly one SAMLConfig row
  cas     -> no extra config (services are matched per ticket)

OAuthClient.client_secret_hash is HMAC-SHA256 of the secret (see
auth.tokens.hash_token); the plaintext is shown once at creation time.
An empty grant_types list means every supported grant is allowed.

Layer rule: no project imports.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

PROTOCOLS = ("oauth2", "saml", "cas")

EMAIL_NAME_ID = "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress"

DEFAULT_ATTRIBUTE_MAP = {
    "email": "email",
    "username": "username",
    "name": "display_name",
    "roles": "roles",
}

# User fields an attribute_map may release to a service provider. Credentials
# and internal state (hashed_password, status, mfa_enabled) are never listed.
RELEASABLE_FIELDS = frozenset(
    {"id", "username", "email", "email_verified", "display_name", "phone", "phone_verified", "avatar_url", "roles"}
)


class InvalidAttributeMap(ValueError):
    pass


def validate_attribute_map(attribute_map: dict) -> dict:
    """Return attribute_map unchanged, or raise InvalidAttributeMap naming the first bad entry."""
    for attr_name, field_name in attribute_map.items():
        if not isinstance(attr_name, str) or not attr_name:
            raise InvalidAttributeMap(f"attribute name {attr_name!r} must be a non-empty string")
        if field_name not in RELEASABLE_FIELDS:
            raise InvalidAttributeMap(f"{attr_name}: user field {field_name!r} cannot be released")
    return attribute_map


@dataclass
class Application:
    name: str
    protocol: str
    enabled: bool = True
    description: str = ""
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class OAuthClient:
    application_id: int
    client_id: str
    client_secret_hash: str
    redirect_uris: list[str] = field(default_factory=list)
    grant_types: list[str] = field(default_factory=list)
    scopes: list[str] = field(default_factory=list)
    id: int | None = None
    created_at: datetime | None = None

    def allows_grant(self, grant_type: str) -> bool:
        return not self.grant_types or grant_type in self.grant_types


@dataclass
class OAuthToken:
    """Persistent record of an issued OAuth2 token pair (hashes only)."""

    client_id: str
    access_token_hash: str
    expires_at: datetime
    user_id: int | None = None
    refresh_token_hash: str = ""
    scope: str = ""
    token_type: str = "Bearer"
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class SAMLConfig:
    """Per-SP settings.

    entity_id is the service provider's entity id -- the Audience of every
    assertion issued to it. acs_url is where the POST binding delivers the
    Response. certificate/private_key (PEM) are the IdP signing pair used
    for this SP.
    """

    application_id: int
    entity_id: str
    acs_url: str
    certificate: str
    private_key: str
    slo_url: str = ""
    attribute_map: dict = field(default_factory=lambda: dict(DEFAULT_ATTRIBUTE_MAP))
    name_id_format: str = EMAIL_NAME_ID
    id: int | None = None
    created_at: datetime | None = None
