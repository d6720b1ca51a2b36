"""
core/errors.py -- Domain error taxonomy shared by every authentication path.

Each error carries a stable machine code and the HTTP status the first-party
API maps it to. Protocol endpoints (OAuth2, SAML, CAS) translate these into
their own vocabularies instead of exposing them directly.

Security:
  InvalidCredential is deliberately used for unknown user, disabled user and
  wrong password alike. Callers must not subclass it per cause -- the
  response must not reveal which one happened.

  StoreUnavailable is raised when the ephemeral store cannot be reached. It
  is a terminal failure: an artifact that cannot be looked up is never
  treated as valid.

Layer rule: core/ is the kernel. No imports from other project packages.
"""

from __future__ import annotations


class IdentityError(Exception):
    """Base class for failures surfaced to the caller of an auth operation."""

    code = "identity_error"
    status_code = 400
    default_message = "Request could not be completed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidCredential(IdentityError):
    code = "invalid_credentials"
    status_code = 401
    default_message = "Invalid username or password."


class AccountDisabled(IdentityError):
    code = "account_disabled"
    status_code = 403
    default_message = "Account is not active."


class MFARequired(IdentityError):
    code = "mfa_required"
    status_code = 401
    default_message = "MFA code required."


class MFAInvalid(IdentityError):
    code = "mfa_invalid"
    status_code = 401
    default_message = "Invalid MFA code."


class PolicyBlocked(IdentityError):
    code = "policy_blocked"
    status_code = 403
    default_message = "Access blocked by policy."


class InvalidArtifact(IdentityError):
    """Expired, unknown or already-redeemed code, ticket or token."""

    code = "invalid_artifact"
    status_code = 400
    default_message = "The supplied token is invalid or has expired."


class InvalidClient(IdentityError):
    code = "invalid_client"
    status_code = 401
    default_message = "Client authentication failed."


class StoreUnavailable(IdentityError):
    code = "store_unavailable"
    status_code = 503
    default_message = "Credential store unavailable."


class DuplicateAccount(IdentityError):
    code = "conflict"
    status_code = 409
    default_message = "A user with that username or email already exists."


class WeakPassword(IdentityError):
    code = "weak_password"
    status_code = 400
    default_message = "Password must be at least 8 characters."
