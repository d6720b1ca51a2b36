"""
federation/saml.py -- SAML 2.0 identity provider (Web Browser SSO + SLO).

Inbound messages:
  AuthnRequest   optional; SP-initiated SSO. base64, raw-DEFLATE when it
                 arrived on the Redirect binding. Parsed with defusedxml.
  LogoutRequest  SP-initiated single logout.

Outbound messages:
  Response       Status + one Assertion, delivered by HTTP-POST binding
                 (auto-submitting form) to the SP's ACS URL.
  LogoutResponse delivered by Redirect binding (GET) or POST form (POST).
  EntityDescriptor metadata for the SP to import.

Assertion signing is an enveloped XML-DSig signature:

  CanonicalizationMethod  http://www.w3.org/2010/xml-c14n2 (C14N 2.0)
  SignatureMethod         rsa-sha256 (PKCS#1 v1.5)
  DigestMethod            sha256 over the canonical Assertion, Signature removed

C14N 2.0 is what the standard library implements (ET.canonicalize), so this
is a simplified, self-consistent profile: verify_assertion_signature() in
this module checks it, and SPs that only accept exclusive C14N 1.0 will not.

Replay protection: the AuthnRequest ID is claimed with
incr("saml:request:{id}", skew) -- the first claim wins, any later one gets
a RequestDenied status. The claim is made only once the user is
authenticated, so bouncing through the login page does not burn the ID.

Security:
  - defusedxml rejects DTDs, entity expansion and external references.
  - An AssertionConsumerServiceURL that differs from the configured ACS URL
    is refused (the Response would otherwise go to an attacker's endpoint).
  - A missing or malformed certificate/key pair raises
    SAMLConfigurationError; the route turns that into a 500. There is no
    unsigned fallback.

Layer rule: imports core/, ephemeral/, auth/ and federation/ only.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import html
import logging
import uuid
import xml.etree.ElementTree as ET
import zlib
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import defusedxml.ElementTree as SafeET
from authlib.common.urls import add_params_to_uri
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from defusedxml import DefusedXmlException

from auth.models import User
from auth.sessions import SessionIssuer
from auth.store import UserStore
from core.config import Settings, get_settings
from core.errors import StoreUnavailable
from ephemeral.store import EphemeralStore
from federation.models import RELEASABLE_FIELDS, SAMLConfig
from federation.store import FederationStore

logger = logging.getLogger("gatekeeper.saml")

SAMLP_NS = "urn:oasis:names:tc:SAML:2.0:protocol"
SAML_NS = "urn:oasis:names:tc:SAML:2.0:assertion"
MD_NS = "urn:oasis:names:tc:SAML:2.0:metadata"
DS_NS = "http://www.w3.org/2000/09/xmldsig#"

ET.register_namespace("samlp", SAMLP_NS)
ET.register_namespace("saml", SAML_NS)
ET.register_namespace("md", MD_NS)
ET.register_namespace("ds", DS_NS)

STATUS_SUCCESS = "urn:oasis:names:tc:SAML:2.0:status:Success"
STATUS_REQUESTER = "urn:oasis:names:tc:SAML:2.0:status:Requester"
STATUS_REQUEST_DENIED = "urn:oasis:names:tc:SAML:2.0:status:RequestDenied"
STATUS_RESPONDER = "urn:oasis:names:tc:SAML:2.0:status:Responder"

BINDING_REDIRECT = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-Redirect"
BINDING_POST = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"
CM_BEARER = "urn:oasis:names:tc:SAML:2.0:cm:bearer"
AC_PASSWORD_PROTECTED = "urn:oasis:names:tc:SAML:2.0:ac:classes:PasswordProtectedTransport"

C14N2 = "http://www.w3.org/2010/xml-c14n2"
ENVELOPED = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"
RSA_SHA256 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"
SHA256 = "http://www.w3.org/2001/04/xmlenc#sha256"

REQUEST_PREFIX = "saml:request:"


class SAMLRequestError(ValueError):
    """Inbound message is malformed or not acceptable for this SP."""


class SAMLConfigurationError(RuntimeError):
    """The SP's signing material is missing or unusable."""


@dataclass(frozen=True)
class AuthnRequest:
    id: str
    issuer: str = ""
    acs_url: str = ""


@dataclass(frozen=True)
class LogoutRequest:
    id: str
    name_id: str
    issuer: str = ""


# ---------------------------------------------------------------------------
# Encoding helpers
# ---------------------------------------------------------------------------


def _q(ns: str, tag: str) -> str:
    return f"{{{ns}}}{tag}"


def _instant(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _new_id() -> str:
    # xs:ID must not start with a digit
    return "_" + uuid.uuid4().hex


def decode_message(encoded: str) -> bytes:
    """base64-decode a SAML message and inflate it if it was DEFLATE-compressed."""
    try:
        raw = base64.b64decode(encoded, validate=False)
    except (binascii.Error, ValueError) as exc:
        raise SAMLRequestError("SAML message is not valid base64") from exc
    if raw.lstrip().startswith(b"<"):
        # POST binding: plain XML
        return raw
    try:
        return zlib.decompress(raw, -15)
    except zlib.error:
        return raw


def deflate_and_encode(xml: str) -> str:
    compressor = zlib.compressobj(wbits=-15)
    data = compressor.compress(xml.encode("utf-8")) + compressor.flush()
    return base64.b64encode(data).decode("ascii")


def _parse(encoded: str, expected_tag: str) -> ET.Element:
    data = decode_message(encoded)
    try:
        root = SafeET.fromstring(data)
    except (ET.ParseError, DefusedXmlException) as exc:
        raise SAMLRequestError("SAML message is not well-formed XML") from exc
    if root.tag != _q(SAMLP_NS, expected_tag):
        raise SAMLRequestError(f"Expected a {expected_tag} message")
    if not root.get("ID"):
        raise SAMLRequestError(f"{expected_tag} has no ID")
    return root


def parse_authn_request(encoded: str) -> AuthnRequest:
    root = _parse(encoded, "AuthnRequest")
    issuer = root.findtext(_q(SAML_NS, "Issuer")) or ""
    return AuthnRequest(id=root.get("ID"), issuer=issuer.strip(), acs_url=root.get("AssertionConsumerServiceURL", ""))


def parse_logout_request(encoded: str) -> LogoutRequest:
    root = _parse(encoded, "LogoutRequest")
    name_id = (root.findtext(_q(SAML_NS, "NameID")) or "").strip()
    if not name_id:
        raise SAMLRequestError("LogoutRequest has no NameID")
    issuer = root.findtext(_q(SAML_NS, "Issuer")) or ""
    return LogoutRequest(id=root.get("ID"), name_id=name_id, issuer=issuer.strip())


def post_form(action: str, field: str, value: str, relay_state: str = "") -> str:
    """HTTP-POST binding: an HTML page that auto-submits one SAML message."""
    relay = (
        f'<input type="hidden" name="RelayState" value="{html.escape(relay_state)}"/>' if relay_state else ""
    )
    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\"><title>Redirecting</title></head>"
        '<body onload="document.forms[0].submit()">'
        f'<form method="post" action="{html.escape(action)}">'
        f'<input type="hidden" name="{field}" value="{html.escape(value)}"/>'
        f"{relay}"
        "<noscript><button type=\"submit\">Continue</button></noscript>"
        "</form></body></html>"
    )


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------


def load_signing_pair(config: SAMLConfig) -> tuple[x509.Certificate, rsa.RSAPrivateKey]:
    if not config.certificate or not config.private_key:
        raise SAMLConfigurationError(f"SAML app {config.application_id} has no signing certificate/key")
    try:
        cert = x509.load_pem_x509_certificate(config.certificate.encode("utf-8"))
        key = serialization.load_pem_private_key(config.private_key.encode("utf-8"), password=None)
    except (ValueError, TypeError) as exc:
        raise SAMLConfigurationError(f"SAML app {config.application_id} has a malformed certificate/key") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise SAMLConfigurationError(f"SAML app {config.application_id} signing key is not RSA")
    return cert, key


def _cert_b64(cert: x509.Certificate) -> str:
    return base64.b64encode(cert.public_bytes(serialization.Encoding.DER)).decode("ascii")


def _c14n(element: ET.Element) -> bytes:
    return ET.canonicalize(ET.tostring(element, encoding="unicode")).encode("utf-8")


def _signed_info(reference_id: str, digest: str) -> ET.Element:
    signed_info = ET.Element(_q(DS_NS, "SignedInfo"))
    ET.SubElement(signed_info, _q(DS_NS, "CanonicalizationMethod"), Algorithm=C14N2)
    ET.SubElement(signed_info, _q(DS_NS, "SignatureMethod"), Algorithm=RSA_SHA256)
    reference = ET.SubElement(signed_info, _q(DS_NS, "Reference"), URI=f"#{reference_id}")
    transforms = ET.SubElement(reference, _q(DS_NS, "Transforms"))
    ET.SubElement(transforms, _q(DS_NS, "Transform"), Algorithm=ENVELOPED)
    ET.SubElement(transforms, _q(DS_NS, "Transform"), Algorithm=C14N2)
    ET.SubElement(reference, _q(DS_NS, "DigestMethod"), Algorithm=SHA256)
    ET.SubElement(reference, _q(DS_NS, "DigestValue")).text = digest
    return signed_info


def sign_element(element: ET.Element, key: rsa.RSAPrivateKey, cert: x509.Certificate) -> None:
    """Insert an enveloped signature into element, right after its Issuer."""
    digest = base64.b64encode(hashlib.sha256(_c14n(element)).digest()).decode("ascii")
    signed_info = _signed_info(element.get("ID"), digest)
    signature_value = key.sign(_c14n(signed_info), padding.PKCS1v15(), hashes.SHA256())

    signature = ET.Element(_q(DS_NS, "Signature"))
    signature.append(signed_info)
    ET.SubElement(signature, _q(DS_NS, "SignatureValue")).text = base64.b64encode(signature_value).decode("ascii")
    key_info = ET.SubElement(signature, _q(DS_NS, "KeyInfo"))
    x509_data = ET.SubElement(key_info, _q(DS_NS, "X509Data"))
    ET.SubElement(x509_data, _q(DS_NS, "X509Certificate")).text = _cert_b64(cert)

    position = 1 if element.find(_q(SAML_NS, "Issuer")) is not None else 0
    element.insert(position, signature)


def verify_assertion_signature(response_xml: bytes | str, certificate_pem: str) -> bool:
    """Check the enveloped signature on the Assertion inside a Response."""
    root = SafeET.fromstring(response_xml)
    assertion = root.find(_q(SAML_NS, "Assertion"))
    if assertion is None:
        return False
    signature = assertion.find(_q(DS_NS, "Signature"))
    if signature is None:
        return False
    signed_info = signature.find(_q(DS_NS, "SignedInfo"))
    reference = signed_info.find(_q(DS_NS, "Reference")) if signed_info is not None else None
    if reference is None or reference.get("URI") != f"#{assertion.get('ID')}":
        return False

    assertion.remove(signature)
    digest = base64.b64encode(hashlib.sha256(_c14n(assertion)).digest()).decode("ascii")
    if digest != reference.findtext(_q(DS_NS, "DigestValue")):
        return False

    encoded_value = signature.findtext(_q(DS_NS, "SignatureValue"))
    if not encoded_value:
        return False
    try:
        signature_value = base64.b64decode(encoded_value, validate=True)
    except (binascii.Error, ValueError):
        return False
    cert = x509.load_pem_x509_certificate(certificate_pem.encode("utf-8"))
    try:
        cert.public_key().verify(signature_value, _c14n(signed_info), padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature:
        return False
    return True


# ---------------------------------------------------------------------------
# Identity provider
# ---------------------------------------------------------------------------


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SAMLIdentityProvider:
    def __init__(
        self,
        federation: FederationStore,
        users: UserStore,
        store: EphemeralStore,
        sessions: SessionIssuer,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._federation = federation
        self._users = users
        self._store = store
        self._sessions = sessions
        self._settings = settings or get_settings()
        self._clock = clock

    def get_config(self, app_id: int) -> Optional[SAMLConfig]:
        return self._federation.get_saml_config(app_id)

    def entity_id(self, app_id: int) -> str:
        return f"{self._settings.public_base_url.rstrip('/')}/saml/metadata?app_id={app_id}"

    def _endpoint(self, path: str, app_id: int) -> str:
        return f"{self._settings.public_base_url.rstrip('/')}/saml/{path}?app_id={app_id}"

    # -- SSO -------------------------------------------------------------

    def read_authn_request(self, config: SAMLConfig, encoded: str) -> AuthnRequest:
        request = parse_authn_request(encoded)
        if request.acs_url and request.acs_url != config.acs_url:
            logger.warning("AuthnRequest %s asked for unregistered ACS %r", request.id, request.acs_url)
            raise SAMLRequestError("AssertionConsumerServiceURL does not match the registered ACS URL")
        return request

    def sso_response(self, config: SAMLConfig, user: User, request: Optional[AuthnRequest] = None) -> str:
        """Build the base64 Response for an authenticated user.

        A replayed request ID yields a RequestDenied Response instead of an
        assertion. If the replay marker cannot be claimed because the store
        is down, the Response carries a Responder status.
        """
        cert, key = load_signing_pair(config)
        in_response_to = request.id if request else None
        if request is not None:
            try:
                claims = self._store.incr(REQUEST_PREFIX + request.id, ttl=self._settings.saml_clock_skew_seconds)
            except StoreUnavailable:
                logger.error("Ephemeral store unavailable -- AuthnRequest %s not answered", request.id)
                return self.error_response(config, STATUS_RESPONDER, "Temporarily unavailable", in_response_to)
            if claims > 1:
                logger.warning("Replayed AuthnRequest %s for app %s", request.id, config.application_id)
                return self.error_response(config, STATUS_REQUEST_DENIED, "Request already processed", in_response_to)

        now = self._clock()
        skew = timedelta(seconds=self._settings.saml_clock_skew_seconds)
        response = self._response_root(config, STATUS_SUCCESS, in_response_to, now)
        assertion = self._assertion(config, user, in_response_to, now, skew)
        sign_element(assertion, key, cert)
        response.append(assertion)
        logger.info("Issued SAML assertion for user %s to app %s", user.id, config.application_id)
        return base64.b64encode(ET.tostring(response, encoding="utf-8")).decode("ascii")

    def error_response(
        self,
        config: SAMLConfig,
        status: str,
        message: str = "",
        in_response_to: Optional[str] = None,
    ) -> str:
        response = self._response_root(config, status, in_response_to, self._clock(), message)
        return base64.b64encode(ET.tostring(response, encoding="utf-8")).decode("ascii")

    def _response_root(
        self,
        config: SAMLConfig,
        status: str,
        in_response_to: Optional[str],
        now: datetime,
        message: str = "",
    ) -> ET.Element:
        attrs = {"ID": _new_id(), "Version": "2.0", "IssueInstant": _instant(now), "Destination": config.acs_url}
        if in_response_to:
            attrs["InResponseTo"] = in_response_to
        response = ET.Element(_q(SAMLP_NS, "Response"), attrs)
        ET.SubElement(response, _q(SAML_NS, "Issuer")).text = self.entity_id(config.application_id)
        response.append(_status(status, message))
        return response

    def _assertion(
        self,
        config: SAMLConfig,
        user: User,
        in_response_to: Optional[str],
        now: datetime,
        skew: timedelta,
    ) -> ET.Element:
        assertion = ET.Element(_q(SAML_NS, "Assertion"), ID=_new_id(), Version="2.0", IssueInstant=_instant(now))
        ET.SubElement(assertion, _q(SAML_NS, "Issuer")).text = self.entity_id(config.application_id)

        subject = ET.SubElement(assertion, _q(SAML_NS, "Subject"))
        ET.SubElement(subject, _q(SAML_NS, "NameID"), Format=config.name_id_format).text = user.email
        confirmation = ET.SubElement(subject, _q(SAML_NS, "SubjectConfirmation"), Method=CM_BEARER)
        data_attrs = {"NotOnOrAfter": _instant(now + skew), "Recipient": config.acs_url}
        if in_response_to:
            data_attrs["InResponseTo"] = in_response_to
        ET.SubElement(confirmation, _q(SAML_NS, "SubjectConfirmationData"), data_attrs)

        conditions = ET.SubElement(
            assertion,
            _q(SAML_NS, "Conditions"),
            NotBefore=_instant(now - skew),
            NotOnOrAfter=_instant(now + skew),
        )
        restriction = ET.SubElement(conditions, _q(SAML_NS, "AudienceRestriction"))
        ET.SubElement(restriction, _q(SAML_NS, "Audience")).text = config.entity_id

        authn = ET.SubElement(
            assertion, _q(SAML_NS, "AuthnStatement"), AuthnInstant=_instant(now), SessionIndex=_new_id()
        )
        context = ET.SubElement(authn, _q(SAML_NS, "AuthnContext"))
        ET.SubElement(context, _q(SAML_NS, "AuthnContextClassRef")).text = AC_PASSWORD_PROTECTED

        attributes = _user_attributes(user, config.attribute_map)
        if attributes:
            statement = ET.SubElement(assertion, _q(SAML_NS, "AttributeStatement"))
            for name, values in attributes.items():
                attribute = ET.SubElement(statement, _q(SAML_NS, "Attribute"), Name=name)
                for value in values:
                    ET.SubElement(attribute, _q(SAML_NS, "AttributeValue")).text = value
        return assertion

    # -- Metadata --------------------------------------------------------

    def metadata(self, config: SAMLConfig) -> str:
        cert, _ = load_signing_pair(config)
        app_id = config.application_id
        root = ET.Element(_q(MD_NS, "EntityDescriptor"), entityID=self.entity_id(app_id))
        idp = ET.SubElement(
            root,
            _q(MD_NS, "IDPSSODescriptor"),
            protocolSupportEnumeration=SAMLP_NS,
            WantAuthnRequestsSigned="false",
        )
        key_descriptor = ET.SubElement(idp, _q(MD_NS, "KeyDescriptor"), use="signing")
        key_info = ET.SubElement(key_descriptor, _q(DS_NS, "KeyInfo"))
        x509_data = ET.SubElement(key_info, _q(DS_NS, "X509Data"))
        ET.SubElement(x509_data, _q(DS_NS, "X509Certificate")).text = _cert_b64(cert)
        for binding in (BINDING_REDIRECT, BINDING_POST):
            ET.SubElement(
                idp, _q(MD_NS, "SingleLogoutService"), Binding=binding, Location=self._endpoint("slo", app_id)
            )
        ET.SubElement(idp, _q(MD_NS, "NameIDFormat")).text = config.name_id_format
        for binding in (BINDING_REDIRECT, BINDING_POST):
            ET.SubElement(
                idp, _q(MD_NS, "SingleSignOnService"), Binding=binding, Location=self._endpoint("sso", app_id)
            )
        return ET.tostring(root, encoding="unicode", xml_declaration=True)

    # -- SLO -------------------------------------------------------------

    def logout(self, config: SAMLConfig, request: LogoutRequest) -> str:
        """Revoke the NameID's sessions and return the LogoutResponse XML."""
        user = self._users.get_by_email(request.name_id) or self._users.get_by_login(request.name_id)
        if user is not None:
            self._sessions.revoke_all(user.id)
            logger.info("SAML SLO from app %s revoked sessions for user %s", config.application_id, user.id)
        return self.logout_response(config, STATUS_SUCCESS, request.id)

    def logout_response(self, config: SAMLConfig, status: str, in_response_to: Optional[str] = None) -> str:
        attrs = {
            "ID": _new_id(),
            "Version": "2.0",
            "IssueInstant": _instant(self._clock()),
            "Destination": config.slo_url,
        }
        if in_response_to:
            attrs["InResponseTo"] = in_response_to
        root = ET.Element(_q(SAMLP_NS, "LogoutResponse"), attrs)
        ET.SubElement(root, _q(SAML_NS, "Issuer")).text = self.entity_id(config.application_id)
        root.append(_status(status))
        return ET.tostring(root, encoding="unicode")

    def logout_redirect(self, config: SAMLConfig, response_xml: str, relay_state: str = "") -> str:
        params = [("SAMLResponse", deflate_and_encode(response_xml))]
        if relay_state:
            params.append(("RelayState", relay_state))
        return add_params_to_uri(config.slo_url, params)


def _status(code: str, message: str = "") -> ET.Element:
    status = ET.Element(_q(SAMLP_NS, "Status"))
    ET.SubElement(status, _q(SAMLP_NS, "StatusCode"), Value=code)
    if message:
        ET.SubElement(status, _q(SAMLP_NS, "StatusMessage")).text = message
    return status


def _user_attributes(user: User, attribute_map: dict) -> dict[str, list[str]]:
    """Map SAML attribute names to user field values.

    Fields outside RELEASABLE_FIELDS are skipped even if a stored map names them.
    """
    out: dict[str, list[str]] = {}
    for attr_name, field_name in attribute_map.items():
        if field_name not in RELEASABLE_FIELDS:
            continue
        value = getattr(user, field_name, None)
        if value is None or value == "":
            continue
        if isinstance(value, (list, tuple)):
            values = [str(v) for v in value]
            if values:
                out[attr_name] = values
        else:
            out[attr_name] = [str(value)]
    return out
