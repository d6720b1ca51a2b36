"""
tests/test_saml.py -- SAML IdP: message parsing, signed assertions, SLO.

The assertion signature is checked with verify_assertion_signature()
against the PEM certificate from the signing_pair fixture, and tampering
with the signed content must break it.
"""

from __future__ import annotations

import base64
import dataclasses
import xml.etree.ElementTree as ET
from urllib.parse import parse_qs, urlparse

import pytest

from conftest import UnreachableStore, create_user, login
from federation.models import Application, InvalidAttributeMap, SAMLConfig
from federation.saml import (
    DS_NS,
    SAML_NS,
    SAMLP_NS,
    STATUS_REQUEST_DENIED,
    STATUS_REQUESTER,
    STATUS_RESPONDER,
    STATUS_SUCCESS,
    SAMLConfigurationError,
    SAMLIdentityProvider,
    SAMLRequestError,
    decode_message,
    deflate_and_encode,
    parse_authn_request,
    parse_logout_request,
    verify_assertion_signature,
)

SP_ENTITY = "https://hr.example.com/saml"
ACS = "https://hr.example.com/saml/acs"
SLO = "https://hr.example.com/saml/slo"


def authn_request_xml(request_id: str = "_req1", acs: str = ACS) -> str:
    return (
        f'<samlp:AuthnRequest xmlns:samlp="{SAMLP_NS}" xmlns:saml="{SAML_NS}" '
        f'ID="{request_id}" Version="2.0" IssueInstant="2024-01-01T00:00:00Z" '
        f'AssertionConsumerServiceURL="{acs}">'
        f"<saml:Issuer>{SP_ENTITY}</saml:Issuer>"
        "</samlp:AuthnRequest>"
    )


def logout_request_xml(name_id: str, request_id: str = "_lr1") -> str:
    return (
        f'<samlp:LogoutRequest xmlns:samlp="{SAMLP_NS}" xmlns:saml="{SAML_NS}" '
        f'ID="{request_id}" Version="2.0" IssueInstant="2024-01-01T00:00:00Z">'
        f"<saml:Issuer>{SP_ENTITY}</saml:Issuer>"
        f"<saml:NameID>{name_id}</saml:NameID>"
        "</samlp:LogoutRequest>"
    )


def b64(xml: str) -> str:
    return base64.b64encode(xml.encode("utf-8")).decode("ascii")


def register_sp(federation, signing_pair, slo_url: str = SLO) -> SAMLConfig:
    cert_pem, key_pem = signing_pair
    app_id = federation.create_application(Application(name="HR", protocol="saml"))
    federation.create_saml_config(
        SAMLConfig(
            application_id=app_id,
            entity_id=SP_ENTITY,
            acs_url=ACS,
            slo_url=slo_url,
            certificate=cert_pem,
            private_key=key_pem,
        )
    )
    return federation.get_saml_config(app_id)


@pytest.fixture
def idp(services) -> SAMLIdentityProvider:
    return SAMLIdentityProvider(
        services.federation, services.users, services.ephemeral, services.sessions, services.settings
    )


def _status(response_xml: bytes) -> str:
    root = ET.fromstring(response_xml)
    return root.find(f"{{{SAMLP_NS}}}Status/{{{SAMLP_NS}}}StatusCode").get("Value")


class TestParsing:
    def test_post_binding_request(self) -> None:
        request = parse_authn_request(b64(authn_request_xml()))
        assert request.id == "_req1"
        assert request.issuer == SP_ENTITY
        assert request.acs_url == ACS

    def test_redirect_binding_request_is_inflated(self) -> None:
        encoded = deflate_and_encode(authn_request_xml("_req2"))
        assert parse_authn_request(encoded).id == "_req2"
        assert b"AuthnRequest" in decode_message(encoded)

    def test_wrong_message_type(self) -> None:
        with pytest.raises(SAMLRequestError):
            parse_authn_request(b64(logout_request_xml("alice@example.com")))

    def test_garbage(self) -> None:
        with pytest.raises(SAMLRequestError):
            parse_authn_request(b64("<not-closed"))

    def test_entity_expansion_is_refused(self) -> None:
        bomb = (
            '<?xml version="1.0"?><!DOCTYPE lolz [<!ENTITY lol "lol">]>'
            f'<samlp:AuthnRequest xmlns:samlp="{SAMLP_NS}" ID="_x">&lol;</samlp:AuthnRequest>'
        )
        with pytest.raises(SAMLRequestError):
            parse_authn_request(b64(bomb))

    def test_logout_request_needs_name_id(self) -> None:
        request = parse_logout_request(b64(logout_request_xml("alice@example.com")))
        assert request.name_id == "alice@example.com"
        with pytest.raises(SAMLRequestError):
            parse_logout_request(b64(logout_request_xml("")))


class TestSSO:
    def test_signed_assertion_for_authenticated_user(self, services, idp, signing_pair) -> None:
        config = register_sp(services.federation, signing_pair)
        user = create_user(services.users)
        request = idp.read_authn_request(config, b64(authn_request_xml()))

        response_xml = base64.b64decode(idp.sso_response(config, user, request))
        assert _status(response_xml) == STATUS_SUCCESS
        assert verify_assertion_signature(response_xml, signing_pair[0])

        root = ET.fromstring(response_xml)
        assert root.get("InResponseTo") == "_req1"
        assert root.get("Destination") == ACS
        assertion = root.find(f"{{{SAML_NS}}}Assertion")
        assert assertion.findtext(f"{{{SAML_NS}}}Subject/{{{SAML_NS}}}NameID") == "alice@example.com"
        audience = assertion.findtext(
            f"{{{SAML_NS}}}Conditions/{{{SAML_NS}}}AudienceRestriction/{{{SAML_NS}}}Audience"
        )
        assert audience == SP_ENTITY
        attributes = {
            a.get("Name"): [v.text for v in a]
            for a in assertion.iter(f"{{{SAML_NS}}}Attribute")
        }
        assert attributes["email"] == ["alice@example.com"]
        assert attributes["roles"] == ["user"]

    def test_tampered_assertion_fails_verification(self, services, idp, signing_pair) -> None:
        config = register_sp(services.federation, signing_pair)
        user = create_user(services.users)
        response_xml = base64.b64decode(idp.sso_response(config, user))
        tampered = response_xml.replace(b"alice@example.com", b"mallory@example.com")
        assert not verify_assertion_signature(tampered, signing_pair[0])

    def test_replayed_request_is_denied(self, services, idp, signing_pair) -> None:
        config = register_sp(services.federation, signing_pair)
        user = create_user(services.users)
        request = idp.read_authn_request(config, b64(authn_request_xml("_replay")))

        first = base64.b64decode(idp.sso_response(config, user, request))
        second = base64.b64decode(idp.sso_response(config, user, request))
        assert _status(first) == STATUS_SUCCESS
        assert _status(second) == STATUS_REQUEST_DENIED
        assert ET.fromstring(second).find(f"{{{SAML_NS}}}Assertion") is None

    def test_unregistered_acs_is_refused(self, services, idp, signing_pair) -> None:
        config = register_sp(services.federation, signing_pair)
        with pytest.raises(SAMLRequestError):
            idp.read_authn_request(config, b64(authn_request_xml(acs="https://evil.example.com/acs")))

    def test_missing_key_is_a_configuration_error(self, services, idp) -> None:
        app_id = services.federation.create_application(Application(name="broken", protocol="saml"))
        services.federation.create_saml_config(
            SAMLConfig(application_id=app_id, entity_id=SP_ENTITY, acs_url=ACS, certificate="", private_key="")
        )
        config = services.federation.get_saml_config(app_id)
        with pytest.raises(SAMLConfigurationError):
            idp.sso_response(config, create_user(services.users))

    def test_store_outage_answers_responder(self, services, signing_pair) -> None:
        config = register_sp(services.federation, signing_pair)
        down = SAMLIdentityProvider(
            services.federation, services.users, UnreachableStore(), services.sessions, services.settings
        )
        request = down.read_authn_request(config, b64(authn_request_xml("_down")))
        response_xml = base64.b64decode(down.sso_response(config, create_user(services.users), request))
        assert _status(response_xml) == STATUS_RESPONDER
        assert ET.fromstring(response_xml).find(f"{{{SAML_NS}}}Assertion") is None


class TestAttributeRelease:
    def test_config_naming_a_private_field_is_rejected(self, services, signing_pair) -> None:
        app_id = services.federation.create_application(Application(name="leaky", protocol="saml"))
        with pytest.raises(InvalidAttributeMap):
            services.federation.create_saml_config(
                SAMLConfig(
                    application_id=app_id,
                    entity_id=SP_ENTITY,
                    acs_url=ACS,
                    certificate=signing_pair[0],
                    private_key=signing_pair[1],
                    attribute_map={"pw": "hashed_password"},
                )
            )
        assert services.federation.get_saml_config(app_id) is None

    def test_private_field_in_a_stored_map_is_not_released(self, services, idp, signing_pair) -> None:
        config = dataclasses.replace(
            register_sp(services.federation, signing_pair),
            attribute_map={"pw": "hashed_password", "status": "status", "mail": "email"},
        )
        response_xml = base64.b64decode(idp.sso_response(config, create_user(services.users)))
        names = {a.get("Name") for a in ET.fromstring(response_xml).iter(f"{{{SAML_NS}}}Attribute")}
        assert names == {"mail"}
        assert b"$2b$" not in response_xml


class TestSignatureVerification:
    def _signed(self, services, idp, signing_pair) -> ET.Element:
        config = register_sp(services.federation, signing_pair)
        return ET.fromstring(base64.b64decode(idp.sso_response(config, create_user(services.users))))

    def _signature(self, root: ET.Element) -> ET.Element:
        return root.find(f"{{{SAML_NS}}}Assertion/{{{DS_NS}}}Signature")

    def test_missing_signed_info(self, services, idp, signing_pair) -> None:
        root = self._signed(services, idp, signing_pair)
        signature = self._signature(root)
        signature.remove(signature.find(f"{{{DS_NS}}}SignedInfo"))
        assert verify_assertion_signature(ET.tostring(root), signing_pair[0]) is False

    def test_missing_reference(self, services, idp, signing_pair) -> None:
        root = self._signed(services, idp, signing_pair)
        signed_info = self._signature(root).find(f"{{{DS_NS}}}SignedInfo")
        signed_info.remove(signed_info.find(f"{{{DS_NS}}}Reference"))
        assert verify_assertion_signature(ET.tostring(root), signing_pair[0]) is False

    def test_missing_signature_value(self, services, idp, signing_pair) -> None:
        root = self._signed(services, idp, signing_pair)
        signature = self._signature(root)
        signature.remove(signature.find(f"{{{DS_NS}}}SignatureValue"))
        assert verify_assertion_signature(ET.tostring(root), signing_pair[0]) is False


class TestMetadataAndLogout:
    def test_metadata_describes_idp(self, services, idp, signing_pair) -> None:
        config = register_sp(services.federation, signing_pair)
        xml = idp.metadata(config)
        assert xml.startswith("<?xml")
        root = ET.fromstring(xml.encode("utf-8"))
        assert root.get("entityID") == idp.entity_id(config.application_id)
        md = "urn:oasis:names:tc:SAML:2.0:metadata"
        locations = {e.get("Location") for e in root.iter(f"{{{md}}}SingleSignOnService")}
        assert locations == {f"http://localhost:8000/saml/sso?app_id={config.application_id}"}

    def test_logout_revokes_sessions(self, services, idp, signing_pair) -> None:
        config = register_sp(services.federation, signing_pair)
        user = create_user(services.users)
        services.sessions.issue(user, "10.0.0.5", "test")
        response = idp.logout(config, parse_logout_request(b64(logout_request_xml("alice@example.com"))))
        assert services.users.list_sessions(user.id) == []
        root = ET.fromstring(response)
        assert root.get("InResponseTo") == "_lr1"
        assert _status(response.encode()) == STATUS_SUCCESS

    def test_logout_redirect_is_deflated(self, services, idp, signing_pair) -> None:
        config = register_sp(services.federation, signing_pair)
        location = idp.logout_redirect(config, idp.logout_response(config, STATUS_SUCCESS, "_lr9"), "rs")
        assert location.startswith(SLO + "?")
        query = parse_qs(urlparse(location).query)
        assert query["RelayState"] == ["rs"]
        assert b"_lr9" in decode_message(query["SAMLResponse"][0])


class TestHTTP:
    @pytest.fixture(scope="class")
    def sp(self, api_client, signing_pair):
        return api_client, register_sp(api_client.federation, signing_pair)

    def test_metadata_endpoint(self, sp) -> None:
        ctx, config = sp
        resp = ctx.client.get("/saml/metadata", params={"app_id": config.application_id})
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("application/samlmetadata+xml")

    def test_unknown_app_is_404(self, sp) -> None:
        ctx, _ = sp
        assert ctx.client.get("/saml/metadata", params={"app_id": 9999}).status_code == 404

    def test_unauthenticated_sso_goes_to_login(self, sp) -> None:
        ctx, config = sp
        ctx.client.cookies.clear()
        resp = ctx.client.get(
            "/saml/sso",
            params={"app_id": config.application_id, "SAMLRequest": b64(authn_request_xml("_h1"))},
        )
        assert resp.status_code == 302
        target = parse_qs(urlparse(resp.headers["location"]).query)["redirect"][0]
        assert target.startswith("/saml/sso?")
        assert "SAMLRequest=" in target

    def test_authenticated_sso_posts_response_to_acs(self, sp, signing_pair) -> None:
        ctx, config = sp
        assert login(ctx.client).status_code == 200
        resp = ctx.client.post(
            f"/saml/sso?app_id={config.application_id}",
            data={"SAMLRequest": b64(authn_request_xml("_h2")), "RelayState": "/home"},
        )
        ctx.client.cookies.clear()
        assert resp.status_code == 200
        assert f'action="{ACS}"' in resp.text
        assert 'name="RelayState" value="/home"' in resp.text
        value = resp.text.split('name="SAMLResponse" value="')[1].split('"')[0]
        assert verify_assertion_signature(base64.b64decode(value), signing_pair[0])

    def test_bad_request_answers_with_requester_status(self, sp) -> None:
        ctx, config = sp
        resp = ctx.client.get(
            "/saml/sso",
            params={"app_id": config.application_id, "SAMLRequest": b64(authn_request_xml(acs="https://evil/acs"))},
        )
        assert resp.status_code == 200
        value = resp.text.split('name="SAMLResponse" value="')[1].split('"')[0]
        assert _status(base64.b64decode(value)) == STATUS_REQUESTER

    def test_store_outage_posts_responder_status(self, sp, monkeypatch) -> None:
        ctx, config = sp
        assert login(ctx.client).status_code == 200
        monkeypatch.setattr(ctx.client.app.state.saml_provider, "_store", UnreachableStore())
        resp = ctx.client.post(
            f"/saml/sso?app_id={config.application_id}",
            data={"SAMLRequest": b64(authn_request_xml("_h3"))},
        )
        ctx.client.cookies.clear()
        assert resp.status_code == 200
        assert f'action="{ACS}"' in resp.text
        value = resp.text.split('name="SAMLResponse" value="')[1].split('"')[0]
        assert _status(base64.b64decode(value)) == STATUS_RESPONDER
