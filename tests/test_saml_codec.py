"""Unit tests for the SAML request builder, response parser and fingerprint check."""
import base64
import zlib
from datetime import datetime, timezone
from urllib.parse import parse_qs, unquote, urlsplit

import pytest
from defusedxml import ElementTree as SafeET

from app.core.exceptions import MalformedResponseError
from app.services import saml
from tests.conftest import IDP_CERT_DER, OTHER_CERT_DER, build_saml_response, make_pem

SP_ENTITY_ID = "https://api.salesintel.test/api/v1/sso/saml/metadata"
ACS_URL = "https://api.salesintel.test/api/v1/sso/saml/callback"
IDP_SSO_URL = "https://acme.okta.com/app/salesintel/sso/saml"


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def test_authn_request_fields():
    xml = saml.build_authn_request(
        SP_ENTITY_ID, ACS_URL, IDP_SSO_URL,
        request_id="_abc", issue_instant=datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
    )
    root = SafeET.fromstring(xml)
    assert _local(root.tag) == "AuthnRequest"
    assert root.get("ID") == "_abc"
    assert root.get("Version") == "2.0"
    assert root.get("IssueInstant") == "2026-01-02T03:04:05Z"
    assert root.get("Destination") == IDP_SSO_URL
    assert root.get("AssertionConsumerServiceURL") == ACS_URL
    assert root.get("ProtocolBinding") == saml.BINDING_HTTP_POST

    children = {_local(child.tag): child for child in root}
    assert children["Issuer"].text == SP_ENTITY_ID
    assert children["NameIDPolicy"].get("Format") == saml.NAMEID_FORMAT_EMAIL
    assert children["NameIDPolicy"].get("AllowCreate") == "true"


def test_request_ids_are_fresh_and_xml_safe():
    first, second = saml.generate_request_id(), saml.generate_request_id()
    assert first != second
    assert first.startswith("_") and len(first) == 33


def test_redirect_encoding_inflates_back_to_request():
    xml = saml.build_authn_request(SP_ENTITY_ID, ACS_URL, IDP_SSO_URL)
    encoded = saml.encode_for_redirect(xml)

    # URL-encoded: no raw base64 specials survive
    assert "+" not in encoded and "/" not in encoded and "=" not in encoded

    inflated = zlib.decompress(base64.b64decode(unquote(encoded)), -15).decode("utf-8")
    root = SafeET.fromstring(inflated)
    assert root.get("AssertionConsumerServiceURL") == ACS_URL
    assert root.get("ProtocolBinding") == saml.BINDING_HTTP_POST
    assert [c.text for c in root if _local(c.tag) == "Issuer"] == [SP_ENTITY_ID]
    assert saml.decode_redirect(encoded) == xml


def test_redirect_url_carries_request_and_relay_state():
    url = saml.build_redirect_url(IDP_SSO_URL, "ENCODED%2B", "tenant id/1")
    assert url.startswith(IDP_SSO_URL + "?SAMLRequest=ENCODED%2B&RelayState=")
    assert parse_qs(urlsplit(url).query)["RelayState"] == ["tenant id/1"]


def test_redirect_url_appends_to_existing_query():
    url = saml.build_redirect_url(IDP_SSO_URL + "?idp=1", "X", "t")
    assert url.startswith(IDP_SSO_URL + "?idp=1&SAMLRequest=X&RelayState=t")


def test_parse_response_extracts_name_id_and_attributes():
    xml = build_saml_response(
        "alice@acme.com",
        {"firstName": "Alice", "lastName": "Ng", "groups": ["Sales", "SSO-Admins"]},
    )
    assertion = saml.parse_response(xml)
    assert assertion.name_id == "alice@acme.com"
    assert assertion.attributes["firstName"] == "Alice"
    assert assertion.attributes["groups"] == "Sales,SSO-Admins"


def test_parse_response_tolerates_namespace_prefixes_and_uri_names():
    xml = build_saml_response(
        "bob@acme.com",
        {
            "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/givenName": "Bob",
            "http://schemas.microsoft.com/ws/2008/06/identity/claims/groups": "admins",
        },
        prefix="saml",
    )
    assertion = saml.parse_response(xml)
    assert assertion.attribute("firstName", "givenName") == "Bob"
    assert assertion.attribute("groups", "memberOf") == "admins"


def test_attribute_alias_match_is_on_trailing_segment():
    assertion = saml.SamlAssertion(
        name_id="x@acme.com",
        attributes={"urn:oid:surnameExtra": "nope", "user.surname": "Ng"},
    )
    assert assertion.attribute("surname") == "Ng"
    assert assertion.attribute("Surname") is None


def test_parse_response_without_name_id_is_malformed():
    with pytest.raises(MalformedResponseError) as exc:
        saml.parse_response(build_saml_response(None, {"firstName": "Alice"}))
    assert exc.value.status_code == 400


def test_parse_response_rejects_entity_expansion():
    xml = (
        '<?xml version="1.0"?><!DOCTYPE r [<!ENTITY a "aaaa"><!ENTITY b "&a;&a;">]>'
        "<Response><NameID>&b;</NameID></Response>"
    )
    with pytest.raises(MalformedResponseError):
        saml.parse_response(xml)


def test_decode_post_response_rejects_garbage():
    with pytest.raises(MalformedResponseError):
        saml.decode_post_response("%%% not base64 %%%")


def test_certificate_fingerprint_ignores_pem_framing():
    pem = make_pem(IDP_CERT_DER)
    bare = base64.b64encode(IDP_CERT_DER).decode("ascii")
    assert saml.certificate_fingerprint(pem) == saml.certificate_fingerprint(bare)


def test_fingerprint_match_passes():
    xml = build_saml_response("alice@acme.com", cert_der=IDP_CERT_DER)
    assert saml.verify_certificate_fingerprint(xml, make_pem(IDP_CERT_DER)) is True


def test_fingerprint_mismatch_fails():
    xml = build_saml_response("alice@acme.com", cert_der=OTHER_CERT_DER)
    assert saml.verify_certificate_fingerprint(xml, make_pem(IDP_CERT_DER)) is False


def test_missing_embedded_certificate_is_inconclusive(caplog):
    xml = build_saml_response("alice@acme.com", cert_der=None)
    assert saml.verify_certificate_fingerprint(xml, make_pem(IDP_CERT_DER)) is True
    assert "inconclusive" in caplog.text


def test_certificate_validation():
    assert saml.is_valid_certificate(make_pem(IDP_CERT_DER))
    assert not saml.is_valid_certificate("-----BEGIN CERTIFICATE-----\n!!!\n-----END CERTIFICATE-----")
    assert not saml.is_valid_certificate("   ")


def test_sp_metadata_describes_acs():
    root = SafeET.fromstring(saml.build_sp_metadata(SP_ENTITY_ID, ACS_URL))
    assert root.get("entityID") == SP_ENTITY_ID
    acs = [e for e in root.iter() if _local(e.tag) == "AssertionConsumerService"]
    assert acs[0].get("Location") == ACS_URL
    assert acs[0].get("Binding") == saml.BINDING_HTTP_POST
