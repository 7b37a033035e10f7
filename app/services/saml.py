"""
SAML 2.0 codec (SP side, HTTP-Redirect request / HTTP-POST response).

- AuthnRequest construction and HTTP-Redirect encoding (raw DEFLATE → base64 → URL)
- SP metadata document
- Response parsing into a typed ``SamlAssertion`` via a namespace-agnostic
  tree walk over NameID / Attribute / AttributeValue
- IdP certificate fingerprint comparison

Responses are parsed with defusedxml so entity-expansion and external-entity
payloads from an IdP (or an attacker posting to the ACS) are rejected.
"""

import base64
import binascii
import hashlib
import logging
import secrets
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional
from urllib.parse import quote, unquote
from xml.etree import ElementTree as ET

from defusedxml import ElementTree as SafeET
from defusedxml.common import DefusedXmlException

from app.core.exceptions import MalformedResponseError

logger = logging.getLogger("salesintel.sso.saml")

SAMLP_NS = "urn:oasis:names:tc:SAML:2.0:protocol"
SAML_NS = "urn:oasis:names:tc:SAML:2.0:assertion"
MD_NS = "urn:oasis:names:tc:SAML:2.0:metadata"

BINDING_HTTP_POST = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"
NAMEID_FORMAT_EMAIL = "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress"

PEM_HEADER = "-----BEGIN CERTIFICATE-----"
PEM_FOOTER = "-----END CERTIFICATE-----"

ET.register_namespace("samlp", SAMLP_NS)
ET.register_namespace("saml", SAML_NS)
ET.register_namespace("md", MD_NS)

_ATTRIBUTE_NAME_SEPARATORS = ("/", ".", ":")


@dataclass(frozen=True)
class SamlAssertion:
    """Identity asserted by a SAML Response."""

    name_id: str
    attributes: Dict[str, str] = field(default_factory=dict)

    def attribute(self, *aliases: str) -> Optional[str]:
        """First non-empty attribute matching any alias, in alias order.

        Matching is case-sensitive on the trailing segment of the attribute
        name so URI-prefixed names (``http://.../claims/groups``) resolve.
        """
        for alias in aliases:
            for name, value in self.attributes.items():
                if value and _trailing_segment_matches(name, alias):
                    return value
        return None


def _trailing_segment_matches(name: str, alias: str) -> bool:
    if name == alias:
        return True
    if not name.endswith(alias):
        return False
    return name[-len(alias) - 1] in _ATTRIBUTE_NAME_SEPARATORS


def _local_name(tag) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1].split(":")[-1]


def _iter_local(root: ET.Element, local_name: str) -> Iterator[ET.Element]:
    for element in root.iter():
        if _local_name(element.tag) == local_name:
            yield element


def _utc_instant(moment: Optional[datetime] = None) -> str:
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# ═══════════════════════════════════════════
#  AuthnRequest (SP → IdP)
# ═══════════════════════════════════════════

def generate_request_id() -> str:
    # xs:ID must not start with a digit
    return f"_{secrets.token_hex(16)}"


def build_authn_request(
    sp_entity_id: str,
    acs_url: str,
    idp_sso_url: str,
    *,
    request_id: Optional[str] = None,
    issue_instant: Optional[datetime] = None,
) -> str:
    """Build a SAML 2.0 AuthnRequest asking for an email NameID over HTTP-POST."""
    request = ET.Element(f"{{{SAMLP_NS}}}AuthnRequest", {
        "ID": request_id or generate_request_id(),
        "Version": "2.0",
        "IssueInstant": _utc_instant(issue_instant),
        "Destination": idp_sso_url,
        "AssertionConsumerServiceURL": acs_url,
        "ProtocolBinding": BINDING_HTTP_POST,
    })
    issuer = ET.SubElement(request, f"{{{SAML_NS}}}Issuer")
    issuer.text = sp_entity_id
    ET.SubElement(request, f"{{{SAMLP_NS}}}NameIDPolicy", {
        "Format": NAMEID_FORMAT_EMAIL,
        "AllowCreate": "true",
    })
    return ET.tostring(request, encoding="unicode")


def encode_for_redirect(xml: str) -> str:
    """HTTP-Redirect binding encoding: raw DEFLATE, base64, then URL-encode."""
    compressor = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, -zlib.MAX_WBITS)
    deflated = compressor.compress(xml.encode("utf-8")) + compressor.flush()
    return quote(base64.b64encode(deflated).decode("ascii"), safe="")


def decode_redirect(encoded: str) -> str:
    """Inverse of ``encode_for_redirect``."""
    try:
        deflated = base64.b64decode(unquote(encoded), validate=True)
        return zlib.decompress(deflated, -zlib.MAX_WBITS).decode("utf-8")
    except (binascii.Error, zlib.error, UnicodeDecodeError) as exc:
        raise MalformedResponseError("SAMLRequest is not valid redirect-binding data") from exc


def build_redirect_url(idp_sso_url: str, encoded_request: str, relay_state: str) -> str:
    separator = "&" if "?" in idp_sso_url else "?"
    return (
        f"{idp_sso_url}{separator}SAMLRequest={encoded_request}"
        f"&RelayState={quote(relay_state, safe='')}"
    )


def build_sp_metadata(sp_entity_id: str, acs_url: str) -> str:
    """SP EntityDescriptor for IdP administrators to import."""
    descriptor = ET.Element(f"{{{MD_NS}}}EntityDescriptor", {"entityID": sp_entity_id})
    sp = ET.SubElement(descriptor, f"{{{MD_NS}}}SPSSODescriptor", {
        "AuthnRequestsSigned": "false",
        "WantAssertionsSigned": "true",
        "protocolSupportEnumeration": SAMLP_NS,
    })
    name_id_format = ET.SubElement(sp, f"{{{MD_NS}}}NameIDFormat")
    name_id_format.text = NAMEID_FORMAT_EMAIL
    ET.SubElement(sp, f"{{{MD_NS}}}AssertionConsumerService", {
        "Binding": BINDING_HTTP_POST,
        "Location": acs_url,
        "index": "0",
        "isDefault": "true",
    })
    return ET.tostring(descriptor, encoding="unicode")


# ═══════════════════════════════════════════
#  Response (IdP → SP)
# ═══════════════════════════════════════════

def decode_post_response(saml_response: str) -> str:
    """Base64-decode an HTTP-POST ``SAMLResponse`` form value."""
    try:
        compact = "".join(saml_response.split())
        return base64.b64decode(compact, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise MalformedResponseError("SAMLResponse is not valid base64-encoded XML") from exc


def _parse_xml(xml: str) -> ET.Element:
    try:
        return SafeET.fromstring(xml)
    except (ET.ParseError, DefusedXmlException) as exc:
        raise MalformedResponseError("SAMLResponse is not well-formed XML") from exc


def parse_response(xml: str) -> SamlAssertion:
    """Extract the NameID and named attributes from a SAML Response."""
    root = _parse_xml(xml)

    name_id = None
    for element in _iter_local(root, "NameID"):
        if element.text and element.text.strip():
            name_id = element.text.strip()
            break
    if not name_id:
        raise MalformedResponseError("No NameID (email) found in SAML response")

    attributes: Dict[str, str] = {}
    for attribute in _iter_local(root, "Attribute"):
        name = attribute.get("Name")
        if not name or name in attributes:
            continue
        values = [
            value.text.strip()
            for value in _iter_local(attribute, "AttributeValue")
            if value.text and value.text.strip()
        ]
        attributes[name] = ",".join(values)

    return SamlAssertion(name_id=name_id, attributes=attributes)


# ═══════════════════════════════════════════
#  Certificate fingerprint
# ═══════════════════════════════════════════

def strip_pem(certificate: str) -> str:
    """Remove PEM framing and all whitespace, leaving the base64 DER body."""
    body = certificate.replace(PEM_HEADER, "").replace(PEM_FOOTER, "")
    return "".join(body.split())


def certificate_fingerprint(certificate: str) -> str:
    """SHA-256 hex digest of a certificate's DER bytes (PEM or bare base64 input)."""
    der = base64.b64decode(strip_pem(certificate), validate=True)
    return hashlib.sha256(der).hexdigest()


def is_valid_certificate(certificate: str) -> bool:
    body = strip_pem(certificate)
    if not body:
        return False
    try:
        base64.b64decode(body, validate=True)
    except binascii.Error:
        return False
    return True


def embedded_certificate(xml: str) -> Optional[str]:
    """First ``X509Certificate`` value in the document, if any."""
    root = _parse_xml(xml)
    for element in _iter_local(root, "X509Certificate"):
        if element.text and element.text.strip():
            return element.text
    return None


def verify_certificate_fingerprint(response_xml: str, configured_cert_pem: str) -> bool:
    """Compare the configured IdP certificate against the embedded one.

    A response without an embedded certificate is inconclusive and passes.
    This is a fingerprint comparison, not XML-Signature verification.
    """
    embedded = embedded_certificate(response_xml)
    if embedded is None:
        logger.warning("SAML response carries no X509Certificate; fingerprint check inconclusive")
        return True
    expected = certificate_fingerprint(configured_cert_pem)
    try:
        actual = certificate_fingerprint(embedded)
    except binascii.Error:
        return False
    return secrets.compare_digest(expected, actual)
