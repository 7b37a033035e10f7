"""Pytest configuration, fixtures and helpers for the SSO test suites."""
import base64
import json
import os
import time
import uuid
from urllib.parse import parse_qs

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("APP_ENV", "development")
os.environ.setdefault("API_BASE_URL", "https://api.salesintel.test")

import pytest
import httpx
from httpx import AsyncClient, ASGITransport
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core import security
from app.models import (
    Base,
    OrgRole,
    SsoConnection,
    Tenant,
    TenantMembership,
    User,
)
from app.services.handshake_store import InMemoryHandshakeStore

# --- Constants ---
IDP_CERT_DER = b"0\x82\x01\x0aacme-idp-signing-certificate"
OTHER_CERT_DER = b"0\x82\x01\x0aevil-idp-signing-certificate"
OIDC_ISSUER = "https://idp.acme.com"
OIDC_CLIENT_ID = "salesintel-client"


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# --- DB fixtures ---

@pytest.fixture
def engine():
    """SQLite in-memory engine shared across connections (StaticPool)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def make_tenant(db, *, slug: str, plan: str = "scale", domain="acme.com") -> Tenant:
    tenant = Tenant(id=uuid.uuid4(), name=slug.title(), slug=slug, domain=domain, plan=plan)
    db.add(tenant)
    db.commit()
    db.refresh(tenant)
    return tenant


@pytest.fixture
def scale_tenant(db) -> Tenant:
    return make_tenant(db, slug="acme", plan="scale", domain="acme.com")


@pytest.fixture
def free_tenant(db) -> Tenant:
    return make_tenant(db, slug="smallco", plan="free", domain="smallco.com")


def add_saml_connection(db, tenant: Tenant, *, enabled: bool = True, cert_der: bytes = IDP_CERT_DER) -> SsoConnection:
    connection = SsoConnection(
        tenant_id=tenant.id,
        provider="SAML",
        name="Acme Okta",
        enabled=enabled,
        entity_id="http://www.okta.com/exk-acme",
        sso_url="https://acme.okta.com/app/salesintel/sso/saml",
        certificate=make_pem(cert_der),
    )
    db.add(connection)
    db.commit()
    db.refresh(connection)
    return connection


def add_oidc_connection(db, tenant: Tenant, *, enabled: bool = True) -> SsoConnection:
    connection = SsoConnection(
        tenant_id=tenant.id,
        provider="OIDC",
        name="Acme Entra",
        enabled=enabled,
        client_id=OIDC_CLIENT_ID,
        client_secret="s3cr3t",
        issuer=OIDC_ISSUER,
    )
    db.add(connection)
    db.commit()
    db.refresh(connection)
    return connection


def add_member(db, tenant: Tenant, email: str, role: OrgRole = OrgRole.MEMBER, **user_fields) -> User:
    user = User(id=uuid.uuid4(), email=email, **user_fields)
    db.add(user)
    db.flush()
    db.add(TenantMembership(user_id=user.id, tenant_id=tenant.id, role=role.value))
    db.commit()
    db.refresh(user)
    return user


def auth_headers(user: User, tenant: Tenant) -> dict:
    token = security.create_access_token(user.id, email=user.email, role=user.role or "user")
    return {"Authorization": f"Bearer {token}", "X-Organization-Id": str(tenant.id)}


# --- Protocol helpers ---

def make_pem(der: bytes) -> str:
    body = base64.b64encode(der).decode("ascii")
    lines = [body[i:i + 64] for i in range(0, len(body), 64)]
    return "-----BEGIN CERTIFICATE-----\n" + "\n".join(lines) + "\n-----END CERTIFICATE-----\n"


def build_saml_response(
    name_id,
    attributes=None,
    *,
    cert_der=IDP_CERT_DER,
    prefix: str = "saml2",
) -> str:
    """A minimal IdP Response document with an embedded signing certificate."""
    attrs = []
    for name, values in (attributes or {}).items():
        if isinstance(values, str):
            values = [values]
        rendered = "".join(
            f"<{prefix}:AttributeValue>{value}</{prefix}:AttributeValue>" for value in values
        )
        attrs.append(f'<{prefix}:Attribute Name="{name}">{rendered}</{prefix}:Attribute>')

    signature = ""
    if cert_der is not None:
        signature = (
            '<ds:Signature xmlns:ds="http://www.w3.org/2000/09/xmldsig#"><ds:KeyInfo><ds:X509Data>'
            f"<ds:X509Certificate>{base64.b64encode(cert_der).decode('ascii')}</ds:X509Certificate>"
            "</ds:X509Data></ds:KeyInfo></ds:Signature>"
        )
    subject = f"<{prefix}:Subject><{prefix}:NameID>{name_id}</{prefix}:NameID></{prefix}:Subject>" if name_id else ""

    return (
        '<saml2p:Response xmlns:saml2p="urn:oasis:names:tc:SAML:2.0:protocol" ID="_resp1" Version="2.0">'
        f'<{prefix}:Assertion xmlns:{prefix}="urn:oasis:names:tc:SAML:2.0:assertion">'
        f"{signature}{subject}"
        f"<{prefix}:AttributeStatement>{''.join(attrs)}</{prefix}:AttributeStatement>"
        f"</{prefix}:Assertion></saml2p:Response>"
    )


def encode_saml_response(xml: str) -> str:
    return base64.b64encode(xml.encode("utf-8")).decode("ascii")


def _b64url_json(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def make_id_token(**overrides) -> str:
    """Unsigned-looking JWT whose claim segment carries ``overrides``."""
    claims = {
        "iss": OIDC_ISSUER,
        "aud": OIDC_CLIENT_ID,
        "exp": int(time.time()) + 300,
        "email": "alice@acme.com",
        "given_name": "Alice",
        "family_name": "Ng",
    }
    claims.update(overrides)
    claims = {k: v for k, v in claims.items() if v is not None}
    header = _b64url_json({"alg": "RS256", "typ": "JWT", "kid": "k1"})
    return f"{header}.{_b64url_json(claims)}.c2lnbmF0dXJl"


class FakeIdP:
    """OIDC provider behind httpx.MockTransport."""

    def __init__(self, id_token=None, token_status=200, discovery_status=200):
        self.id_token = id_token or make_id_token()
        self.token_status = token_status
        self.discovery_status = discovery_status
        self.token_requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/.well-known/openid-configuration"):
            if self.discovery_status != 200:
                return httpx.Response(self.discovery_status)
            return httpx.Response(200, json={
                "issuer": OIDC_ISSUER,
                "authorization_endpoint": f"{OIDC_ISSUER}/authorize",
                "token_endpoint": f"{OIDC_ISSUER}/token",
                "jwks_uri": f"{OIDC_ISSUER}/jwks",
            })
        if request.url.path == "/token":
            self.token_requests.append({k: v[0] for k, v in parse_qs(request.content.decode()).items()})
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"id_token": self.id_token, "access_token": "at"})
        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


# --- App fixtures ---

@pytest.fixture
def handshake_store():
    return InMemoryHandshakeStore()


@pytest.fixture
async def client(session_factory, handshake_store):
    """
    Async HTTP client with dependency overrides:
      - get_db uses the per-test SQLite engine
      - handshake state lives in memory
      - IdP HTTP calls go to ``client.idp["transport"]`` when a test sets it
    """
    from app.main import app as fastapi_app
    from app.api import deps

    holder = {"transport": None}

    def _override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    fastapi_app.dependency_overrides[deps.get_db] = _override_get_db
    fastapi_app.dependency_overrides[deps.get_handshake_store] = lambda: handshake_store
    fastapi_app.dependency_overrides[deps.get_http_transport] = lambda: holder["transport"]

    transport = ASGITransport(app=fastapi_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        ac.idp = holder
        yield ac

    fastapi_app.dependency_overrides.clear()
