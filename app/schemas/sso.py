"""Schemas for SSO connections and login results."""
from datetime import datetime
from typing import Annotated, Literal, Optional, Union
from uuid import UUID
from pydantic import BaseModel, ConfigDict, Field

from app.models.sso_config import SsoProvider

MASKED_SECRET = "********"
MASKED_CERTIFICATE = "[configured]"

# ─── SSO Connection ───

class _ConnectionCreateBase(BaseModel):
    name: str = Field(min_length=1, max_length=100)


class SamlConnectionCreate(_ConnectionCreateBase):
    provider: Literal["SAML"]
    entity_id: Optional[str] = None
    sso_url: Optional[str] = None
    certificate: Optional[str] = None


class OidcConnectionCreate(_ConnectionCreateBase):
    provider: Literal["OIDC"]
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    issuer: Optional[str] = None
    discovery_url: Optional[str] = None


SSOConnectionCreate = Annotated[
    Union[SamlConnectionCreate, OidcConnectionCreate],
    Field(discriminator="provider"),
]


class SSOConnectionUpdate(BaseModel):
    provider: Optional[SsoProvider] = None
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    entity_id: Optional[str] = None
    sso_url: Optional[str] = None
    certificate: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    issuer: Optional[str] = None
    discovery_url: Optional[str] = None
    enabled: Optional[bool] = None


class SSOConnectionRead(BaseModel):
    """Admin projection. Secrets are masked, never returned raw."""
    id: UUID
    tenant_id: UUID
    provider: SsoProvider
    name: str
    enabled: bool
    entity_id: Optional[str] = None
    sso_url: Optional[str] = None
    certificate: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    issuer: Optional[str] = None
    discovery_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def masked(cls, connection) -> "SSOConnectionRead":
        read = cls.model_validate(connection)
        return read.model_copy(update={
            "client_secret": MASKED_SECRET if connection.client_secret else None,
            "certificate": MASKED_CERTIFICATE if connection.certificate else None,
        })


class SSOConnectionDeleted(BaseModel):
    message: str = "SSO connection disabled"


# ─── OIDC discovery test ───

class OIDCDiscoverRequest(BaseModel):
    discovery_url: str = Field(min_length=1)


class OIDCDiscoveryRead(BaseModel):
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    userinfo_endpoint: str = ""
    jwks_uri: str = ""


# ─── Login result ───

class SSOUserRead(BaseModel):
    id: UUID
    email: str
    first_name: str
    last_name: str
    role: str

    model_config = ConfigDict(from_attributes=True)


class SSOLoginResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    organization_id: UUID
    user: SSOUserRead
