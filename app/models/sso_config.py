"""Per-tenant SSO connection configuration."""
import enum
import uuid
from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Text, Uuid, func
from sqlalchemy.orm import relationship
from app.db.base_class import Base


class SsoProvider(str, enum.Enum):
    SAML = "SAML"
    OIDC = "OIDC"


class SsoConnection(Base):
    """Each tenant has at most one SSO connection (SAML or OIDC).

    Deletion is modelled as ``enabled = False`` so audit records keep
    pointing at a real row.
    """
    __tablename__ = "sso_connections"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    # unique: one connection per tenant, enforced by the store
    tenant_id = Column(
        Uuid(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False, unique=True, index=True,
    )
    provider = Column(String, nullable=False)  # "SAML" | "OIDC"
    name = Column(String, nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)

    # SAML
    entity_id = Column(String, nullable=True)
    sso_url = Column(String, nullable=True)
    certificate = Column(Text, nullable=True)

    # OIDC
    client_id = Column(String, nullable=True)
    client_secret = Column(String, nullable=True)
    issuer = Column(String, nullable=True)
    discovery_url = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    tenant = relationship("Tenant", back_populates="sso_connection")
