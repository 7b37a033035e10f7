import uuid
from sqlalchemy import Column, String, DateTime, Uuid, func
from sqlalchemy.orm import relationship
from app.db.base_class import Base


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    name = Column(String, index=True, nullable=False)
    slug = Column(String, unique=True, index=True, nullable=False)
    # Federation trust boundary: asserted SSO emails must belong to this domain
    domain = Column(String, nullable=True)
    plan = Column(String, default="free")  # free, pro, growth, scale
    status = Column(String, default="active")  # active, suspended
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    memberships = relationship("TenantMembership", back_populates="tenant")
    audit_logs = relationship("AuditLog", back_populates="tenant")
    sso_connection = relationship(
        "SsoConnection", back_populates="tenant", uselist=False, cascade="all, delete-orphan"
    )
