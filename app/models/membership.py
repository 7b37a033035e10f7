import uuid
import enum
from sqlalchemy import Column, String, DateTime, ForeignKey, Uuid, UniqueConstraint, func
from sqlalchemy.orm import relationship
from app.db.base_class import Base


class OrgRole(str, enum.Enum):
    ADMIN = "admin"
    MEMBER = "member"


class TenantMembership(Base):
    """A user's tenant-scoped role. One row per (user, tenant)."""
    __tablename__ = "tenant_memberships"
    __table_args__ = (
        UniqueConstraint("user_id", "tenant_id", name="uq_membership_user_tenant"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    tenant_id = Column(Uuid(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String, nullable=False, default=OrgRole.MEMBER.value)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="memberships")
    tenant = relationship("Tenant", back_populates="memberships")
