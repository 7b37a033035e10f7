import uuid
from sqlalchemy import Column, String, DateTime, ForeignKey, JSON, Uuid, func
from sqlalchemy.orm import relationship
from app.db.base_class import Base

class AuditLog(Base):
    """Append-only audit trail entry."""
    __tablename__ = "audit_logs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    tenant_id = Column(Uuid(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True)
    actor_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True, index=True)

    action = Column(String, nullable=False, index=True)  # sso_login, sso_login_rejected
    target_type = Column(String, nullable=True)  # user
    target_id = Column(String, nullable=True)
    target_name = Column(String, nullable=True)
    ip_address = Column(String, nullable=True)
    detail_json = Column(JSON, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    tenant = relationship("Tenant", back_populates="audit_logs")
