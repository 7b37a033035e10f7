from typing import Optional
from uuid import UUID
from sqlalchemy.orm import Session
from app.models.tenant import Tenant


def get(db: Session, tenant_id: UUID) -> Optional[Tenant]:
    return db.query(Tenant).filter(Tenant.id == tenant_id).first()


def get_by_slug(db: Session, slug: str) -> Optional[Tenant]:
    return db.query(Tenant).filter(Tenant.slug == slug).first()


def email_in_domain(tenant: Tenant, email: str) -> bool:
    """True when ``email`` belongs to the tenant's federated domain.

    Tenants without a configured domain do not restrict asserted emails.
    """
    if not tenant.domain:
        return True
    local, sep, domain = email.strip().partition("@")
    if not (local and sep and domain) or "@" in domain:
        return False
    return domain.lower() == tenant.domain.strip().lower()
