from typing import Optional, Tuple
from uuid import UUID
from sqlalchemy.orm import Session

from app.db.upsert import insert_ignore_conflict
from app.models.membership import OrgRole, TenantMembership


def get(db: Session, *, user_id: UUID, tenant_id: UUID) -> Optional[TenantMembership]:
    return (
        db.query(TenantMembership)
        .filter(TenantMembership.user_id == user_id, TenantMembership.tenant_id == tenant_id)
        .first()
    )


def ensure_membership(
    db: Session,
    *,
    user_id: UUID,
    tenant_id: UUID,
    role: OrgRole,
) -> Tuple[TenantMembership, bool]:
    """Create the (user, tenant) membership with ``role`` if absent.

    An existing membership keeps its role. Returns ``(membership, created)``.
    Does not commit.
    """
    created = insert_ignore_conflict(
        db,
        TenantMembership,
        {"user_id": user_id, "tenant_id": tenant_id, "role": OrgRole(role).value},
        index_elements=["user_id", "tenant_id"],
    )
    membership = (
        db.query(TenantMembership)
        .filter(TenantMembership.user_id == user_id, TenantMembership.tenant_id == tenant_id)
        .populate_existing()
        .one()
    )
    return membership, created
