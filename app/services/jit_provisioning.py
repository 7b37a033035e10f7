"""
Just-in-time provisioning of federated identities.

Runs only after every protocol and domain check has passed. User and
membership are created with insert-if-absent statements keyed by their
natural unique keys, so concurrent first logins converge on one row each.
A returning member keeps the tenant role they were first provisioned with.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, Union
from uuid import UUID

from sqlalchemy.orm import Session

from app.core import security
from app.crud import crud_membership, crud_user
from app.models.membership import OrgRole
from app.models.user import User

logger = logging.getLogger("salesintel.sso.provisioning")


@dataclass(frozen=True)
class FederatedIdentity:
    email: str
    first_name: str
    last_name: str
    tenant_id: UUID
    role: OrgRole


@dataclass
class ProvisioningResult:
    user: User
    access_token: str
    refresh_token: str
    tenant_id: UUID
    user_created: bool = False
    membership_created: bool = False


def derive_role(groups: Union[str, Iterable[str], None]) -> OrgRole:
    """ADMIN when any asserted group name contains "admin" (case-insensitive)."""
    if not groups:
        return OrgRole.MEMBER
    if isinstance(groups, str):
        groups = [groups]
    if any("admin" in str(group).lower() for group in groups):
        return OrgRole.ADMIN
    return OrgRole.MEMBER


def provision_sso_user(db: Session, identity: FederatedIdentity) -> ProvisioningResult:
    user, user_created = crud_user.upsert_sso_user(
        db,
        email=identity.email,
        first_name=identity.first_name,
        last_name=identity.last_name,
    )
    membership, membership_created = crud_membership.ensure_membership(
        db,
        user_id=user.id,
        tenant_id=identity.tenant_id,
        role=identity.role,
    )
    if not membership_created and membership.role != identity.role.value:
        logger.info(
            "Keeping existing tenant role %s for user %s (IdP asserted %s)",
            membership.role, user.id, identity.role.value,
        )

    access_token = security.create_access_token(user.id, email=user.email, role=user.role)
    refresh_token = security.create_refresh_token(user.id)
    crud_user.set_refresh_token(db, user=user, refresh_token=refresh_token)
    db.commit()
    db.refresh(user)

    if user_created:
        logger.info("JIT-provisioned user %s for tenant %s", user.id, identity.tenant_id)

    return ProvisioningResult(
        user=user,
        access_token=access_token,
        refresh_token=refresh_token,
        tenant_id=identity.tenant_id,
        user_created=user_created,
        membership_created=membership_created,
    )
