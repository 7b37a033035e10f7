"""JIT provisioning: idempotence, sticky tenant roles, token issuance."""
from jose import jwt

from app.config import settings
from app.models import OrgRole, TenantMembership, User
from app.crud import crud_membership, crud_user
from app.services.jit_provisioning import FederatedIdentity, derive_role, provision_sso_user
from tests.conftest import add_member, make_tenant


def _identity(tenant, email="alice@acme.com", role=OrgRole.MEMBER):
    return FederatedIdentity(
        email=email, first_name="Alice", last_name="Ng", tenant_id=tenant.id, role=role,
    )


def test_derive_role():
    assert derive_role("SSO-Admins") is OrgRole.ADMIN
    assert derive_role(["Sales", "GLOBAL_ADMIN"]) is OrgRole.ADMIN
    assert derive_role(["Sales"]) is OrgRole.MEMBER
    assert derive_role("") is OrgRole.MEMBER
    assert derive_role(None) is OrgRole.MEMBER


def test_first_login_creates_user_and_membership(db, scale_tenant):
    result = provision_sso_user(db, _identity(scale_tenant, role=OrgRole.ADMIN))

    assert result.user_created and result.membership_created
    user = result.user
    assert user.email == "alice@acme.com"
    assert user.hashed_password is None
    assert user.role == "user"
    assert user.last_login_at is not None
    assert user.refresh_token == result.refresh_token

    membership = db.query(TenantMembership).filter_by(user_id=user.id).one()
    assert membership.role == OrgRole.ADMIN.value
    assert result.tenant_id == scale_tenant.id


def test_repeated_login_is_idempotent(db, scale_tenant):
    first = provision_sso_user(db, _identity(scale_tenant))
    first_login = first.user.last_login_at
    second = provision_sso_user(db, _identity(scale_tenant, email="  Alice@ACME.com "))

    assert second.user.id == first.user.id
    assert not second.user_created and not second.membership_created
    assert db.query(User).count() == 1
    assert db.query(TenantMembership).count() == 1
    assert second.user.last_login_at >= first_login
    assert second.refresh_token != first.refresh_token


def test_existing_member_role_is_not_escalated(db, scale_tenant):
    add_member(db, scale_tenant, "bob@acme.com", role=OrgRole.MEMBER)

    result = provision_sso_user(db, _identity(scale_tenant, email="bob@acme.com", role=OrgRole.ADMIN))

    membership = db.query(TenantMembership).filter_by(user_id=result.user.id).one()
    assert membership.role == OrgRole.MEMBER.value


def test_existing_admin_is_not_demoted(db, scale_tenant):
    add_member(db, scale_tenant, "carol@acme.com", role=OrgRole.ADMIN)
    result = provision_sso_user(db, _identity(scale_tenant, email="carol@acme.com", role=OrgRole.MEMBER))
    membership = db.query(TenantMembership).filter_by(user_id=result.user.id).one()
    assert membership.role == OrgRole.ADMIN.value


def test_same_user_in_two_tenants_gets_two_memberships(db, scale_tenant):
    other = make_tenant(db, slug="acme-eu", domain="acme.com")
    provision_sso_user(db, _identity(scale_tenant))
    provision_sso_user(db, _identity(other, role=OrgRole.ADMIN))

    assert db.query(User).count() == 1
    roles = {m.tenant_id: m.role for m in db.query(TenantMembership).all()}
    assert roles == {scale_tenant.id: "member", other.id: "admin"}


def test_tokens_carry_identity(db, scale_tenant):
    result = provision_sso_user(db, _identity(scale_tenant))
    access = jwt.decode(result.access_token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    refresh = jwt.decode(result.refresh_token, settings.REFRESH_SECRET_KEY, algorithms=[settings.ALGORITHM])
    assert access["sub"] == str(result.user.id)
    assert access["email"] == "alice@acme.com"
    assert access["type"] == "access"
    assert refresh["type"] == "refresh" and refresh["jti"]



def test_user_created_by_a_concurrent_login_is_reused(db, session_factory, scale_tenant):
    # Another request commits the same email first; the upsert must not raise
    other = session_factory()
    try:
        crud_user.upsert_sso_user(other, email="dave@acme.com", first_name="Dave", last_name="")
        other.commit()
    finally:
        other.close()

    user, created = crud_user.upsert_sso_user(db, email="dave@acme.com", first_name="D", last_name="X")
    db.commit()
    assert created is False
    assert user.first_name == "Dave"
    assert db.query(User).filter_by(email="dave@acme.com").count() == 1


def test_membership_created_by_a_concurrent_login_keeps_its_role(db, session_factory, scale_tenant):
    user, _ = crud_user.upsert_sso_user(db, email="erin@acme.com", first_name="Erin", last_name="")
    db.commit()

    other = session_factory()
    try:
        crud_membership.ensure_membership(
            other, user_id=user.id, tenant_id=scale_tenant.id, role=OrgRole.MEMBER,
        )
        other.commit()
    finally:
        other.close()

    membership, created = crud_membership.ensure_membership(
        db, user_id=user.id, tenant_id=scale_tenant.id, role=OrgRole.ADMIN,
    )
    db.commit()
    assert created is False
    assert membership.role == OrgRole.MEMBER.value
    assert db.query(TenantMembership).count() == 1
