from typing import Generator, Optional
from uuid import UUID

import httpx
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.orm import Session

from app.core import security
from app.crud import crud_membership, crud_user
from app.db.session import SessionLocal
from app.models.membership import OrgRole, TenantMembership
from app.models.user import User
from app.services.handshake_store import HandshakeStore, RedisHandshakeStore, get_redis_client
from app.services.sso import SSOService

bearer_scheme = HTTPBearer(auto_error=False)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user(
    db: Session = Depends(get_db),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": "unauthorized", "message": "Could not validate credentials"},
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise credentials_exception
    try:
        payload = security.decode_access_token(credentials.credentials)
        user_id = UUID(str(payload.get("sub")))
    except (JWTError, ValueError):
        raise credentials_exception
    user = crud_user.get(db, user_id)
    if not user:
        raise credentials_exception
    return user


def get_current_active_user(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_active:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "inactive_user", "message": "Inactive user"},
        )
    return current_user


def get_current_membership(
    x_organization_id: Optional[str] = Header(default=None, alias="X-Organization-Id"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> TenantMembership:
    """Resolve the caller's membership in the tenant named by ``X-Organization-Id``."""
    if not x_organization_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "missing_organization", "message": "X-Organization-Id header is required"},
        )
    try:
        tenant_id = UUID(x_organization_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "missing_organization", "message": "X-Organization-Id is not a valid id"},
        )
    membership = crud_membership.get(db, user_id=current_user.id, tenant_id=tenant_id)
    if membership is None:
        if current_user.is_superuser:
            return TenantMembership(user_id=current_user.id, tenant_id=tenant_id, role=OrgRole.ADMIN.value)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "forbidden", "message": "Not a member of this organization"},
        )
    return membership


def require_org_admin(
    membership: TenantMembership = Depends(get_current_membership),
    current_user: User = Depends(get_current_active_user),
) -> TenantMembership:
    if current_user.is_superuser or membership.role == OrgRole.ADMIN.value:
        return membership
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"error": "forbidden", "message": "Organization admin role required"},
    )


def get_handshake_store() -> HandshakeStore:
    return RedisHandshakeStore(get_redis_client())


def get_http_transport() -> Optional[httpx.AsyncBaseTransport]:
    """Outbound transport for IdP calls. None selects httpx's default."""
    return None


def get_sso_service(
    db: Session = Depends(get_db),
    handshake_store: HandshakeStore = Depends(get_handshake_store),
    transport: Optional[httpx.AsyncBaseTransport] = Depends(get_http_transport),
) -> SSOService:
    return SSOService(db, handshake_store, transport=transport)
