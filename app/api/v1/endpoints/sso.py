"""Enterprise SSO endpoints (SAML 2.0 + OIDC) and tenant connection admin.

Login flow
──────────
1. Browser hits /sso/{saml,oidc}/login?org=<slug> → 302 to the IdP
2. IdP returns to /sso/saml/callback (form POST) or /sso/oidc/callback (GET)
3. Backend validates the response, JIT-provisions the user and issues JWTs
"""

from typing import Any, Optional

import httpx
from fastapi import APIRouter, Depends, Form, HTTPException, Query, Request, Response, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from app.api import deps
from app.core.exceptions import NotFoundError
from app.crud import crud_sso
from app.models.membership import TenantMembership
from app.schemas.sso import (
    OIDCDiscoverRequest,
    OIDCDiscoveryRead,
    SSOConnectionCreate,
    SSOConnectionDeleted,
    SSOConnectionRead,
    SSOConnectionUpdate,
    SSOLoginResponse,
    SSOUserRead,
)
from app.services import oidc
from app.services.jit_provisioning import ProvisioningResult
from app.services.sso import SSOService

router = APIRouter()


def _require_org_slug(org: Optional[str]) -> str:
    if not org:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "missing_organization", "message": "Organization slug required"},
        )
    return org


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _login_response(result: ProvisioningResult) -> SSOLoginResponse:
    return SSOLoginResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        organization_id=result.tenant_id,
        user=SSOUserRead.model_validate(result.user),
    )


# ═══════════════════════════════════════════════════
# SAML
# ═══════════════════════════════════════════════════

@router.get("/saml/login", status_code=status.HTTP_302_FOUND)
def saml_login(
    org: Optional[str] = Query(default=None),
    service: SSOService = Depends(deps.get_sso_service),
) -> Any:
    """Redirect the browser to the tenant's SAML IdP."""
    url = service.initiate_saml_login(_require_org_slug(org))
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


@router.get("/saml/login/{slug}", status_code=status.HTTP_302_FOUND)
def saml_login_by_slug(
    slug: str,
    service: SSOService = Depends(deps.get_sso_service),
) -> Any:
    return RedirectResponse(service.initiate_saml_login(slug), status_code=status.HTTP_302_FOUND)


@router.post("/saml/callback", response_model=SSOLoginResponse)
async def saml_callback(
    request: Request,
    SAMLResponse: Optional[str] = Form(default=None),
    RelayState: Optional[str] = Form(default=None),
    service: SSOService = Depends(deps.get_sso_service),
) -> Any:
    """Assertion Consumer Service (HTTP-POST binding)."""
    result = await service.handle_saml_callback(
        SAMLResponse, RelayState, ip_address=_client_ip(request),
    )
    return _login_response(result)


@router.get("/saml/metadata")
def saml_metadata(service: SSOService = Depends(deps.get_sso_service)) -> Response:
    """SP metadata for IdP administrators."""
    return Response(content=service.saml_metadata(), media_type="application/xml")


# ═══════════════════════════════════════════════════
# OIDC
# ═══════════════════════════════════════════════════

@router.get("/oidc/login", status_code=status.HTTP_302_FOUND)
async def oidc_login(
    org: Optional[str] = Query(default=None),
    service: SSOService = Depends(deps.get_sso_service),
) -> Any:
    """Redirect the browser to the tenant's OIDC authorization endpoint."""
    url = await service.initiate_oidc_login(_require_org_slug(org))
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


@router.get("/oidc/login/{slug}", status_code=status.HTTP_302_FOUND)
async def oidc_login_by_slug(
    slug: str,
    service: SSOService = Depends(deps.get_sso_service),
) -> Any:
    url = await service.initiate_oidc_login(slug)
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


@router.get("/oidc/callback", response_model=SSOLoginResponse)
async def oidc_callback(
    request: Request,
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    service: SSOService = Depends(deps.get_sso_service),
) -> Any:
    result = await service.handle_oidc_callback(code, state, ip_address=_client_ip(request))
    return _login_response(result)


@router.post("/oidc/discover", response_model=OIDCDiscoveryRead)
async def oidc_discover(
    body: OIDCDiscoverRequest,
    _: TenantMembership = Depends(deps.require_org_admin),
    transport: Optional[httpx.AsyncBaseTransport] = Depends(deps.get_http_transport),
) -> Any:
    """Test an OIDC discovery URL before saving a connection."""
    discovery = await oidc.discover(body.discovery_url, transport=transport)
    return discovery.as_dict()


# ═══════════════════════════════════════════════════
# Admin: tenant SSO connection
# ═══════════════════════════════════════════════════

@router.post(
    "/connections",
    response_model=SSOConnectionRead,
    status_code=status.HTTP_201_CREATED,
)
def create_connection(
    body: SSOConnectionCreate,
    db: Session = Depends(deps.get_db),
    membership: TenantMembership = Depends(deps.require_org_admin),
) -> Any:
    connection = crud_sso.create(db, tenant_id=membership.tenant_id, obj_in=body)
    return SSOConnectionRead.masked(connection)


@router.get("/connections", response_model=SSOConnectionRead)
def read_connection(
    db: Session = Depends(deps.get_db),
    membership: TenantMembership = Depends(deps.require_org_admin),
) -> Any:
    connection = crud_sso.get(db, membership.tenant_id)
    if not connection:
        raise NotFoundError("No SSO connection configured")
    return SSOConnectionRead.masked(connection)


@router.put("/connections", response_model=SSOConnectionRead)
def update_connection(
    body: SSOConnectionUpdate,
    db: Session = Depends(deps.get_db),
    membership: TenantMembership = Depends(deps.require_org_admin),
) -> Any:
    """Update the connection. A body with only ``enabled`` toggles it."""
    if body.model_fields_set == {"enabled"} and body.enabled is not None:
        connection = crud_sso.toggle(db, tenant_id=membership.tenant_id, enabled=body.enabled)
    else:
        connection = crud_sso.update(db, tenant_id=membership.tenant_id, obj_in=body)
    return SSOConnectionRead.masked(connection)


@router.delete("/connections", response_model=SSOConnectionDeleted)
def delete_connection(
    db: Session = Depends(deps.get_db),
    membership: TenantMembership = Depends(deps.require_org_admin),
) -> Any:
    crud_sso.delete(db, tenant_id=membership.tenant_id)
    return SSOConnectionDeleted()
