"""
SSO connection store.

One connection per tenant (unique ``tenant_id``). ``create``, ``update`` and
``toggle`` require the tenant's plan to include SSO; ``delete`` is a soft
disable and is always allowed so a downgraded tenant can still switch SSO off.
Required-field validation runs before anything is written.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.exceptions import ConflictError, InvalidConfigError, NotFoundError
from app.models.sso_config import SsoConnection, SsoProvider
from app.schemas.sso import OidcConnectionCreate, SamlConnectionCreate, SSOConnectionUpdate
from app.services.saml import is_valid_certificate
from app.services.subscription import require_sso_entitlement

logger = logging.getLogger("salesintel.sso")

SAML_FIELDS = ("entity_id", "sso_url", "certificate")
OIDC_FIELDS = ("client_id", "client_secret", "issuer", "discovery_url")
# Non-nullable columns an update may name
REQUIRED_COLUMNS = ("provider", "name", "enabled")


@dataclass(frozen=True)
class SamlSettings:
    entity_id: str
    sso_url: str
    certificate: str


@dataclass(frozen=True)
class OidcSettings:
    client_id: str
    client_secret: str
    issuer: Optional[str]
    discovery_url: Optional[str]


ProtocolSettings = Union[SamlSettings, OidcSettings]


def validate_connection_fields(provider: str, fields: Dict[str, Any]) -> None:
    """Raise ``InvalidConfigError`` if the provider's required fields are missing."""
    if provider == SsoProvider.SAML.value:
        if not (fields.get("entity_id") and fields.get("sso_url") and fields.get("certificate")):
            raise InvalidConfigError("SAML requires entity_id, sso_url, and certificate")
        if not is_valid_certificate(fields["certificate"]):
            raise InvalidConfigError("SAML certificate is not valid PEM or base64 DER")
    elif provider == SsoProvider.OIDC.value:
        if not (fields.get("client_id") and fields.get("client_secret")):
            raise InvalidConfigError("OIDC requires client_id and client_secret")
        if not (fields.get("issuer") or fields.get("discovery_url")):
            raise InvalidConfigError("OIDC requires issuer or discovery_url")
    else:
        raise InvalidConfigError(f"Unsupported SSO provider: {provider}")


def _connection_fields(connection: SsoConnection) -> Dict[str, Any]:
    return {name: getattr(connection, name) for name in SAML_FIELDS + OIDC_FIELDS}


def as_protocol_settings(connection: SsoConnection) -> ProtocolSettings:
    """Typed credentials for the connection's protocol engine."""
    validate_connection_fields(connection.provider, _connection_fields(connection))
    if connection.provider == SsoProvider.SAML.value:
        return SamlSettings(
            entity_id=connection.entity_id,
            sso_url=connection.sso_url,
            certificate=connection.certificate,
        )
    return OidcSettings(
        client_id=connection.client_id,
        client_secret=connection.client_secret,
        issuer=connection.issuer or None,
        discovery_url=connection.discovery_url or None,
    )


def get(db: Session, tenant_id: UUID) -> Optional[SsoConnection]:
    return db.query(SsoConnection).filter(SsoConnection.tenant_id == tenant_id).first()


def _get_or_404(db: Session, tenant_id: UUID) -> SsoConnection:
    connection = get(db, tenant_id)
    if not connection:
        raise NotFoundError("No SSO connection configured")
    return connection


def get_enabled_connection(db: Session, tenant_id: UUID, provider: SsoProvider) -> SsoConnection:
    connection = get(db, tenant_id)
    if not connection or not connection.enabled or connection.provider != provider.value:
        raise NotFoundError(f"{provider.value} SSO is not configured for this organization")
    return connection


def create(
    db: Session,
    *,
    tenant_id: UUID,
    obj_in: Union[SamlConnectionCreate, OidcConnectionCreate],
) -> SsoConnection:
    require_sso_entitlement(db, tenant_id)

    data = obj_in.model_dump()
    validate_connection_fields(obj_in.provider, data)

    if get(db, tenant_id):
        raise ConflictError("SSO connection already exists. Use update instead.")

    db_obj = SsoConnection(tenant_id=tenant_id, enabled=True, **data)
    db.add(db_obj)
    try:
        db.commit()
    except IntegrityError as exc:
        # lost the race against a concurrent create for the same tenant
        db.rollback()
        raise ConflictError("SSO connection already exists. Use update instead.") from exc
    db.refresh(db_obj)
    logger.info("SSO connection created: tenant=%s provider=%s", tenant_id, db_obj.provider)
    return db_obj


def update(db: Session, *, tenant_id: UUID, obj_in: SSOConnectionUpdate) -> SsoConnection:
    require_sso_entitlement(db, tenant_id)
    db_obj = _get_or_404(db, tenant_id)

    changes = obj_in.model_dump(exclude_unset=True)
    for field in REQUIRED_COLUMNS:
        if field in changes and changes[field] is None:
            raise InvalidConfigError(f"{field} cannot be null")
    if changes.get("provider") is not None:
        changes["provider"] = SsoProvider(changes["provider"]).value
    if "name" in changes and not changes["name"]:
        raise InvalidConfigError("Connection name cannot be empty")

    merged = _connection_fields(db_obj)
    merged.update({k: v for k, v in changes.items() if k in merged})
    validate_connection_fields(changes.get("provider") or db_obj.provider, merged)

    for field, value in changes.items():
        setattr(db_obj, field, value)
    db.add(db_obj)
    db.commit()
    db.refresh(db_obj)
    logger.info("SSO connection updated: tenant=%s fields=%s", tenant_id, sorted(changes))
    return db_obj


def toggle(db: Session, *, tenant_id: UUID, enabled: bool) -> SsoConnection:
    require_sso_entitlement(db, tenant_id)
    db_obj = _get_or_404(db, tenant_id)
    db_obj.enabled = enabled
    db.add(db_obj)
    db.commit()
    db.refresh(db_obj)
    logger.info("SSO connection %s: tenant=%s", "enabled" if enabled else "disabled", tenant_id)
    return db_obj


def delete(db: Session, *, tenant_id: UUID) -> SsoConnection:
    """Soft delete: the row stays so audit history keeps resolving."""
    db_obj = _get_or_404(db, tenant_id)
    db_obj.enabled = False
    db.add(db_obj)
    db.commit()
    db.refresh(db_obj)
    logger.info("SSO connection disabled (deleted): tenant=%s", tenant_id)
    return db_obj
