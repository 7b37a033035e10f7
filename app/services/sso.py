"""
SSO login orchestration (SAML 2.0 and OIDC).

Login:    tenant slug → enabled connection → protocol redirect URL
Callback: protocol response → trust checks → email-domain check
          → JIT provisioning → audit → application tokens

Every callback outcome is counted in ``sso_logins_total``. Security-relevant
rejections (domain, certificate, ID token) are logged on the security logger
and leave an ``sso_login_rejected`` audit row for the tenant.
"""
import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.core.exceptions import (
    DomainMismatchError,
    CertMismatchError,
    InvalidOrExpiredStateError,
    MalformedResponseError,
    NotFoundError,
    SSOError,
)
from app.crud import crud_audit, crud_sso, crud_tenant
from app.logging_config import SECURITY_LOGGER_NAME, tenant_id_ctx
from app.middleware.metrics import record_sso_login
from app.models.sso_config import SsoConnection, SsoProvider
from app.models.tenant import Tenant
from app.services import oidc, saml
from app.services.handshake_store import HandshakeState, HandshakeStore
from app.services.jit_provisioning import (
    FederatedIdentity,
    ProvisioningResult,
    derive_role,
    provision_sso_user,
)

logger = logging.getLogger("salesintel.sso")
security_logger = logging.getLogger(SECURITY_LOGGER_NAME)

AUDIT_ACTION_LOGIN = "sso_login"
AUDIT_ACTION_REJECTED = "sso_login_rejected"

FIRST_NAME_ALIASES = ("firstName", "givenName", "first_name", "given_name")
LAST_NAME_ALIASES = ("lastName", "surname", "last_name", "family_name")
GROUP_ALIASES = ("groups", "memberOf", "Group")


@dataclass
class _CallbackContext:
    provider: SsoProvider
    tenant_id: Optional[uuid.UUID] = None
    ip_address: Optional[str] = None


class SSOService:
    def __init__(
        self,
        db: Session,
        handshake_store: HandshakeStore,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.handshake_store = handshake_store
        self._transport = transport
        self._clock = clock

    # ─── shared steps ───

    def _tenant_by_slug(self, slug: str) -> Tenant:
        tenant = crud_tenant.get_by_slug(self.db, slug) if slug else None
        if not tenant:
            raise NotFoundError("Organization not found")
        return tenant

    def _tenant_by_id(self, raw_id) -> Tenant:
        try:
            tenant_id = raw_id if isinstance(raw_id, uuid.UUID) else uuid.UUID(str(raw_id))
        except ValueError:
            raise NotFoundError("Organization not found")
        tenant = crud_tenant.get(self.db, tenant_id)
        if not tenant:
            raise NotFoundError("Organization not found")
        return tenant

    @staticmethod
    def _enforce_domain(tenant: Tenant, email: str) -> None:
        if not crud_tenant.email_in_domain(tenant, email):
            asserted = email.partition("@")[2].lower()
            raise DomainMismatchError(
                f"Email domain {asserted} does not match organization domain {tenant.domain}"
            )
        if email.count("@") != 1:
            raise MalformedResponseError("Asserted identity is not a single email address")

    def _finish_login(
        self,
        ctx: _CallbackContext,
        connection: SsoConnection,
        identity: FederatedIdentity,
    ) -> ProvisioningResult:
        result = provision_sso_user(self.db, identity)
        crud_audit.create_audit_log(
            self.db,
            tenant_id=identity.tenant_id,
            actor_user_id=result.user.id,
            action=AUDIT_ACTION_LOGIN,
            target_type="user",
            target_id=str(result.user.id),
            target_name=result.user.email,
            details={"provider": ctx.provider.value, "connection_name": connection.name},
            ip_address=ctx.ip_address,
        )
        logger.info(
            "SSO login succeeded: provider=%s tenant=%s user=%s",
            ctx.provider.value, identity.tenant_id, result.user.id,
        )
        return result

    def _audit_rejection(self, ctx: _CallbackContext, exc: SSOError) -> None:
        if ctx.tenant_id is None:
            return
        self.db.rollback()
        crud_audit.create_audit_log(
            self.db,
            tenant_id=ctx.tenant_id,
            actor_user_id=None,
            action=AUDIT_ACTION_REJECTED,
            details={"provider": ctx.provider.value, "reason": exc.error_code},
            ip_address=ctx.ip_address,
        )

    @contextmanager
    def _callback_outcome(self, ctx: _CallbackContext) -> Iterator[_CallbackContext]:
        try:
            yield ctx
        except SSOError as exc:
            if exc.security_relevant:
                record_sso_login(ctx.provider.value, "rejected")
                security_logger.warning(
                    "SSO login rejected: kind=%s provider=%s tenant=%s reason=%s",
                    exc.error_code, ctx.provider.value, ctx.tenant_id, exc.message,
                    extra={"event": "sso_login_rejected"},
                )
                self._audit_rejection(ctx, exc)
            else:
                record_sso_login(ctx.provider.value, "failed")
                logger.warning(
                    "SSO login failed: kind=%s provider=%s tenant=%s reason=%s",
                    exc.error_code, ctx.provider.value, ctx.tenant_id, exc.message,
                )
            raise
        else:
            record_sso_login(ctx.provider.value, "success")

    # ─── SAML ───

    def initiate_saml_login(self, slug: str) -> str:
        """Return the IdP redirect URL carrying the AuthnRequest and RelayState."""
        tenant = self._tenant_by_slug(slug)
        connection = crud_sso.get_enabled_connection(self.db, tenant.id, SsoProvider.SAML)
        config = crud_sso.as_protocol_settings(connection)

        request_xml = saml.build_authn_request(
            settings.saml_sp_entity_id, settings.saml_acs_url, config.sso_url,
        )
        return saml.build_redirect_url(
            config.sso_url, saml.encode_for_redirect(request_xml), str(tenant.id),
        )

    async def handle_saml_callback(
        self,
        saml_response: Optional[str],
        relay_state: Optional[str],
        *,
        ip_address: Optional[str] = None,
    ) -> ProvisioningResult:
        ctx = _CallbackContext(provider=SsoProvider.SAML, ip_address=ip_address)
        with self._callback_outcome(ctx):
            if not saml_response or not relay_state:
                raise MalformedResponseError("Missing SAMLResponse or RelayState")

            response_xml = saml.decode_post_response(saml_response)
            tenant = self._tenant_by_id(relay_state)
            ctx.tenant_id = tenant.id
            tenant_id_ctx.set(str(tenant.id))

            connection = crud_sso.get_enabled_connection(self.db, tenant.id, SsoProvider.SAML)
            config = crud_sso.as_protocol_settings(connection)

            if config.certificate and not saml.verify_certificate_fingerprint(
                response_xml, config.certificate
            ):
                raise CertMismatchError("SAML certificate fingerprint mismatch")

            assertion = saml.parse_response(response_xml)
            email = assertion.name_id
            if "@" not in email:
                raise MalformedResponseError("SAML NameID is not an email address")
            self._enforce_domain(tenant, email)

            groups = assertion.attribute(*GROUP_ALIASES) or ""
            identity = FederatedIdentity(
                email=email,
                first_name=assertion.attribute(*FIRST_NAME_ALIASES) or email.split("@", 1)[0],
                last_name=assertion.attribute(*LAST_NAME_ALIASES) or "",
                tenant_id=tenant.id,
                role=derive_role(groups.split(",")),
            )
            return self._finish_login(ctx, connection, identity)

    def saml_metadata(self) -> str:
        return saml.build_sp_metadata(settings.saml_sp_entity_id, settings.saml_acs_url)

    # ─── OIDC ───

    async def _discover(self, config: crud_sso.OidcSettings) -> oidc.OidcDiscovery:
        url = oidc.discovery_url_for(config.discovery_url, config.issuer)
        return await oidc.discover(url, transport=self._transport)

    async def initiate_oidc_login(self, slug: str) -> str:
        """Persist the PKCE handshake and return the IdP authorization URL."""
        tenant = self._tenant_by_slug(slug)
        connection = crud_sso.get_enabled_connection(self.db, tenant.id, SsoProvider.OIDC)
        config = crud_sso.as_protocol_settings(connection)
        discovery = await self._discover(config)

        code_verifier = oidc.generate_code_verifier()
        state = oidc.generate_state()
        self.handshake_store.save(
            state,
            HandshakeState(code_verifier=code_verifier, tenant_id=str(tenant.id)),
            settings.SSO_STATE_TTL_SECONDS,
        )
        return oidc.build_authorization_url(
            discovery.authorization_endpoint,
            client_id=config.client_id,
            redirect_uri=settings.oidc_redirect_uri,
            state=state,
            code_challenge=oidc.build_code_challenge(code_verifier),
        )

    async def handle_oidc_callback(
        self,
        code: Optional[str],
        state: Optional[str],
        *,
        ip_address: Optional[str] = None,
    ) -> ProvisioningResult:
        ctx = _CallbackContext(provider=SsoProvider.OIDC, ip_address=ip_address)
        with self._callback_outcome(ctx):
            if not code or not state:
                raise MalformedResponseError("Missing code or state")

            handshake = self.handshake_store.consume(state)
            if handshake is None:
                raise InvalidOrExpiredStateError("Invalid or expired SSO state")

            tenant = self._tenant_by_id(handshake.tenant_id)
            ctx.tenant_id = tenant.id
            tenant_id_ctx.set(str(tenant.id))

            connection = crud_sso.get_enabled_connection(self.db, tenant.id, SsoProvider.OIDC)
            config = crud_sso.as_protocol_settings(connection)
            discovery = await self._discover(config)

            tokens = await oidc.exchange_code(
                discovery.token_endpoint,
                code=code,
                code_verifier=handshake.code_verifier,
                client_id=config.client_id,
                client_secret=config.client_secret,
                redirect_uri=settings.oidc_redirect_uri,
                transport=self._transport,
            )
            claims = oidc.decode_id_token_claims(tokens.get("id_token"))
            oidc.validate_id_token_claims(
                claims, issuer=config.issuer, client_id=config.client_id, now=self._clock(),
            )

            federated = oidc.extract_identity(claims)
            self._enforce_domain(tenant, federated.email)

            identity = FederatedIdentity(
                email=federated.email,
                first_name=federated.first_name,
                last_name=federated.last_name,
                tenant_id=tenant.id,
                role=derive_role(federated.groups),
            )
            return self._finish_login(ctx, connection, identity)
