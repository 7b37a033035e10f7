from app.db.base_class import Base
from app.models.tenant import Tenant
from app.models.user import User, UserRole
from app.models.membership import OrgRole, TenantMembership
from app.models.sso_config import SsoConnection, SsoProvider
from app.models.audit import AuditLog
