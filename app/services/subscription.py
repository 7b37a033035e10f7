"""
Subscription Plans Configuration

Defines the plan feature matrix for Free, Pro, Growth and Scale tiers.
Enterprise SSO is a Scale-only feature.
"""
from typing import Optional

from sqlalchemy.orm import Session

from app.core.exceptions import NotFoundError, PlanRestrictedError
from app.models.tenant import Tenant

PLAN_MATRIX = {
    "free": {
        "display_name": "Free",
        "price_monthly_usd": 0,
        "features": {
            "audit_logs": False,
            "sso": False,
            "api_access": False,
        },
    },
    "pro": {
        "display_name": "Pro",
        "price_monthly_usd": 79,
        "features": {
            "audit_logs": True,
            "sso": False,
            "api_access": True,
        },
    },
    "growth": {
        "display_name": "Growth",
        "price_monthly_usd": 149,
        "features": {
            "audit_logs": True,
            "sso": False,
            "api_access": True,
        },
    },
    "scale": {
        "display_name": "Scale",
        "price_monthly_usd": 299,
        "features": {
            "audit_logs": True,
            "sso": True,
            "api_access": True,
        },
    },
}

_UPGRADE_ORDER = ("pro", "growth", "scale")


def get_plan(plan_name: Optional[str]) -> dict:
    """Get plan config by name. Falls back to 'free'."""
    return PLAN_MATRIX.get((plan_name or "free").lower(), PLAN_MATRIX["free"])


def get_plan_feature(plan_name: Optional[str], feature: str) -> bool:
    """Check if a feature is available for a plan."""
    plan = get_plan(plan_name)
    return plan["features"].get(feature, False)


def get_upgrade_suggestion(current_plan: Optional[str], feature: str) -> Optional[str]:
    """Suggest which plan to upgrade to for a given feature."""
    if get_plan_feature(current_plan, feature):
        return None  # Already available

    for plan_name in _UPGRADE_ORDER:
        if get_plan_feature(plan_name, feature):
            plan = get_plan(plan_name)
            return (
                f"Upgrade to the {plan['display_name']} plan "
                f"(${plan['price_monthly_usd']}/mo) to use this feature"
            )
    return None


def require_sso_entitlement(db: Session, tenant_id) -> Tenant:
    """Raise ``PlanRestrictedError`` unless the tenant's plan includes SSO."""
    tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
    if not tenant:
        raise NotFoundError("Organization not found")
    if not get_plan_feature(tenant.plan, "sso"):
        raise PlanRestrictedError(
            "SSO is only available on the Scale plan",
            extra={"upgrade": get_upgrade_suggestion(tenant.plan, "sso")},
        )
    return tenant
