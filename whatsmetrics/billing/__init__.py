from whatsmetrics.billing.catalog import (
    PLAN_CATALOG,
    FeatureName,
    PlanCatalogEntry,
    PlanEntitlements,
    PlanSlug,
    email_plan_name,
    get_entitlements,
    has_feature,
    parse_plan_slug,
    resolve_plan,
)

__all__ = [
    "PLAN_CATALOG",
    "FeatureName",
    "PlanCatalogEntry",
    "PlanEntitlements",
    "PlanSlug",
    "email_plan_name",
    "get_entitlements",
    "has_feature",
    "parse_plan_slug",
    "resolve_plan",
]
