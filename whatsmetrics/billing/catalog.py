from dataclasses import asdict, dataclass
from enum import Enum
from typing import Literal


class PlanSlug(str, Enum):
    BASIC = "basic"
    PROFESSIONAL = "professional"
    PREMIUM = "premium"


FeatureName = Literal[
    "leads",
    "conversations",
    "reports",
    "ai_insights",
    "knowledge_base",
    "ai_chatbot",
    "audio_transcription",
    "image_analysis",
]


@dataclass(frozen=True)
class PlanCatalogEntry:
    product_id: str
    display_name: str
    slug: PlanSlug


@dataclass(frozen=True)
class PlanEntitlements:
    plan: PlanSlug
    features: tuple[str, ...]
    ai_requests_per_month: int | None

    def as_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["plan"] = self.plan.value
        payload["features"] = list(self.features)
        return payload


PLAN_CATALOG: dict[str, PlanCatalogEntry] = {
    "prod_Tf0tjelJXAdXQq": PlanCatalogEntry("prod_Tf0tjelJXAdXQq", "Básico", PlanSlug.BASIC),
    "prod_Tf0t19oIyWqfYw": PlanCatalogEntry("prod_Tf0t19oIyWqfYw", "Profissional", PlanSlug.PROFESSIONAL),
    "prod_Tf0tDmMTZeQN1O": PlanCatalogEntry("prod_Tf0tDmMTZeQN1O", "Premium", PlanSlug.PREMIUM),
}
DEFAULT_PLAN_SLUG = PlanSlug.BASIC
EMAIL_FALLBACK_PLAN_NAME = "Premium"

_BASIC_FEATURES: tuple[str, ...] = ("leads", "conversations", "reports")
_PROFESSIONAL_FEATURES = _BASIC_FEATURES + ("ai_insights", "knowledge_base")
_PREMIUM_FEATURES = _PROFESSIONAL_FEATURES + ("ai_chatbot", "audio_transcription", "image_analysis")


def lookup_plan(product_id: str | None) -> PlanCatalogEntry | None:
    if not product_id:
        return None
    return PLAN_CATALOG.get(product_id)


def resolve_plan(product_id: str | None) -> PlanCatalogEntry:
    """Catalog entry for a Stripe product; unknown products fall back to basic."""
    entry = lookup_plan(product_id)
    if entry is not None:
        return entry
    return next(item for item in PLAN_CATALOG.values() if item.slug is DEFAULT_PLAN_SLUG)


def email_plan_name(product_id: str | None) -> str:
    """Plan name shown in subscription emails; unknown products read as Premium."""
    entry = lookup_plan(product_id)
    return entry.display_name if entry is not None else EMAIL_FALLBACK_PLAN_NAME


def parse_plan_slug(value: str | None) -> PlanSlug:
    if value == PlanSlug.PROFESSIONAL.value:
        return PlanSlug.PROFESSIONAL
    if value == PlanSlug.PREMIUM.value:
        return PlanSlug.PREMIUM
    return PlanSlug.BASIC


def get_entitlements(plan: PlanSlug | str | None) -> PlanEntitlements:
    resolved_plan = plan if isinstance(plan, PlanSlug) else parse_plan_slug(plan)

    if resolved_plan is PlanSlug.PREMIUM:
        return PlanEntitlements(plan=resolved_plan, features=_PREMIUM_FEATURES, ai_requests_per_month=None)

    if resolved_plan is PlanSlug.PROFESSIONAL:
        return PlanEntitlements(plan=resolved_plan, features=_PROFESSIONAL_FEATURES, ai_requests_per_month=500)

    return PlanEntitlements(plan=PlanSlug.BASIC, features=_BASIC_FEATURES, ai_requests_per_month=50)


def has_feature(plan: PlanSlug | str | None, feature: FeatureName) -> bool:
    return feature in get_entitlements(plan).features
