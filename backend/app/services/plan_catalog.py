"""
Static plan catalog — prices, numeric quotas and feature flags per plan tier.

Pure data, never mutated at runtime. ``None`` limits mean unlimited.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class PlanType(str, Enum):
    """Plan tiers. ``trial`` is the free tier every tenant falls back to."""

    TRIAL = "trial"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class Feature(str, Enum):
    """Boolean capabilities toggled per plan."""

    BASIC_QUEUE_MANAGEMENT = "basicQueueManagement"
    WORKER_MANAGEMENT = "workerManagement"
    BASIC_REPORTS = "basicReports"
    ADVANCED_QUEUE_SYSTEM = "advancedQueueSystem"
    INVENTORY_TRACKING = "inventoryTracking"
    PAYMENT_PROCESSING = "paymentProcessing"
    ADVANCED_ANALYTICS = "advancedAnalytics"
    MONITORING = "monitoring"
    CUSTOMER_FEEDBACK = "customerFeedback"
    MULTI_LOCATION_SUPPORT = "multiLocationSupport"
    CUSTOM_INTEGRATIONS = "customIntegrations"
    API_ACCESS = "apiAccess"
    WHITE_LABEL_OPTIONS = "whiteLabelOptions"


class ResourceKind(str, Enum):
    """Quota-bearing resources."""

    CUSTOMERS = "customers"
    WORKERS = "workers"
    PRODUCTS = "products"


# Primary resource for tenants with no subscription row
TRIAL_CAP_RESOURCE = ResourceKind.CUSTOMERS
TRIAL_CAP = 5

PAID_PLAN_TYPES: frozenset[str] = frozenset(
    {PlanType.STARTER.value, PlanType.PROFESSIONAL.value, PlanType.ENTERPRISE.value}
)


@dataclass(frozen=True)
class PlanLimits:
    """Numeric quotas; ``None`` = unlimited."""

    max_customers: Optional[int] = None
    max_workers: Optional[int] = None
    max_products: Optional[int] = None
    max_locations: Optional[int] = None

    def for_resource(self, resource: ResourceKind) -> Optional[int]:
        return {
            ResourceKind.CUSTOMERS: self.max_customers,
            ResourceKind.WORKERS: self.max_workers,
            ResourceKind.PRODUCTS: self.max_products,
        }[resource]

    def as_dict(self) -> dict[str, Optional[int]]:
        return {
            "maxCustomers": self.max_customers,
            "maxWorkers": self.max_workers,
            "maxProducts": self.max_products,
            "maxLocations": self.max_locations,
        }


@dataclass(frozen=True)
class PlanDefinition:
    """One catalog entry."""

    plan_type: PlanType
    display_name: str
    description: str
    price: int
    limits: PlanLimits
    features: frozenset[Feature] = field(default_factory=frozenset)
    period: str = "month"
    currency: str = "USD"

    def has_feature(self, feature: Feature) -> bool:
        return feature in self.features


_TRIAL_FEATURES = frozenset(
    {
        Feature.BASIC_QUEUE_MANAGEMENT,
        Feature.WORKER_MANAGEMENT,
    }
)

_STARTER_FEATURES = _TRIAL_FEATURES | {Feature.BASIC_REPORTS}

_PROFESSIONAL_FEATURES = _STARTER_FEATURES | {
    Feature.ADVANCED_QUEUE_SYSTEM,
    Feature.INVENTORY_TRACKING,
    Feature.PAYMENT_PROCESSING,
    Feature.ADVANCED_ANALYTICS,
    Feature.MONITORING,
    Feature.CUSTOMER_FEEDBACK,
    Feature.MULTI_LOCATION_SUPPORT,
}

_ENTERPRISE_FEATURES = _PROFESSIONAL_FEATURES | {
    Feature.CUSTOM_INTEGRATIONS,
    Feature.API_ACCESS,
    Feature.WHITE_LABEL_OPTIONS,
}

PLAN_CATALOG: dict[PlanType, PlanDefinition] = {
    PlanType.TRIAL: PlanDefinition(
        plan_type=PlanType.TRIAL,
        display_name="Trial",
        description="Free trial to explore the basics",
        price=0,
        limits=PlanLimits(max_customers=TRIAL_CAP, max_locations=1),
        features=_TRIAL_FEATURES,
    ),
    PlanType.STARTER: PlanDefinition(
        plan_type=PlanType.STARTER,
        display_name="Starter",
        description="For small businesses getting organized",
        price=29,
        limits=PlanLimits(max_customers=15, max_locations=1),
        features=_STARTER_FEATURES,
    ),
    PlanType.PROFESSIONAL: PlanDefinition(
        plan_type=PlanType.PROFESSIONAL,
        display_name="Professional",
        description="Inventory, feedback and analytics for growing teams",
        price=79,
        limits=PlanLimits(max_customers=50),
        features=_PROFESSIONAL_FEATURES,
    ),
    PlanType.ENTERPRISE: PlanDefinition(
        plan_type=PlanType.ENTERPRISE,
        display_name="Enterprise",
        description="Unlimited usage with integrations and white label",
        price=199,
        limits=PlanLimits(),
        features=_ENTERPRISE_FEATURES,
    ),
}


def normalize_plan_type(raw: object) -> Optional[PlanType]:
    """Parse a stored/metadata plan value; ``None`` when it is not a known plan."""
    if isinstance(raw, PlanType):
        return raw
    try:
        return PlanType(str(raw).strip().lower())
    except ValueError:
        return None


def get_plan(plan_type: object) -> PlanDefinition:
    """Catalog entry for ``plan_type``; unknown values resolve to the trial plan."""
    return PLAN_CATALOG[normalize_plan_type(plan_type) or PlanType.TRIAL]


def list_plans() -> list[PlanDefinition]:
    return list(PLAN_CATALOG.values())
