"""
Entitlement evaluation — feature flags and resource quotas per tenant.

The pure evaluators (``is_allowed`` / ``is_within_limit``) take anything with
``status``, ``plan_type`` and ``current_period_start`` (ORM row or cached
snapshot) or ``None`` for a tenant without a subscription row. The async
``require_*`` helpers resolve the subscription, count live usage and raise a
structured denial.
"""
from __future__ import annotations

import logging
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.subscription import PAID_ACCESS_STATUSES, SubscriptionStatus
from app.services.plan_catalog import (
    TRIAL_CAP,
    TRIAL_CAP_RESOURCE,
    Feature,
    PlanDefinition,
    PlanType,
    ResourceKind,
    get_plan,
)
from app.services.subscription_cache import SubscriptionCache
from app.services.usage_counter_service import UsageCounterService

logger = logging.getLogger(__name__)


class LimitReachedError(Exception):
    """Raised when creating one more unit of a resource would exceed the plan quota."""

    def __init__(
        self,
        detail: str,
        *,
        resource: ResourceKind,
        current_count: int,
        max_limit: int,
        plan_type: str,
        code: str = "limit_reached",
    ) -> None:
        self.detail = detail
        self.code = code
        self.resource = resource
        self.current_count = current_count
        self.max_limit = max_limit
        self.plan_type = plan_type
        super().__init__(detail)


class FeatureNotAvailableError(Exception):
    """Raised when the tenant's plan does not include a feature."""

    def __init__(
        self,
        detail: str,
        *,
        feature: Feature,
        plan_type: str,
        code: str = "feature_not_available",
    ) -> None:
        self.detail = detail
        self.code = code
        self.feature = feature
        self.plan_type = plan_type
        super().__init__(detail)


def has_paid_access(subscription: Optional[Any]) -> bool:
    """
    Stored plan applies only to an approved cycle that is active or past_due.

    Absent rows, trial, pending, terminal states, and a past_due cycle that was
    never approved (no period bounds) all fall back to the trial plan.
    """
    if subscription is None:
        return False
    if subscription.status not in PAID_ACCESS_STATUSES:
        return False
    if subscription.status == SubscriptionStatus.PAST_DUE.value:
        return subscription.current_period_start is not None
    return True


def effective_plan(subscription: Optional[Any]) -> PlanDefinition:
    """Catalog entry whose entitlements currently apply."""
    if has_paid_access(subscription):
        return get_plan(subscription.plan_type)
    return get_plan(PlanType.TRIAL)


def resource_limit(subscription: Optional[Any], resource: ResourceKind) -> Optional[int]:
    """Quota for ``resource``; ``None`` = unlimited. No row = hardcoded trial cap."""
    if subscription is None and resource == TRIAL_CAP_RESOURCE:
        return TRIAL_CAP
    return effective_plan(subscription).limits.for_resource(resource)


def is_allowed(subscription: Optional[Any], feature: Feature) -> bool:
    return effective_plan(subscription).has_feature(feature)


def is_within_limit(
    subscription: Optional[Any],
    resource: ResourceKind,
    current_count: int,
) -> bool:
    """``current_count < limit``; an unlimited quota always passes."""
    limit_value = resource_limit(subscription, resource)
    if limit_value is None:
        return True
    return current_count < limit_value


class EntitlementService:
    """Call-site helpers used by every resource-creating endpoint."""

    @staticmethod
    async def resolve_subscription(db: AsyncSession, tenant_id: UUID):
        return await SubscriptionCache.get_snapshot(db, tenant_id)

    @staticmethod
    async def require_feature(
        db: AsyncSession,
        tenant_id: UUID,
        feature: Feature,
    ) -> None:
        """Raise FeatureNotAvailableError if the tenant's plan lacks ``feature``."""
        subscription = await EntitlementService.resolve_subscription(db, tenant_id)
        if is_allowed(subscription, feature):
            return

        plan = effective_plan(subscription)
        logger.warning(
            "entitlement_denied: feature=%s tenant=%s plan=%s",
            feature.value, tenant_id, plan.plan_type.value,
        )
        raise FeatureNotAvailableError(
            f"Your {plan.display_name} plan does not include {feature.value}. "
            f"Upgrade your plan to unlock it.",
            feature=feature,
            plan_type=plan.plan_type.value,
        )

    @staticmethod
    async def require_feature_or_capacity(
        db: AsyncSession,
        tenant_id: UUID,
        feature: Feature,
        resource: ResourceKind,
    ) -> None:
        """
        Feature gate with a quota allowance.

        Plans without ``feature`` may still use it while the tenant is under
        its ``resource`` quota; past that the denial names the missing feature.
        """
        subscription = await EntitlementService.resolve_subscription(db, tenant_id)
        if is_allowed(subscription, feature):
            return

        current = await UsageCounterService.count(db, tenant_id, resource)
        if is_within_limit(subscription, resource, current):
            logger.info(
                "entitlement_allowance: feature=%s tenant=%s %s=%d",
                feature.value, tenant_id, resource.value, current,
            )
            return

        plan = effective_plan(subscription)
        logger.warning(
            "entitlement_denied: feature=%s tenant=%s plan=%s %s=%d",
            feature.value, tenant_id, plan.plan_type.value, resource.value, current,
        )
        raise FeatureNotAvailableError(
            f"{feature.value} is not included in your {plan.display_name} plan and "
            f"you have reached its {resource.value} limit. Upgrade your plan to continue.",
            feature=feature,
            plan_type=plan.plan_type.value,
        )

    @staticmethod
    async def require_capacity(
        db: AsyncSession,
        tenant_id: UUID,
        resource: ResourceKind,
    ) -> int:
        """
        Raise LimitReachedError if one more ``resource`` would exceed the quota.

        Returns:
            The live count the decision was based on.
        """
        subscription = await EntitlementService.resolve_subscription(db, tenant_id)
        current = await UsageCounterService.count(db, tenant_id, resource)
        if is_within_limit(subscription, resource, current):
            return current

        plan = effective_plan(subscription)
        limit_value = resource_limit(subscription, resource)
        logger.warning(
            "entitlement_denied: %s tenant=%s plan=%s current=%d limit=%s",
            resource.value, tenant_id, plan.plan_type.value, current, limit_value,
        )
        raise LimitReachedError(
            f"You have reached the {resource.value} limit of your {plan.display_name} "
            f"plan ({current}/{limit_value}). Upgrade your plan to add more.",
            resource=resource,
            current_count=current,
            max_limit=int(limit_value or 0),
            plan_type=plan.plan_type.value,
        )
