"""
Plan catalog tests — limits, feature tables and plan name parsing.
"""
from __future__ import annotations

import pytest

from app.services.plan_catalog import (
    PAID_PLAN_TYPES,
    PLAN_CATALOG,
    TRIAL_CAP,
    Feature,
    PlanType,
    ResourceKind,
    get_plan,
    list_plans,
    normalize_plan_type,
)


def test_trial_features_are_subset_of_every_paid_plan() -> None:
    trial = PLAN_CATALOG[PlanType.TRIAL]
    for plan_type in (PlanType.STARTER, PlanType.PROFESSIONAL, PlanType.ENTERPRISE):
        assert trial.features <= PLAN_CATALOG[plan_type].features


def test_trial_customer_limit_matches_hardcoded_cap() -> None:
    assert get_plan(PlanType.TRIAL).limits.for_resource(ResourceKind.CUSTOMERS) == TRIAL_CAP


def test_enterprise_is_unlimited() -> None:
    limits = get_plan("enterprise").limits
    for resource in ResourceKind:
        assert limits.for_resource(resource) is None


def test_limits_as_dict_uses_camel_case_keys() -> None:
    assert get_plan("starter").limits.as_dict() == {
        "maxCustomers": 15,
        "maxWorkers": None,
        "maxProducts": None,
        "maxLocations": 1,
    }


def test_professional_unlocks_inventory_and_feedback() -> None:
    professional = get_plan(PlanType.PROFESSIONAL)
    assert professional.has_feature(Feature.INVENTORY_TRACKING)
    assert professional.has_feature(Feature.CUSTOMER_FEEDBACK)
    assert not get_plan(PlanType.STARTER).has_feature(Feature.INVENTORY_TRACKING)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("professional", PlanType.PROFESSIONAL),
        (" Starter ", PlanType.STARTER),
        (PlanType.ENTERPRISE, PlanType.ENTERPRISE),
        ("gold", None),
        (None, None),
    ],
)
def test_normalize_plan_type(raw: object, expected: PlanType | None) -> None:
    assert normalize_plan_type(raw) == expected


def test_unknown_plan_resolves_to_trial() -> None:
    assert get_plan("legacy-plan").plan_type == PlanType.TRIAL


def test_paid_plan_types_exclude_trial() -> None:
    assert PlanType.TRIAL.value not in PAID_PLAN_TYPES
    assert [plan.plan_type for plan in list_plans()] == list(PlanType)
