"""
Pydantic schemas for public Plan API.
"""
from pydantic import BaseModel

from app.schemas.billing import PlanLimitsResponse
from app.services.plan_catalog import PlanDefinition


class PublicPlanResponse(BaseModel):
    """Plan info exposed on the public pricing page (no auth required)."""

    name: str
    display_name: str
    description: str
    price: int
    currency: str
    period: str
    limits: PlanLimitsResponse
    features: list[str]
    is_purchasable: bool = False

    @classmethod
    def from_definition(cls, plan: PlanDefinition, *, is_purchasable: bool) -> "PublicPlanResponse":
        return cls(
            name=plan.plan_type.value,
            display_name=plan.display_name,
            description=plan.description,
            price=plan.price,
            currency=plan.currency,
            period=plan.period,
            limits=PlanLimitsResponse(**plan.limits.as_dict()),
            features=sorted(feature.value for feature in plan.features),
            is_purchasable=is_purchasable,
        )
