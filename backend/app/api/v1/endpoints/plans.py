"""
Public plans endpoint — no authentication required.
Returns the plan catalog for the landing page pricing section.
"""
from fastapi import APIRouter

from app.core.config import settings
from app.schemas.plan import PublicPlanResponse
from app.services.plan_catalog import PAID_PLAN_TYPES, list_plans

router = APIRouter()


@router.get("", response_model=list[PublicPlanResponse])
async def list_public_plans() -> list[PublicPlanResponse]:
    """List catalog plans (public, no auth required)."""
    prices = settings.stripe_price_ids
    return [
        PublicPlanResponse.from_definition(
            plan,
            is_purchasable=(
                plan.plan_type.value in PAID_PLAN_TYPES
                and plan.plan_type.value in prices
            ),
        )
        for plan in list_plans()
    ]
