"""
Pydantic schemas for Billing API — subscription snapshot, checkout, verification.
"""
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class SubscriptionDetail(BaseModel):
    """Subscription row as exposed to the tenant (also the cached snapshot)."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    plan_type: str
    status: str
    external_subscription_ref: Optional[str] = None
    external_customer_ref: Optional[str] = None
    external_price_ref: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    cancellation_requested: bool = False
    cancellation_requested_at: Optional[datetime] = None
    cancellation_approved: bool = False
    cancellation_approved_at: Optional[datetime] = None
    pending_renewal: bool = False
    renewal_approved_at: Optional[datetime] = None
    last_reminder_sent_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PlanLimitsResponse(BaseModel):
    """Numeric quotas; null = unlimited."""

    maxCustomers: Optional[int] = None
    maxWorkers: Optional[int] = None
    maxProducts: Optional[int] = None
    maxLocations: Optional[int] = None


class UsageCountsResponse(BaseModel):
    """Live resource counts for the tenant."""

    customers: int = 0
    workers: int = 0
    products: int = 0


class SubscriptionInfoResponse(BaseModel):
    """Full subscription state for the current tenant."""

    has_subscription: bool
    subscription: Optional[SubscriptionDetail] = None
    plan_type: str = Field(..., description="Plan whose entitlements currently apply")
    status: str
    limits: PlanLimitsResponse
    features: list[str]
    usage: UsageCountsResponse
    is_active: bool
    is_trial: bool
    is_expired: bool
    days_remaining: Optional[int] = None


class CheckoutSessionRequest(BaseModel):
    """Start a Stripe Checkout for a paid plan."""

    plan_type: str = Field(..., description="starter|professional|enterprise")
    success_url: Optional[str] = Field(default=None, max_length=2048)
    cancel_url: Optional[str] = Field(default=None, max_length=2048)


class CheckoutSessionResponse(BaseModel):
    checkout_url: str
    session_id: str


class VerifyCheckoutRequest(BaseModel):
    """Fallback verification after the checkout redirect."""

    session_id: Optional[str] = Field(default=None, max_length=255)


class VerifyCheckoutResponse(BaseModel):
    success: bool = True
    outcome: str
    already_applied: bool = False
    tenant_id: Optional[UUID] = None
    subscription: Optional[SubscriptionDetail] = None


class CancellationRequestResponse(BaseModel):
    success: bool = True
    already_requested: bool = False
    subscription: SubscriptionDetail


class PlanChangeRequest(BaseModel):
    """Tenant asks the operator to move them to another paid plan."""

    model_config = ConfigDict(populate_by_name=True)

    target_plan: str = Field(..., alias="targetPlan", description="starter|professional|enterprise")
    description: str = Field(..., min_length=1, max_length=2000)


class PlanChangeRequestResponse(BaseModel):
    success: bool = True
    notified: bool
    subscription: SubscriptionDetail


class WebhookResponse(BaseModel):
    status: str = "ok"
    event: str
    outcome: str
