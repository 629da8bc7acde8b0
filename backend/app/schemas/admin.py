"""
Pydantic schemas for the operator (super admin) API.
"""
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.schemas.billing import SubscriptionDetail


class PaginationMeta(BaseModel):
    total: int
    page: int
    pages: int
    limit: int


class ApprovalDecisionRequest(BaseModel):
    """Body for both approval surfaces."""

    model_config = ConfigDict(populate_by_name=True)

    subscription_id: UUID = Field(..., alias="subscriptionId")
    approve: bool


class RenewalApprovalRequest(BaseModel):
    """Body for the renewal approval; there is nothing to reject."""

    model_config = ConfigDict(populate_by_name=True)

    subscription_id: UUID = Field(..., alias="subscriptionId")


class ApprovalDecisionResponse(BaseModel):
    success: bool = True
    subscription: SubscriptionDetail


class TenantSubscriptionItem(BaseModel):
    """Subscription row with the tenant identity, for review queues."""

    subscription: SubscriptionDetail
    tenant_email: str
    tenant_name: Optional[str] = None
    business_name: Optional[str] = None


class StripeEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event_id: str
    event_type: str
    status: str
    outcome: Optional[str] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    tenant_id: Optional[UUID] = None
    error_message: Optional[str] = None
    created_at: datetime


class StripeEventListResponse(BaseModel):
    items: list[StripeEventResponse]
    pagination: PaginationMeta


class AuditLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    actor_id: Optional[UUID]
    actor_email: Optional[str] = None
    action: str
    target_type: Optional[str]
    target_id: Optional[str]
    changes: Optional[dict[str, Any]]
    ip_address: Optional[str]
    created_at: datetime


class AuditLogListResponse(BaseModel):
    items: list[AuditLogResponse]
    pagination: PaginationMeta
