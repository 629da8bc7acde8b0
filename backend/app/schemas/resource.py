"""
Pydantic schemas for tenant resources gated by plan entitlements.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.schemas.billing import PlanLimitsResponse, UsageCountsResponse


class CustomerCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=50)


class CustomerResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    created_at: datetime


class WorkerCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    specialty: Optional[str] = Field(default=None, max_length=255)


class WorkerResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    name: str
    specialty: Optional[str] = None
    created_at: datetime


class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    price: Decimal = Field(default=Decimal("0"), ge=0)
    stock: int = Field(default=0, ge=0)


class ProductResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    name: str
    price: Decimal
    stock: int
    created_at: datetime


class QueueEntryCreate(BaseModel):
    customer_name: str = Field(..., min_length=1, max_length=255)


class QueueEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    customer_name: str
    status: str
    created_at: datetime


class FeedbackCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(default=None, max_length=2000)


class FeedbackResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    rating: int
    comment: Optional[str] = None
    created_at: datetime


class ResourceUsageResponse(BaseModel):
    """Live counts next to the limits of the plan that currently applies."""

    plan_type: str
    usage: UsageCountsResponse
    limits: PlanLimitsResponse
