"""
Tenant resources — every create path goes through the entitlement checks.

Denials raise LimitReachedError / FeatureNotAvailableError; the handlers in
main.py turn them into the 403 bodies the frontend upgrade prompts read.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.dependencies import get_current_tenant, require_permissions
from app.core.rbac import Permission, is_super_admin
from app.models.resource import Customer, Feedback, Product, QueueEntry, Worker
from app.models.user import User
from app.schemas.billing import PlanLimitsResponse, UsageCountsResponse
from app.schemas.resource import (
    CustomerCreate,
    CustomerResponse,
    FeedbackCreate,
    FeedbackResponse,
    ProductCreate,
    ProductResponse,
    QueueEntryCreate,
    QueueEntryResponse,
    ResourceUsageResponse,
    WorkerCreate,
    WorkerResponse,
)
from app.services.entitlement_service import EntitlementService, effective_plan
from app.services.plan_catalog import Feature, ResourceKind
from app.services.usage_counter_service import UsageCounterService

logger = logging.getLogger(__name__)

router = APIRouter()


async def _check_entitlements(
    db: AsyncSession,
    current_user: User,
    tenant: User,
    *,
    feature: Feature | None = None,
    resource: ResourceKind | None = None,
) -> None:
    if is_super_admin(current_user.role, current_user.email):
        return
    if feature is not None:
        await EntitlementService.require_feature(db, tenant.id, feature)
    if resource is not None:
        await EntitlementService.require_capacity(db, tenant.id, resource)


@router.get("/usage", response_model=ResourceUsageResponse)
async def get_usage(
    _current_user: User = Depends(require_permissions(Permission.BILLING_READ_SELF)),
    tenant: User = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> ResourceUsageResponse:
    """Live counts next to the limits of the plan that applies now."""
    subscription = await EntitlementService.resolve_subscription(db, tenant.id)
    plan = effective_plan(subscription)
    usage = await UsageCounterService.get_usage_counts(db, tenant.id)
    return ResourceUsageResponse(
        plan_type=plan.plan_type.value,
        usage=UsageCountsResponse(**usage),
        limits=PlanLimitsResponse(**plan.limits.as_dict()),
    )


@router.post("/customers", response_model=CustomerResponse, status_code=status.HTTP_201_CREATED)
async def create_customer(
    body: CustomerCreate,
    current_user: User = Depends(require_permissions(Permission.RESOURCES_MANAGE)),
    tenant: User = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> CustomerResponse:
    await _check_entitlements(db, current_user, tenant, resource=ResourceKind.CUSTOMERS)
    customer = Customer(tenant_id=tenant.id, **body.model_dump())
    db.add(customer)
    await db.flush()
    return CustomerResponse.model_validate(customer)


@router.post("/workers", response_model=WorkerResponse, status_code=status.HTTP_201_CREATED)
async def create_worker(
    body: WorkerCreate,
    current_user: User = Depends(require_permissions(Permission.RESOURCES_MANAGE)),
    tenant: User = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> WorkerResponse:
    await _check_entitlements(
        db, current_user, tenant,
        feature=Feature.WORKER_MANAGEMENT,
        resource=ResourceKind.WORKERS,
    )
    worker = Worker(tenant_id=tenant.id, **body.model_dump())
    db.add(worker)
    await db.flush()
    return WorkerResponse.model_validate(worker)


@router.post("/products", response_model=ProductResponse, status_code=status.HTTP_201_CREATED)
async def create_product(
    body: ProductCreate,
    current_user: User = Depends(require_permissions(Permission.RESOURCES_MANAGE)),
    tenant: User = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> ProductResponse:
    await _check_entitlements(
        db, current_user, tenant,
        feature=Feature.INVENTORY_TRACKING,
        resource=ResourceKind.PRODUCTS,
    )
    product = Product(tenant_id=tenant.id, **body.model_dump())
    db.add(product)
    await db.flush()
    return ProductResponse.model_validate(product)


@router.post("/queue", response_model=QueueEntryResponse, status_code=status.HTTP_201_CREATED)
async def create_queue_entry(
    body: QueueEntryCreate,
    current_user: User = Depends(require_permissions(Permission.QUEUE_MANAGE)),
    tenant: User = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> QueueEntryResponse:
    await _check_entitlements(db, current_user, tenant, feature=Feature.BASIC_QUEUE_MANAGEMENT)
    entry = QueueEntry(tenant_id=tenant.id, customer_name=body.customer_name, status="waiting")
    db.add(entry)
    await db.flush()
    return QueueEntryResponse.model_validate(entry)


@router.post("/feedback", response_model=FeedbackResponse, status_code=status.HTTP_201_CREATED)
async def create_feedback(
    body: FeedbackCreate,
    current_user: User = Depends(require_permissions(Permission.QUEUE_MANAGE)),
    tenant: User = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> FeedbackResponse:
    if not is_super_admin(current_user.role, current_user.email):
        await EntitlementService.require_feature_or_capacity(
            db, tenant.id, Feature.CUSTOMER_FEEDBACK, ResourceKind.CUSTOMERS,
        )
    feedback = Feedback(tenant_id=tenant.id, **body.model_dump())
    db.add(feedback)
    await db.flush()
    return FeedbackResponse.model_validate(feedback)
