"""
Admin endpoints — purchase approval, renewals, cancellation decisions, billing events, audit log.
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.dependencies import require_permissions
from app.core.rbac import Permission
from app.models.stripe_event import StripeEvent
from app.models.subscription import Subscription
from app.models.user import User
from app.schemas.admin import (
    ApprovalDecisionRequest,
    ApprovalDecisionResponse,
    AuditLogListResponse,
    AuditLogResponse,
    PaginationMeta,
    RenewalApprovalRequest,
    StripeEventListResponse,
    StripeEventResponse,
    TenantSubscriptionItem,
)
from app.schemas.billing import SubscriptionDetail
from app.services.approval_service import ApprovalService
from app.services.audit_log_service import AuditLogService
from app.services.subscription_events import SubscriptionChangeFeed
from app.services.subscription_store import SubscriptionServiceError, SubscriptionStore

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _client_ip(request: Request) -> str:
    """Extract client IP from request."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _raise_approval_http_error(exc: SubscriptionServiceError) -> None:
    """Convert approval domain errors to HTTP responses."""
    status_code = status.HTTP_400_BAD_REQUEST
    if exc.code == "subscription_not_found":
        status_code = status.HTTP_404_NOT_FOUND
    elif exc.code == "invalid_state":
        status_code = status.HTTP_409_CONFLICT
    elif exc.code == "store_unavailable":
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    raise HTTPException(
        status_code=status_code,
        detail={"message": exc.detail, "code": exc.code},
    ) from exc


def _review_items(rows: list[tuple[Subscription, User]]) -> list[TenantSubscriptionItem]:
    return [
        TenantSubscriptionItem(
            subscription=SubscriptionDetail.model_validate(subscription),
            tenant_email=tenant.email,
            tenant_name=tenant.full_name,
            business_name=tenant.business_name,
        )
        for subscription, tenant in rows
    ]


# ---------------------------------------------------------------------------
# Review queues
# ---------------------------------------------------------------------------

@router.get("/subscriptions/pending", response_model=list[TenantSubscriptionItem])
async def list_pending_subscriptions(
    _current_user: User = Depends(require_permissions(Permission.SUBSCRIPTIONS_REVIEW)),
    db: AsyncSession = Depends(get_db),
) -> list[TenantSubscriptionItem]:
    """Purchases waiting for an operator decision, oldest first."""
    try:
        rows = await SubscriptionStore.list_pending(db)
    except SubscriptionServiceError as exc:
        _raise_approval_http_error(exc)
    return _review_items(rows)


@router.get("/subscriptions/cancellation-requests", response_model=list[TenantSubscriptionItem])
async def list_cancellation_requests(
    _current_user: User = Depends(require_permissions(Permission.SUBSCRIPTIONS_REVIEW)),
    db: AsyncSession = Depends(get_db),
) -> list[TenantSubscriptionItem]:
    """Open cancellation requests, oldest first."""
    try:
        rows = await SubscriptionStore.list_cancellation_requests(db)
    except SubscriptionServiceError as exc:
        _raise_approval_http_error(exc)
    return _review_items(rows)


@router.get("/subscriptions/pending-renewals", response_model=list[TenantSubscriptionItem])
async def list_pending_renewals(
    _current_user: User = Depends(require_permissions(Permission.SUBSCRIPTIONS_REVIEW)),
    db: AsyncSession = Depends(get_db),
) -> list[TenantSubscriptionItem]:
    """Active subscriptions flagged for renewal near the end of their period."""
    try:
        rows = await SubscriptionStore.list_pending_renewals(db)
    except SubscriptionServiceError as exc:
        _raise_approval_http_error(exc)
    return _review_items(rows)


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------

@router.post("/subscriptions/approve", response_model=ApprovalDecisionResponse)
async def decide_subscription(
    body: ApprovalDecisionRequest,
    request: Request,
    current_user: User = Depends(require_permissions(Permission.SUBSCRIPTIONS_REVIEW)),
    db: AsyncSession = Depends(get_db),
) -> ApprovalDecisionResponse:
    """Approve (pending -> active) or reject (pending -> canceled) a purchase."""
    try:
        subscription = await ApprovalService.approve_subscription(
            db,
            subscription_id=body.subscription_id,
            approve=body.approve,
            actor=current_user,
            ip_address=_client_ip(request),
        )
        await SubscriptionChangeFeed.commit(db)
    except SubscriptionServiceError as exc:
        _raise_approval_http_error(exc)

    return ApprovalDecisionResponse(subscription=SubscriptionDetail.model_validate(subscription))


@router.post("/subscriptions/approve-cancellation", response_model=ApprovalDecisionResponse)
async def decide_cancellation(
    body: ApprovalDecisionRequest,
    request: Request,
    current_user: User = Depends(require_permissions(Permission.SUBSCRIPTIONS_REVIEW)),
    db: AsyncSession = Depends(get_db),
) -> ApprovalDecisionResponse:
    """Approve (back to a fresh trial) or reject (clear the request) a cancellation."""
    try:
        subscription = await ApprovalService.approve_cancellation(
            db,
            subscription_id=body.subscription_id,
            approve=body.approve,
            actor=current_user,
            ip_address=_client_ip(request),
        )
        await SubscriptionChangeFeed.commit(db)
    except SubscriptionServiceError as exc:
        _raise_approval_http_error(exc)

    return ApprovalDecisionResponse(subscription=SubscriptionDetail.model_validate(subscription))


@router.post("/subscriptions/approve-renewal", response_model=ApprovalDecisionResponse)
async def approve_renewal(
    body: RenewalApprovalRequest,
    request: Request,
    current_user: User = Depends(require_permissions(Permission.SUBSCRIPTIONS_REVIEW)),
    db: AsyncSession = Depends(get_db),
) -> ApprovalDecisionResponse:
    """Extend a flagged subscription by one billing period."""
    try:
        subscription = await ApprovalService.approve_renewal(
            db,
            subscription_id=body.subscription_id,
            actor=current_user,
            ip_address=_client_ip(request),
        )
        await SubscriptionChangeFeed.commit(db)
    except SubscriptionServiceError as exc:
        _raise_approval_http_error(exc)

    return ApprovalDecisionResponse(subscription=SubscriptionDetail.model_validate(subscription))


# ---------------------------------------------------------------------------
# Billing events (Stripe webhook ledger)
# ---------------------------------------------------------------------------

@router.get("/billing-events", response_model=StripeEventListResponse)
async def list_billing_events(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    event_type: Optional[str] = Query(default=None),
    event_status: Optional[str] = Query(default=None, alias="status"),
    _current_user: User = Depends(require_permissions(Permission.BILLING_EVENTS_READ)),
    db: AsyncSession = Depends(get_db),
) -> StripeEventListResponse:
    """Paginated webhook ledger, newest first."""
    filters = []
    if event_type:
        filters.append(StripeEvent.event_type == event_type)
    if event_status:
        filters.append(StripeEvent.status == event_status)

    count_stmt = select(func.count()).select_from(StripeEvent).where(*filters)
    total = int((await db.execute(count_stmt)).scalar_one())

    stmt = (
        select(StripeEvent)
        .where(*filters)
        .order_by(desc(StripeEvent.created_at))
        .offset((page - 1) * limit)
        .limit(limit)
    )
    events = (await db.execute(stmt)).scalars().all()

    pages = (total + limit - 1) // limit if total else 0
    return StripeEventListResponse(
        items=[StripeEventResponse.model_validate(e) for e in events],
        pagination=PaginationMeta(total=total, page=page, pages=pages, limit=limit),
    )


# ---------------------------------------------------------------------------
# Audit Log
# ---------------------------------------------------------------------------

@router.get("/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    action: Optional[str] = Query(default=None),
    target_id: Optional[str] = Query(default=None),
    _current_user: User = Depends(require_permissions(Permission.SUBSCRIPTIONS_REVIEW)),
    db: AsyncSession = Depends(get_db),
) -> AuditLogListResponse:
    """Paginated operator decisions with optional filters."""
    items, total = await AuditLogService.list_logs(
        db, page=page, limit=limit, action=action, target_id=target_id,
    )
    pages = (total + limit - 1) // limit if total else 0
    return AuditLogListResponse(
        items=[AuditLogResponse(**item) for item in items],
        pagination=PaginationMeta(total=total, page=page, pages=pages, limit=limit),
    )
