"""
Billing endpoints — subscription info, Stripe checkout, checkout verification,
cancellation and plan change requests, webhook, cache control and the
subscription push channel.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Optional
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import AsyncSessionLocal, get_db
from app.core.dependencies import get_current_tenant, require_permissions, resolve_tenant, resolve_user_from_token
from app.core.rbac import Permission
from app.models.subscription import SubscriptionStatus, TERMINAL_STATUSES
from app.models.user import User
from app.schemas.billing import (
    CancellationRequestResponse,
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    PlanChangeRequest,
    PlanChangeRequestResponse,
    PlanLimitsResponse,
    SubscriptionDetail,
    SubscriptionInfoResponse,
    UsageCountsResponse,
    VerifyCheckoutRequest,
    VerifyCheckoutResponse,
    WebhookResponse,
)
from app.services.approval_service import ApprovalService
from app.services.entitlement_service import effective_plan, has_paid_access
from app.services.subscription_cache import SubscriptionCache
from app.services.subscription_events import SubscriptionChangeFeed
from app.services.subscription_service import SubscriptionService
from app.services.subscription_store import SubscriptionServiceError
from app.services.usage_counter_service import UsageCounterService

logger = logging.getLogger(__name__)

router = APIRouter()

_ERROR_STATUS = {
    "invalid_webhook_signature": status.HTTP_400_BAD_REQUEST,
    "missing_attribution": status.HTTP_400_BAD_REQUEST,
    "payment_incomplete": status.HTTP_400_BAD_REQUEST,
    "stripe_not_configured": status.HTTP_400_BAD_REQUEST,
    "invalid_plan": status.HTTP_400_BAD_REQUEST,
    "plan_no_stripe_price": status.HTTP_400_BAD_REQUEST,
    "subscription_not_found": status.HTTP_404_NOT_FOUND,
    "invalid_state": status.HTTP_409_CONFLICT,
    "store_unavailable": status.HTTP_500_INTERNAL_SERVER_ERROR,
    "processor_error": status.HTTP_502_BAD_GATEWAY,
}


def _raise_billing_http_error(exc: SubscriptionServiceError) -> None:
    """Convert subscription domain errors to HTTP responses."""
    status_code = _ERROR_STATUS.get(exc.code, status.HTTP_400_BAD_REQUEST)
    raise HTTPException(
        status_code=status_code,
        detail={"message": exc.detail, "code": exc.code},
    ) from exc


def _validate_return_url(url: str) -> None:
    """
    Validate that a return URL belongs to an allowed origin.

    Uses CORS_ORIGINS as the allowlist. Rejects URLs pointing to
    external hosts to prevent open-redirect after Stripe flows.

    Raises:
        HTTPException 400 if the URL host is not in the allowlist.
    """
    allowed_origins = settings.cors_origins_list
    # Wildcard CORS = skip validation (dev only)
    if "*" in allowed_origins:
        return

    parsed = urlparse(url)
    url_origin = f"{parsed.scheme}://{parsed.netloc}"

    for origin in allowed_origins:
        if url_origin == origin.strip().rstrip("/"):
            return

    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={
            "message": f"URL de retorno nao permitida: host '{parsed.netloc}' fora da allowlist.",
            "code": "invalid_return_url",
        },
    )


def _get_subscription_service() -> SubscriptionService:
    """Cria SubscriptionService por request a partir das env vars."""
    try:
        return SubscriptionService.from_settings()
    except SubscriptionServiceError as exc:
        _raise_billing_http_error(exc)


def _days_until(moment: Optional[datetime]) -> Optional[int]:
    if moment is None:
        return None
    seconds = (moment - datetime.utcnow()).total_seconds()
    return max(math.ceil(seconds / 86400), 0)


# ---------------------------------------------------------------------------
# Subscription info
# ---------------------------------------------------------------------------

@router.get("/subscription", response_model=SubscriptionInfoResponse)
async def get_my_subscription(
    _current_user: User = Depends(require_permissions(Permission.BILLING_READ_SELF)),
    tenant: User = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> SubscriptionInfoResponse:
    """Return the tenant's subscription, the plan that applies, and live usage."""
    snapshot = await SubscriptionCache.get_snapshot(db, tenant.id)
    plan = effective_plan(snapshot)
    usage = await UsageCounterService.get_usage_counts(db, tenant.id)

    current_status = snapshot.status if snapshot else SubscriptionStatus.TRIAL.value
    is_trial = current_status == SubscriptionStatus.TRIAL.value
    trial_over = bool(
        is_trial and snapshot is not None and snapshot.trial_ends_at is not None
        and snapshot.trial_ends_at <= datetime.utcnow()
    )

    if is_trial:
        days_remaining = _days_until(snapshot.trial_ends_at if snapshot else None)
    elif has_paid_access(snapshot):
        days_remaining = _days_until(snapshot.current_period_end)
    else:
        days_remaining = None

    return SubscriptionInfoResponse(
        has_subscription=snapshot is not None,
        subscription=snapshot,
        plan_type=plan.plan_type.value,
        status=current_status,
        limits=PlanLimitsResponse(**plan.limits.as_dict()),
        features=sorted(feature.value for feature in plan.features),
        usage=UsageCountsResponse(**usage),
        is_active=current_status == SubscriptionStatus.ACTIVE.value,
        is_trial=is_trial,
        is_expired=current_status in TERMINAL_STATUSES or trial_over,
        days_remaining=days_remaining,
    )


@router.post("/cache/clear", status_code=status.HTTP_200_OK)
async def clear_subscription_cache(
    _current_user: User = Depends(require_permissions(Permission.BILLING_READ_SELF)),
    tenant: User = Depends(get_current_tenant),
) -> dict[str, str]:
    """Drop the cached snapshot so the next read hits the database."""
    await SubscriptionCache.invalidate(tenant.id)
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------

@router.post("/checkout", response_model=CheckoutSessionResponse)
async def create_checkout(
    body: CheckoutSessionRequest,
    _current_user: User = Depends(require_permissions(Permission.BILLING_MANAGE_SELF)),
    tenant: User = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> CheckoutSessionResponse:
    """Create a Stripe Checkout session (subscription mode) for a paid plan."""
    if body.success_url:
        _validate_return_url(body.success_url)
    if body.cancel_url:
        _validate_return_url(body.cancel_url)

    frontend = settings.FRONTEND_URL.rstrip("/")
    success_url = body.success_url or (
        f"{frontend}/dashboard?purchase=success&session_id={{CHECKOUT_SESSION_ID}}"
    )
    cancel_url = body.cancel_url or f"{frontend}/pricing?purchase=canceled"

    svc = _get_subscription_service()
    try:
        result = await svc.create_checkout_session(
            db,
            tenant=tenant,
            plan_type=body.plan_type,
            success_url=success_url,
            cancel_url=cancel_url,
        )
    except SubscriptionServiceError as exc:
        _raise_billing_http_error(exc)
    return CheckoutSessionResponse(**result)


@router.post("/verify-checkout", response_model=VerifyCheckoutResponse)
async def verify_checkout(
    body: Optional[VerifyCheckoutRequest] = None,
    _current_user: User = Depends(require_permissions(Permission.BILLING_MANAGE_SELF)),
    tenant: User = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> VerifyCheckoutResponse:
    """
    Confirm a purchase with Stripe when the webhook has not landed yet.

    Safe to call repeatedly: an already-recorded purchase returns
    ``already_applied`` without writing.
    """
    svc = _get_subscription_service()
    try:
        result = await svc.verify_checkout(
            db,
            tenant=tenant,
            session_id=body.session_id if body else None,
        )
        await SubscriptionChangeFeed.commit(db)
    except SubscriptionServiceError as exc:
        _raise_billing_http_error(exc)

    return VerifyCheckoutResponse(
        outcome=result.outcome,
        already_applied=result.already_applied,
        tenant_id=result.tenant_id,
        subscription=(
            SubscriptionDetail.model_validate(result.subscription)
            if result.subscription is not None else None
        ),
    )


# ---------------------------------------------------------------------------
# Cancellation request
# ---------------------------------------------------------------------------

@router.post("/cancellation-request", response_model=CancellationRequestResponse)
async def request_cancellation(
    _current_user: User = Depends(require_permissions(Permission.BILLING_MANAGE_SELF)),
    tenant: User = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> CancellationRequestResponse:
    """Ask the operator to cancel the active subscription (status is unchanged)."""
    try:
        subscription, already_requested = await ApprovalService.request_cancellation(
            db, tenant=tenant,
        )
        await SubscriptionChangeFeed.commit(db)
    except SubscriptionServiceError as exc:
        _raise_billing_http_error(exc)

    return CancellationRequestResponse(
        already_requested=already_requested,
        subscription=SubscriptionDetail.model_validate(subscription),
    )


# ---------------------------------------------------------------------------
# Plan change request
# ---------------------------------------------------------------------------

@router.post("/change-plan-request", response_model=PlanChangeRequestResponse)
async def request_plan_change(
    body: PlanChangeRequest,
    _current_user: User = Depends(require_permissions(Permission.BILLING_MANAGE_SELF)),
    tenant: User = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> PlanChangeRequestResponse:
    """Send a plan change request to the operator inbox (subscription is unchanged)."""
    try:
        subscription, notified = await ApprovalService.request_plan_change(
            db,
            tenant=tenant,
            target_plan=body.target_plan,
            description=body.description,
        )
    except SubscriptionServiceError as exc:
        _raise_billing_http_error(exc)

    return PlanChangeRequestResponse(
        notified=notified,
        subscription=SubscriptionDetail.model_validate(subscription),
    )


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------

@router.post("/webhook", response_model=WebhookResponse, status_code=status.HTTP_200_OK)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> WebhookResponse:
    """
    Stripe webhook endpoint — no JWT auth, uses Stripe signature verification.

    Unknown event types are acknowledged with 200. A rejected event keeps its
    ``failed`` ledger row so it shows up in the admin billing-events view.
    """
    svc = _get_subscription_service()
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        result = await svc.handle_webhook_event(db, payload, sig_header)
        await SubscriptionChangeFeed.commit(db)
    except SubscriptionServiceError as exc:
        if exc.code not in ("invalid_webhook_signature", "store_unavailable", "stripe_not_configured"):
            await SubscriptionChangeFeed.commit(db)
        _raise_billing_http_error(exc)

    return WebhookResponse(event=result.event_type, outcome=result.outcome)


# ---------------------------------------------------------------------------
# Push channel
# ---------------------------------------------------------------------------

@router.websocket("/ws/subscription")
async def subscription_updates(
    websocket: WebSocket,
    token: str = Query(default=""),
) -> None:
    """
    Push the tenant's subscription state.

    Sends ``{"type": "snapshot", ...}`` first, then ``{"type": "change", ...}``
    for every committed write, and closes (1000) once the subscription is
    active or terminal. Closing the socket is how a client stops waiting.

    Close codes:
        4001 — authentication failed
    """
    async with AsyncSessionLocal() as db:
        user = await resolve_user_from_token(db, token) if token else None
        tenant = await resolve_tenant(db, user) if user is not None and user.is_active else None
    if tenant is None:
        await websocket.close(code=4001)
        return

    await websocket.accept()
    tenant_id = tenant.id

    async def current_snapshot() -> dict[str, Any]:
        async with AsyncSessionLocal() as session:
            snapshot = await SubscriptionCache.get_snapshot(session, tenant_id)
        return {
            "type": "snapshot",
            "status": snapshot.status if snapshot else None,
            "subscription": snapshot.model_dump(mode="json") if snapshot else None,
        }

    try:
        async for message in SubscriptionChangeFeed.watch_until_settled(tenant_id, current_snapshot):
            await websocket.send_json(message)
    except WebSocketDisconnect:
        logger.debug("subscription_ws_disconnected: tenant=%s", tenant_id)
        return
    except Exception:
        logger.exception("subscription_ws_error: tenant=%s", tenant_id)
        await websocket.close(code=1011)
        return

    await websocket.close(code=1000)
