"""
Approval gate, renewals, cancellation and plan change requests.

Purchases sit in ``pending`` until an operator approves them; renewals flagged
by the reminder sweep are extended by an operator; cancellations are requested
by the tenant and decided by an operator. Each decision is a
single conditional UPDATE whose WHERE clause carries the precondition, so two
operators racing on the same row produce exactly one transition.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.user import User
from app.services.audit_log_service import AuditLogService, subscription_snapshot
from app.services.notification_service import (
    Notification,
    NotificationKind,
    NotificationService,
    operator_notification,
)
from app.services.plan_catalog import PAID_PLAN_TYPES, PlanType, normalize_plan_type
from app.services.subscription_events import SubscriptionChange, SubscriptionChangeFeed
from app.services.subscription_store import (
    InvalidStateError,
    SubscriptionNotFoundError,
    SubscriptionServiceError,
    SubscriptionStore,
)

logger = logging.getLogger(__name__)


def _tenant_notification(
    tenant: Optional[User],
    kind: NotificationKind,
    **context: object,
) -> Optional[Notification]:
    if tenant is None or not tenant.email:
        return None
    return Notification(
        kind=kind,
        to_email=tenant.email,
        full_name=tenant.full_name,
        user_id=tenant.id,
        context=dict(context),
    )


class ApprovalService:
    """Operator decisions and the tenant-side cancellation request."""

    # ------------------------------------------------------------------
    # Purchase approval
    # ------------------------------------------------------------------

    @staticmethod
    async def approve_subscription(
        db: AsyncSession,
        *,
        subscription_id: UUID,
        approve: bool,
        actor: User,
        ip_address: Optional[str] = None,
    ) -> Subscription:
        """
        Approve (``active``, fresh billing period) or reject (``canceled``)
        a pending purchase.

        Raises:
            SubscriptionNotFoundError: Unknown subscription id.
            InvalidStateError: Subscription is not ``pending``.
        """
        before = await SubscriptionStore.get_by_id(db, subscription_id)
        if before is None:
            raise SubscriptionNotFoundError()
        before_snapshot = subscription_snapshot(before)

        now = datetime.utcnow()
        if approve:
            patch = {
                "status": SubscriptionStatus.ACTIVE.value,
                "current_period_start": now,
                "current_period_end": now + timedelta(days=settings.BILLING_PERIOD_DAYS),
                "trial_ends_at": None,
            }
        else:
            patch = {
                "status": SubscriptionStatus.CANCELED.value,
                "canceled_at": now,
            }

        subscription = await SubscriptionStore.update_where(
            db,
            [
                Subscription.id == subscription_id,
                Subscription.status == SubscriptionStatus.PENDING.value,
            ],
            patch,
        )
        if subscription is None:
            current = await SubscriptionStore.get_by_id(db, subscription_id)
            if current is None:
                raise SubscriptionNotFoundError()
            raise InvalidStateError(
                f"Subscription is {current.status}; only pending purchases can be decided."
            )

        action = "subscription.approved" if approve else "subscription.rejected"
        await AuditLogService.record_decision(
            db,
            actor_id=actor.id,
            action=action,
            before=before_snapshot,
            subscription=subscription,
            ip_address=ip_address,
        )

        tenant = await db.get(User, subscription.tenant_id)
        SubscriptionChangeFeed.stage(
            db,
            SubscriptionChange.from_subscription(
                subscription,
                reason=action,
                notifications=[
                    _tenant_notification(
                        tenant,
                        NotificationKind.STATUS_CHANGE,
                        status=subscription.status,
                        plan_type=subscription.plan_type,
                        approved=approve,
                    ),
                ],
            ),
        )
        logger.info(
            "%s: subscription=%s tenant=%s by=%s",
            action, subscription.id, subscription.tenant_id, actor.id,
        )
        return subscription

    # ------------------------------------------------------------------
    # Renewal
    # ------------------------------------------------------------------

    @staticmethod
    async def approve_renewal(
        db: AsyncSession,
        *,
        subscription_id: UUID,
        actor: User,
        ip_address: Optional[str] = None,
    ) -> Subscription:
        """
        Extend an active subscription flagged ``pending_renewal`` by one
        billing period, starting where the current one ends.

        The UPDATE is conditioned on the period end read here, so a renewal
        racing with another decision (or a processor refresh) extends at most
        once.

        Raises:
            SubscriptionNotFoundError: Unknown subscription id.
            InvalidStateError: Subscription is not active or not flagged.
        """
        before = await SubscriptionStore.get_by_id(db, subscription_id)
        if before is None:
            raise SubscriptionNotFoundError()
        before_snapshot = subscription_snapshot(before)

        now = datetime.utcnow()
        start = before.current_period_end or now
        subscription = await SubscriptionStore.update_where(
            db,
            [
                Subscription.id == subscription_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.pending_renewal.is_(True),
                Subscription.current_period_end.is_not_distinct_from(before.current_period_end),
            ],
            {
                "current_period_start": start,
                "current_period_end": start + timedelta(days=settings.BILLING_PERIOD_DAYS),
                "pending_renewal": False,
                "renewal_approved_at": now,
                "renewal_approved_by": actor.id,
            },
        )
        if subscription is None:
            current = await SubscriptionStore.get_by_id(db, subscription_id)
            if current is None:
                raise SubscriptionNotFoundError()
            raise InvalidStateError(
                f"Subscription is not pending renewal (status: {current.status})."
            )

        action = "renewal.approved"
        await AuditLogService.record_decision(
            db,
            actor_id=actor.id,
            action=action,
            before=before_snapshot,
            subscription=subscription,
            ip_address=ip_address,
        )

        tenant = await db.get(User, subscription.tenant_id)
        SubscriptionChangeFeed.stage(
            db,
            SubscriptionChange.from_subscription(
                subscription,
                reason=action,
                notifications=[
                    _tenant_notification(
                        tenant,
                        NotificationKind.RENEWAL_APPROVED,
                        plan_type=subscription.plan_type,
                        current_period_end=subscription.current_period_end.strftime("%Y-%m-%d %H:%M UTC"),
                    ),
                ],
            ),
        )
        logger.info(
            "%s: subscription=%s tenant=%s by=%s until=%s",
            action, subscription.id, subscription.tenant_id, actor.id,
            subscription.current_period_end.isoformat(),
        )
        return subscription

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    @staticmethod
    async def approve_cancellation(
        db: AsyncSession,
        *,
        subscription_id: UUID,
        approve: bool,
        actor: User,
        ip_address: Optional[str] = None,
    ) -> Subscription:
        """
        Decide a pending cancellation request.

        Approving puts the tenant back on a fresh trial of TRIAL_DAYS and
        detaches the processor subscription reference (the customer reference
        is kept for future checkouts). Rejecting only clears the request.

        Raises:
            SubscriptionNotFoundError: Unknown subscription id.
            InvalidStateError: No open cancellation request.
        """
        before = await SubscriptionStore.get_by_id(db, subscription_id)
        if before is None:
            raise SubscriptionNotFoundError()
        before_snapshot = subscription_snapshot(before)

        now = datetime.utcnow()
        if approve:
            patch = {
                "status": SubscriptionStatus.TRIAL.value,
                "plan_type": PlanType.TRIAL.value,
                "trial_ends_at": now + timedelta(days=settings.TRIAL_DAYS),
                "current_period_start": None,
                "current_period_end": None,
                "external_subscription_ref": None,
                "external_price_ref": None,
                "cancellation_requested": False,
                "cancellation_approved": True,
                "cancellation_approved_at": now,
                "cancellation_approved_by": actor.id,
                "pending_renewal": False,
                "last_reminder_sent_at": None,
            }
        else:
            patch = {
                "cancellation_requested": False,
                "cancellation_requested_at": None,
            }

        subscription = await SubscriptionStore.update_where(
            db,
            [
                Subscription.id == subscription_id,
                Subscription.cancellation_requested.is_(True),
                Subscription.cancellation_approved.is_(False),
            ],
            patch,
        )
        if subscription is None:
            current = await SubscriptionStore.get_by_id(db, subscription_id)
            if current is None:
                raise SubscriptionNotFoundError()
            raise InvalidStateError("No open cancellation request for this subscription.")

        action = "cancellation.approved" if approve else "cancellation.rejected"
        await AuditLogService.record_decision(
            db,
            actor_id=actor.id,
            action=action,
            before=before_snapshot,
            subscription=subscription,
            ip_address=ip_address,
        )

        tenant = await db.get(User, subscription.tenant_id)
        SubscriptionChangeFeed.stage(
            db,
            SubscriptionChange.from_subscription(
                subscription,
                reason=action,
                notifications=[
                    _tenant_notification(
                        tenant,
                        NotificationKind.CANCELLATION_DECISION,
                        approved=approve,
                        trial_ends_at=(
                            subscription.trial_ends_at.isoformat()
                            if approve and subscription.trial_ends_at else None
                        ),
                    ),
                ],
            ),
        )
        logger.info(
            "%s: subscription=%s tenant=%s by=%s",
            action, subscription.id, subscription.tenant_id, actor.id,
        )
        return subscription

    @staticmethod
    async def request_cancellation(
        db: AsyncSession,
        *,
        tenant: User,
    ) -> tuple[Subscription, bool]:
        """
        Flag the tenant's active subscription for cancellation review.

        Returns:
            (subscription, already_requested). Asking twice is not an error.

        Raises:
            SubscriptionNotFoundError: Tenant has no subscription.
            InvalidStateError: Subscription is not ``active``.
        """
        existing = await SubscriptionStore.get_by_tenant(db, tenant.id)
        if existing is None:
            raise SubscriptionNotFoundError()
        if existing.cancellation_requested:
            return existing, True

        subscription = await SubscriptionStore.update_where(
            db,
            [
                Subscription.tenant_id == tenant.id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.cancellation_requested.is_(False),
            ],
            {
                "cancellation_requested": True,
                "cancellation_requested_at": datetime.utcnow(),
            },
        )
        if subscription is None:
            current = await SubscriptionStore.get_by_tenant(db, tenant.id)
            if current is not None and current.cancellation_requested:
                return current, True
            raise InvalidStateError(
                f"Only active subscriptions can be cancelled (current: {existing.status})."
            )

        SubscriptionChangeFeed.stage(
            db,
            SubscriptionChange.from_subscription(
                subscription,
                reason="cancellation.requested",
                notifications=[
                    operator_notification(
                        NotificationKind.CANCELLATION_REQUEST,
                        tenant_email=tenant.email,
                        business_name=tenant.business_name,
                        plan_type=subscription.plan_type,
                        subscription_id=subscription.id,
                    ),
                ],
            ),
        )
        logger.info("cancellation_requested: tenant=%s subscription=%s", tenant.id, subscription.id)
        return subscription, False

    # ------------------------------------------------------------------
    # Plan change
    # ------------------------------------------------------------------

    @staticmethod
    async def request_plan_change(
        db: AsyncSession,
        *,
        tenant: User,
        target_plan: str,
        description: str,
    ) -> tuple[Subscription, bool]:
        """
        Forward a plan change request to the operator inbox.

        Nothing is written: the operator follows up with the tenant and the
        change itself goes through a new checkout.

        Returns:
            (subscription, notified). ``notified`` is False when the request
            could not be queued (no operator inbox, broker down).

        Raises:
            SubscriptionServiceError: ``invalid_plan`` for an unknown or
                non-paid target plan.
            SubscriptionNotFoundError: Tenant has no subscription.
            InvalidStateError: Target plan is already the active plan.
        """
        normalized = normalize_plan_type(target_plan)
        if normalized is None or normalized.value not in PAID_PLAN_TYPES:
            raise SubscriptionServiceError(
                f"Plano invalido para troca: {target_plan}",
                code="invalid_plan",
            )

        subscription = await SubscriptionStore.get_by_tenant(db, tenant.id)
        if subscription is None:
            raise SubscriptionNotFoundError()
        if (
            subscription.status == SubscriptionStatus.ACTIVE.value
            and subscription.plan_type == normalized.value
        ):
            raise InvalidStateError(f"Subscription is already on the {normalized.value} plan.")

        notification = operator_notification(
            NotificationKind.PLAN_CHANGE_REQUEST,
            tenant_email=tenant.email,
            business_name=tenant.business_name,
            current_plan=subscription.plan_type,
            target_plan=normalized.value,
            description=description,
            subscription_id=subscription.id,
        )
        notified = notification is not None and NotificationService.deliver(notification)
        logger.info(
            "plan_change_requested: tenant=%s from=%s to=%s notified=%s",
            tenant.id, subscription.plan_type, normalized.value, notified,
        )
        return subscription, notified
