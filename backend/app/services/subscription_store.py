"""
Subscription store — single source of truth for the per-tenant subscription row.

Every write is one statement:

- ``upsert_subscription``: ``INSERT .. ON CONFLICT (tenant_id) DO UPDATE .. WHERE <guard>``
- ``update_where``: ``UPDATE .. WHERE <precondition> AND <something changes>``

both with ``RETURNING id`` so the caller learns whether the write applied.
Producers (webhook, checkout verifier, approval gate) pass their own guards;
nothing here reads-then-writes.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import and_, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.subscription import Subscription, SubscriptionStatus, TERMINAL_STATUSES
from app.models.user import User

logger = logging.getLogger(__name__)


class SubscriptionServiceError(Exception):
    """Domain error for subscription operations."""

    def __init__(self, detail: str, code: str = "subscription_error") -> None:
        self.detail = detail
        self.code = code
        super().__init__(detail)


class InvalidStateError(SubscriptionServiceError):
    """Transition attempted from a state that does not allow it."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail, code="invalid_state")


class SubscriptionNotFoundError(SubscriptionServiceError):
    """No subscription row for the given id/tenant."""

    def __init__(self, detail: str = "Subscription not found.") -> None:
        super().__init__(detail, code="subscription_not_found")


class StoreUnavailableError(SubscriptionServiceError):
    """Persistence failure; no partial write was made."""

    def __init__(self, detail: str = "Subscription store unavailable.") -> None:
        super().__init__(detail, code="store_unavailable")


# Outcomes reported by guarded writes
OUTCOME_APPLIED = "applied"
OUTCOME_NOOP = "noop"
OUTCOME_SKIPPED_PENDING = "skipped_pending"
OUTCOME_SKIPPED_TERMINAL = "skipped_terminal"
OUTCOME_SKIPPED_UNAPPROVED = "skipped_unapproved"
OUTCOME_STALE_REFERENCE = "stale_reference"

# Fields reset when a new billing cycle (new external subscription ref) starts
_NEW_CYCLE_RESET: dict[str, Any] = {
    "current_period_start": None,
    "current_period_end": None,
    "trial_ends_at": None,
    "canceled_at": None,
    "cancellation_requested": False,
    "cancellation_requested_at": None,
    "cancellation_approved": False,
    "cancellation_approved_at": None,
    "cancellation_approved_by": None,
    "pending_renewal": False,
    "renewal_notification_sent_at": None,
    "renewal_approved_at": None,
    "renewal_approved_by": None,
    "last_reminder_sent_at": None,
}


@dataclass(frozen=True)
class TransitionResult:
    """Result of a guarded write: the row after the attempt and whether it changed."""

    subscription: Optional[Subscription]
    applied: bool
    outcome: str


def dialect_insert(db: AsyncSession):
    dialect_name = db.get_bind().dialect.name
    if dialect_name == "postgresql":
        return postgresql.insert
    if dialect_name == "sqlite":
        return sqlite.insert
    raise StoreUnavailableError(f"Unsupported database dialect for upserts: {dialect_name}")


def _changes_any(patch: dict[str, Any]):
    """SQL predicate true when applying ``patch`` would change the row."""
    return or_(
        *(getattr(Subscription, key).is_distinct_from(value) for key, value in patch.items())
    )


class SubscriptionStore:
    """Static read and guarded-write primitives for ``subscriptions``."""

    @staticmethod
    async def execute(db: AsyncSession, stmt: Any):
        try:
            return await db.execute(stmt)
        except SQLAlchemyError as exc:
            logger.exception("subscription_store_error: %s", exc.__class__.__name__)
            raise StoreUnavailableError() from exc

    @staticmethod
    async def _reload(db: AsyncSession, subscription_id: UUID) -> Optional[Subscription]:
        stmt = (
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .execution_options(populate_existing=True)
        )
        result = await SubscriptionStore.execute(db, stmt)
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    async def get_by_tenant(db: AsyncSession, tenant_id: UUID) -> Optional[Subscription]:
        stmt = (
            select(Subscription)
            .where(Subscription.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        )
        result = await SubscriptionStore.execute(db, stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_id(db: AsyncSession, subscription_id: UUID) -> Optional[Subscription]:
        return await SubscriptionStore._reload(db, subscription_id)

    @staticmethod
    async def get_by_external_ref(db: AsyncSession, subscription_ref: str) -> Optional[Subscription]:
        stmt = (
            select(Subscription)
            .where(Subscription.external_subscription_ref == subscription_ref)
            .execution_options(populate_existing=True)
        )
        result = await SubscriptionStore.execute(db, stmt)
        return result.scalars().first()

    @staticmethod
    async def list_with_tenants(
        db: AsyncSession,
        *criteria: Any,
    ) -> list[tuple[Subscription, User]]:
        """Rows matching ``criteria`` joined with their tenant, oldest update first."""
        stmt = (
            select(Subscription, User)
            .join(User, Subscription.tenant_id == User.id)
            .where(*criteria)
            .order_by(Subscription.updated_at.asc())
        )
        result = await SubscriptionStore.execute(db, stmt)
        return [(row[0], row[1]) for row in result.all()]

    @staticmethod
    async def list_pending(db: AsyncSession) -> list[tuple[Subscription, User]]:
        return await SubscriptionStore.list_with_tenants(
            db, Subscription.status == SubscriptionStatus.PENDING.value,
        )

    @staticmethod
    async def list_cancellation_requests(db: AsyncSession) -> list[tuple[Subscription, User]]:
        return await SubscriptionStore.list_with_tenants(
            db,
            Subscription.cancellation_requested.is_(True),
            Subscription.cancellation_approved.is_(False),
        )

    @staticmethod
    async def list_pending_renewals(db: AsyncSession) -> list[tuple[Subscription, User]]:
        """Active rows the reminder sweep flagged for renewal."""
        return await SubscriptionStore.list_with_tenants(
            db,
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.pending_renewal.is_(True),
        )

    # ------------------------------------------------------------------
    # Write primitives
    # ------------------------------------------------------------------

    @staticmethod
    async def upsert_subscription(
        db: AsyncSession,
        tenant_id: UUID,
        patch: dict[str, Any],
        *,
        guard: Optional[Any] = None,
    ) -> Optional[Subscription]:
        """
        Idempotent merge keyed by tenant.

        Inserts defaults + ``patch`` when the tenant has no row; otherwise
        applies only the fields in ``patch`` and bumps ``updated_at``.

        Args:
            db: Active session (the caller commits).
            tenant_id: Owner of the row.
            patch: Column name -> value.
            guard: Optional predicate over the existing row (``Subscription.*``)
                and the proposed values (``excluded``); the update only runs
                when it holds. A callable receives ``excluded``.

        Returns:
            The row after the write, or None when the guard rejected the update.
        """
        insert = dialect_insert(db)
        now = datetime.utcnow()
        values = {
            "id": uuid4(),
            "tenant_id": tenant_id,
            "created_at": now,
            **patch,
            "updated_at": now,
        }
        stmt = insert(Subscription).values(**values)
        where = guard(stmt.excluded) if callable(guard) else guard
        stmt = stmt.on_conflict_do_update(
            index_elements=[Subscription.tenant_id],
            set_={**patch, "updated_at": now},
            where=where,
        ).returning(Subscription.id)

        result = await SubscriptionStore.execute(db, stmt)
        subscription_id = result.scalar_one_or_none()
        if subscription_id is None:
            return None
        return await SubscriptionStore._reload(db, subscription_id)

    @staticmethod
    async def update_where(
        db: AsyncSession,
        criteria: list[Any],
        patch: dict[str, Any],
    ) -> Optional[Subscription]:
        """
        Conditional single-statement update.

        Runs only when every criterion holds and at least one field in
        ``patch`` differs from the stored value, so replays never bump
        ``updated_at``.

        Returns:
            The updated row, or None when nothing was written.
        """
        stmt = (
            update(Subscription)
            .where(*criteria, _changes_any(patch))
            .values(**patch, updated_at=datetime.utcnow())
            .returning(Subscription.id)
            .execution_options(synchronize_session=False)
        )
        result = await SubscriptionStore.execute(db, stmt)
        subscription_id = result.scalars().first()
        if subscription_id is None:
            return None
        return await SubscriptionStore._reload(db, subscription_id)

    # ------------------------------------------------------------------
    # Processor-driven transitions
    # ------------------------------------------------------------------

    @staticmethod
    async def apply_checkout(
        db: AsyncSession,
        *,
        tenant_id: UUID,
        plan_type: str,
        subscription_ref: str,
        customer_ref: Optional[str],
        price_ref: Optional[str],
    ) -> TransitionResult:
        """
        Record a completed checkout as a ``pending`` subscription.

        A reference equal to the stored one is the same billing cycle and
        never rewrites the row (webhook/verifier races and redeliveries
        converge here). A different reference starts a new cycle awaiting
        approval.
        """
        patch = {
            "status": SubscriptionStatus.PENDING.value,
            "plan_type": plan_type,
            "external_subscription_ref": subscription_ref,
            "external_customer_ref": customer_ref,
            "external_price_ref": price_ref,
            **_NEW_CYCLE_RESET,
        }
        subscription = await SubscriptionStore.upsert_subscription(
            db,
            tenant_id,
            patch,
            guard=lambda excluded: Subscription.external_subscription_ref.is_distinct_from(
                excluded.external_subscription_ref
            ),
        )
        if subscription is not None:
            logger.info(
                "subscription_checkout_recorded: tenant=%s plan=%s ref=%s",
                tenant_id, plan_type, subscription_ref,
            )
            return TransitionResult(subscription, True, OUTCOME_APPLIED)

        existing = await SubscriptionStore.get_by_tenant(db, tenant_id)
        logger.info(
            "subscription_checkout_noop: tenant=%s ref=%s status=%s",
            tenant_id, subscription_ref, existing.status if existing else None,
        )
        return TransitionResult(existing, False, OUTCOME_NOOP)

    @staticmethod
    async def refresh_status(
        db: AsyncSession,
        *,
        subscription_ref: str,
        target_status: str,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        canceled_at: Optional[datetime] = None,
    ) -> TransitionResult:
        """
        Refresh status/periods from a processor signal.

        Only rows of an approved cycle (periods populated, status active or
        past_due) follow the processor. Pending rows are skipped, terminal rows
        are left alone. An unapproved past_due row that pays again returns
        to ``pending`` instead of becoming active; one the processor ends
        (canceled/expired) takes that terminal status.
        """
        patch: dict[str, Any] = {"status": target_status}
        if period_start is not None:
            patch["current_period_start"] = period_start
        if period_end is not None:
            patch["current_period_end"] = period_end
        if canceled_at is not None:
            patch["canceled_at"] = canceled_at

        by_ref = Subscription.external_subscription_ref == subscription_ref
        approved_cycle = and_(
            Subscription.status.in_(
                [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value]
            ),
            Subscription.current_period_start.is_not(None),
        )
        subscription = await SubscriptionStore.update_where(db, [by_ref, approved_cycle], patch)
        if subscription is not None:
            return TransitionResult(subscription, True, OUTCOME_APPLIED)

        if target_status == SubscriptionStatus.ACTIVE.value:
            recovered = await SubscriptionStore.update_where(
                db,
                [
                    by_ref,
                    Subscription.status == SubscriptionStatus.PAST_DUE.value,
                    Subscription.current_period_start.is_(None),
                ],
                {"status": SubscriptionStatus.PENDING.value},
            )
            if recovered is not None:
                logger.info(
                    "subscription_payment_recovered_unapproved: ref=%s back to pending",
                    subscription_ref,
                )
                return TransitionResult(recovered, True, OUTCOME_APPLIED)

        if target_status in TERMINAL_STATUSES:
            # Unapproved past_due row: periods stay null, only the ending is recorded.
            ended_patch: dict[str, Any] = {"status": target_status}
            if canceled_at is not None:
                ended_patch["canceled_at"] = canceled_at
            ended = await SubscriptionStore.update_where(
                db,
                [
                    by_ref,
                    Subscription.status == SubscriptionStatus.PAST_DUE.value,
                    Subscription.current_period_start.is_(None),
                ],
                ended_patch,
            )
            if ended is not None:
                logger.info(
                    "subscription_unapproved_cycle_ended: ref=%s status=%s",
                    subscription_ref, target_status,
                )
                return TransitionResult(ended, True, OUTCOME_APPLIED)

        return await SubscriptionStore._explain_skip(db, subscription_ref, target_status)

    @staticmethod
    async def mark_payment_failed(db: AsyncSession, subscription_ref: str) -> TransitionResult:
        """``past_due`` from any non-terminal state, pending included; never from trial."""
        subscription = await SubscriptionStore.update_where(
            db,
            [
                Subscription.external_subscription_ref == subscription_ref,
                Subscription.status.in_(
                    [
                        SubscriptionStatus.PENDING.value,
                        SubscriptionStatus.ACTIVE.value,
                        SubscriptionStatus.PAST_DUE.value,
                    ]
                ),
            ],
            {"status": SubscriptionStatus.PAST_DUE.value},
        )
        if subscription is not None:
            return TransitionResult(subscription, True, OUTCOME_APPLIED)
        return await SubscriptionStore._explain_skip(
            db, subscription_ref, SubscriptionStatus.PAST_DUE.value,
        )

    @staticmethod
    async def mark_deleted(db: AsyncSession, subscription_ref: str) -> TransitionResult:
        """Processor deleted the subscription: ``expired`` unless already terminal."""
        subscription = await SubscriptionStore.update_where(
            db,
            [
                Subscription.external_subscription_ref == subscription_ref,
                Subscription.status.not_in(list(TERMINAL_STATUSES)),
            ],
            {
                "status": SubscriptionStatus.EXPIRED.value,
                "canceled_at": datetime.utcnow(),
            },
        )
        if subscription is not None:
            return TransitionResult(subscription, True, OUTCOME_APPLIED)
        return await SubscriptionStore._explain_skip(
            db, subscription_ref, SubscriptionStatus.EXPIRED.value,
        )

    @staticmethod
    async def _explain_skip(
        db: AsyncSession,
        subscription_ref: str,
        target_status: str,
    ) -> TransitionResult:
        """Classify why a guarded processor write did not apply, and log it."""
        existing = await SubscriptionStore.get_by_external_ref(db, subscription_ref)
        if existing is None:
            outcome = OUTCOME_STALE_REFERENCE
        elif existing.status == SubscriptionStatus.PENDING.value:
            outcome = OUTCOME_SKIPPED_PENDING
        elif existing.status in TERMINAL_STATUSES:
            outcome = OUTCOME_SKIPPED_TERMINAL
        elif existing.status == target_status:
            outcome = OUTCOME_NOOP
        else:
            outcome = OUTCOME_SKIPPED_UNAPPROVED

        logger.info(
            "subscription_transition_skipped: ref=%s target=%s current=%s outcome=%s",
            subscription_ref,
            target_status,
            existing.status if existing else None,
            outcome,
        )
        return TransitionResult(existing, False, outcome)
