"""
Audit trail for approval-gate decisions.

Entries are flushed into the caller's transaction, so a decision and its audit
row commit (or roll back) together.
"""
from __future__ import annotations

from typing import Any, Optional
from uuid import UUID

from sqlalchemy import desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit_log import AuditLog
from app.models.subscription import Subscription
from app.models.user import User

# Fields an operator decision can change.
_AUDITED_FIELDS = (
    "status",
    "plan_type",
    "external_subscription_ref",
    "cancellation_requested",
    "cancellation_approved",
    "trial_ends_at",
    "current_period_end",
    "pending_renewal",
)


def subscription_snapshot(subscription: Subscription) -> dict[str, Any]:
    """JSON-safe subset of a subscription row for before/after diffs."""
    snapshot: dict[str, Any] = {}
    for name in _AUDITED_FIELDS:
        value = getattr(subscription, name)
        snapshot[name] = value.isoformat() if hasattr(value, "isoformat") else value
    return snapshot


class AuditLogService:

    @staticmethod
    async def record_decision(
        db: AsyncSession,
        *,
        actor_id: Optional[UUID],
        action: str,
        before: dict[str, Any],
        subscription: Subscription,
        ip_address: Optional[str] = None,
    ) -> AuditLog:
        """
        Record an operator decision on a subscription.

        Args:
            actor_id: Operator who decided.
            action: e.g. ``subscription.approved`` / ``cancellation.rejected``.
            before: ``subscription_snapshot`` taken before the write.
            subscription: Row after the write.
            ip_address: Client IP, when known.
        """
        after = subscription_snapshot(subscription)
        entry = AuditLog(
            actor_id=actor_id,
            action=action,
            target_type="subscription",
            target_id=str(subscription.id),
            changes={
                "before": before,
                "after": after,
                "changed": sorted(k for k in after if before.get(k) != after[k]),
            },
            ip_address=ip_address,
        )
        db.add(entry)
        await db.flush()
        return entry

    @staticmethod
    async def list_logs(
        db: AsyncSession,
        *,
        page: int = 1,
        limit: int = 50,
        action: Optional[str] = None,
        target_id: Optional[str] = None,
    ) -> tuple[list[dict[str, Any]], int]:
        """Newest first; returns (items with ``actor_email``, total)."""
        filters = []
        if action:
            filters.append(AuditLog.action == action)
        if target_id:
            filters.append(AuditLog.target_id == target_id)

        total = int(
            (await db.execute(select(func.count()).select_from(AuditLog).where(*filters))).scalar_one()
        )
        result = await db.execute(
            select(AuditLog, User.email.label("actor_email"))
            .outerjoin(User, AuditLog.actor_id == User.id)
            .where(*filters)
            .order_by(desc(AuditLog.created_at))
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return [
            {
                "id": log.id,
                "actor_id": log.actor_id,
                "actor_email": actor_email,
                "action": log.action,
                "target_type": log.target_type,
                "target_id": log.target_id,
                "changes": log.changes,
                "ip_address": log.ip_address,
                "created_at": log.created_at,
            }
            for log, actor_email in result.all()
        ], total
