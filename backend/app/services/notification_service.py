"""
Best-effort billing notifications.

State transitions hand a ``Notification`` to ``NotificationService.deliver``
after their transaction commits. Delivery enqueues a Celery email task; any
failure is logged and swallowed so it never unwinds the transition.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from app.core.config import settings

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Notification could not be handed to the email queue."""


class NotificationKind(str, Enum):
    PURCHASE_RECEIVED = "purchase_received"
    OPERATOR_PENDING = "operator_pending"
    STATUS_CHANGE = "status_change"
    CANCELLATION_REQUEST = "cancellation_request"
    CANCELLATION_DECISION = "cancellation_decision"
    TRIAL_EXPIRING = "trial_expiring"
    RENEWAL_REMINDER = "renewal_reminder"
    RENEWAL_APPROVED = "renewal_approved"
    PLAN_CHANGE_REQUEST = "plan_change_request"


@dataclass(frozen=True)
class Notification:
    kind: NotificationKind
    to_email: str
    full_name: Optional[str] = None
    user_id: Optional[UUID] = None
    context: dict[str, Any] = field(default_factory=dict)


def operator_notification(kind: NotificationKind, **context: Any) -> Optional[Notification]:
    """Notification addressed to the operator inbox, or None when none is configured."""
    if not settings.SUPER_ADMIN_EMAIL:
        logger.info("operator_notification_skipped: kind=%s no SUPER_ADMIN_EMAIL", kind.value)
        return None
    return Notification(kind=kind, to_email=settings.SUPER_ADMIN_EMAIL, context=context)


class NotificationService:
    """Maps notification kinds to Celery email tasks."""

    @staticmethod
    def _enqueue(notification: Notification) -> None:
        from app.workers.tasks import email_tasks

        tasks = {
            NotificationKind.PURCHASE_RECEIVED: email_tasks.send_purchase_received_email,
            NotificationKind.OPERATOR_PENDING: email_tasks.send_operator_pending_email,
            NotificationKind.STATUS_CHANGE: email_tasks.send_status_change_email,
            NotificationKind.CANCELLATION_REQUEST: email_tasks.send_cancellation_request_email,
            NotificationKind.CANCELLATION_DECISION: email_tasks.send_cancellation_decision_email,
            NotificationKind.TRIAL_EXPIRING: email_tasks.send_trial_expiring_email,
            NotificationKind.RENEWAL_REMINDER: email_tasks.send_renewal_reminder_email,
            NotificationKind.RENEWAL_APPROVED: email_tasks.send_renewal_approved_email,
            NotificationKind.PLAN_CHANGE_REQUEST: email_tasks.send_plan_change_request_email,
        }
        task = tasks.get(notification.kind)
        if task is None:
            raise NotificationError(f"No email task for {notification.kind}")

        try:
            task.delay(
                notification.to_email,
                notification.full_name,
                {key: str(value) if value is not None else None for key, value in notification.context.items()},
                str(notification.user_id) if notification.user_id else None,
            )
        except Exception as exc:
            raise NotificationError(str(exc)) from exc

    @staticmethod
    def deliver(notification: Notification) -> bool:
        """
        Enqueue ``notification``; never raises.

        Returns:
            True when the email task was queued.
        """
        try:
            NotificationService._enqueue(notification)
        except NotificationError:
            logger.exception(
                "notification_failed: kind=%s to=%s",
                notification.kind.value, notification.to_email,
            )
            return False
        logger.info(
            "notification_queued: kind=%s to=%s",
            notification.kind.value, notification.to_email,
        )
        return True
