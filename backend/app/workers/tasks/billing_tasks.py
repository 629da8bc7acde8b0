"""
Tarefas periodicas de billing (Celery Beat).

- send_trial_expiration_reminders: avisa tenants cujo trial termina em breve
- send_renewal_reminders: avisa tenants ativos perto do fim do periodo e
  marca pending_renewal para a aprovacao do operador

Cada linha e "reivindicada" com um UPDATE condicional de
last_reminder_sent_at antes do envio, entao workers concorrentes (ou uma
execucao repetida do beat) notificam cada janela no maximo uma vez.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.user import User
from app.services.notification_service import Notification, NotificationKind, NotificationService
from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def _claim_reminder(
    db: Session,
    subscription: Subscription,
    *,
    window_start: datetime,
    now: datetime,
    extra_criteria: list[Any],
    extra_values: Optional[dict[str, Any]] = None,
) -> bool:
    """Marca o lembrete como enviado; False se outro worker ja reivindicou a janela."""
    stmt = (
        update(Subscription)
        .where(
            Subscription.id == subscription.id,
            or_(
                Subscription.last_reminder_sent_at.is_(None),
                Subscription.last_reminder_sent_at < window_start,
            ),
            *extra_criteria,
        )
        .values(last_reminder_sent_at=now, **(extra_values or {}))
        .returning(Subscription.id)
        .execution_options(synchronize_session=False)
    )
    claimed = db.execute(stmt).scalar_one_or_none()
    db.commit()
    return claimed is not None


def _format_remaining(delta: timedelta) -> str:
    hours = max(int(delta.total_seconds() // 3600), 0)
    if hours >= 24:
        days = hours // 24
        return f"{days} day{'s' if days != 1 else ''}"
    if hours >= 1:
        return f"{hours} hour{'s' if hours != 1 else ''}"
    return "less than an hour"


def _due_rows(
    db: Session,
    *,
    status: str,
    deadline_column: Any,
    now: datetime,
    horizon: datetime,
) -> list[tuple[Subscription, User]]:
    stmt = (
        select(Subscription, User)
        .join(User, Subscription.tenant_id == User.id)
        .where(
            Subscription.status == status,
            deadline_column.is_not(None),
            deadline_column > now,
            deadline_column <= horizon,
            User.is_active.is_(True),
        )
        .order_by(deadline_column.asc())
    )
    return [(row[0], row[1]) for row in db.execute(stmt).all()]


def _notify(kind: NotificationKind, tenant: User, context: dict[str, Optional[str]]) -> bool:
    return NotificationService.deliver(
        Notification(
            kind=kind,
            to_email=tenant.email,
            full_name=tenant.full_name,
            user_id=tenant.id,
            context=context,
        )
    )


@celery_app.task(name="app.workers.tasks.billing_tasks.send_trial_expiration_reminders")
def send_trial_expiration_reminders() -> dict:
    """
    Lembra tenants em trial cujo trial_ends_at cai nas proximas
    TRIAL_REMINDER_HOURS horas.
    """
    from app.core.database_sync import get_sync_db

    window = timedelta(hours=settings.TRIAL_REMINDER_HOURS)
    now = datetime.utcnow()
    checked = 0
    sent = 0

    with get_sync_db() as db:
        rows = _due_rows(
            db,
            status=SubscriptionStatus.TRIAL.value,
            deadline_column=Subscription.trial_ends_at,
            now=now,
            horizon=now + window,
        )
        for subscription, tenant in rows:
            checked += 1
            claimed = _claim_reminder(
                db,
                subscription,
                window_start=subscription.trial_ends_at - window,
                now=now,
                extra_criteria=[
                    Subscription.status == SubscriptionStatus.TRIAL.value,
                    Subscription.trial_ends_at == subscription.trial_ends_at,
                ],
            )
            if not claimed:
                continue
            if _notify(
                NotificationKind.TRIAL_EXPIRING,
                tenant,
                {
                    "time_remaining": _format_remaining(subscription.trial_ends_at - now),
                    "trial_ends_at": subscription.trial_ends_at.isoformat(),
                },
            ):
                sent += 1

    result = {"checked": checked, "sent": sent}
    logger.info("send_trial_expiration_reminders: %s", result)
    return result


@celery_app.task(name="app.workers.tasks.billing_tasks.send_renewal_reminders")
def send_renewal_reminders() -> dict:
    """
    Lembra tenants ativos cujo current_period_end cai nos proximos
    RENEWAL_REMINDER_DAYS dias.
    """
    from app.core.database_sync import get_sync_db

    window = timedelta(days=settings.RENEWAL_REMINDER_DAYS)
    now = datetime.utcnow()
    checked = 0
    sent = 0

    with get_sync_db() as db:
        rows = _due_rows(
            db,
            status=SubscriptionStatus.ACTIVE.value,
            deadline_column=Subscription.current_period_end,
            now=now,
            horizon=now + window,
        )
        for subscription, tenant in rows:
            checked += 1
            claimed = _claim_reminder(
                db,
                subscription,
                window_start=subscription.current_period_end - window,
                now=now,
                extra_criteria=[
                    Subscription.status == SubscriptionStatus.ACTIVE.value,
                    Subscription.current_period_end == subscription.current_period_end,
                ],
                extra_values={"pending_renewal": True, "renewal_notification_sent_at": now},
            )
            if not claimed:
                continue
            if _notify(
                NotificationKind.RENEWAL_REMINDER,
                tenant,
                {
                    "plan_type": subscription.plan_type,
                    "renews_at": subscription.current_period_end.strftime("%Y-%m-%d %H:%M UTC"),
                },
            ):
                sent += 1

    result = {"checked": checked, "sent": sent}
    logger.info("send_renewal_reminders: %s", result)
    return result
