"""
Celery tasks para envio de emails de billing via Mailtrap.

Cada task registra o resultado (sent/failed/skipped) na tabela email_logs.
Todas recebem ``(to_email, full_name, context, user_id)`` como enfileirado por
NotificationService; ``context`` e um dict de strings.
"""
from __future__ import annotations

import logging
from typing import Callable, Optional

from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def _send_or_skip(
    to_email: str,
    email_type: str,
    user_id: Optional[str],
    send: Callable[..., None],
) -> dict:
    """Abre sessao sync, pula se email nao configurado, senao chama ``send(svc, uid)``."""
    from uuid import UUID
    from app.core.database_sync import get_sync_db
    from app.services.email_service import EmailService

    uid = UUID(user_id) if user_id else None

    with get_sync_db() as db:
        svc = EmailService(db)
        if not svc.is_configured():
            logger.info("Email nao configurado, pulando %s para %s", email_type, to_email)
            svc.log_skipped(to_email, email_type, recipient_user_id=uid)
            return {"status": "skipped", "reason": "email_not_configured"}
        send(svc, uid)
        return {"status": "sent", "to": to_email}


def _flag(value: Optional[str]) -> bool:
    return str(value).lower() == "true"


@celery_app.task(
    name="app.workers.tasks.email_tasks.send_purchase_received_email",
    autoretry_for=(Exception,),
    max_retries=3,
    retry_backoff=True,
)
def send_purchase_received_email(
    to_email: str,
    full_name: Optional[str] = None,
    context: Optional[dict] = None,
    user_id: Optional[str] = None,
) -> dict:
    """Confirma ao tenant que a compra foi recebida e aguarda aprovacao."""
    ctx = context or {}
    return _send_or_skip(
        to_email, "purchase_received", user_id,
        lambda svc, uid: svc.send_purchase_received_email(
            to_email, full_name, plan_type=ctx.get("plan_type"), user_id=uid,
        ),
    )


@celery_app.task(
    name="app.workers.tasks.email_tasks.send_operator_pending_email",
    autoretry_for=(Exception,),
    max_retries=3,
    retry_backoff=True,
)
def send_operator_pending_email(
    to_email: str,
    full_name: Optional[str] = None,
    context: Optional[dict] = None,
    user_id: Optional[str] = None,
) -> dict:
    """Avisa o operador de uma nova compra pendente."""
    ctx = context or {}
    return _send_or_skip(
        to_email, "operator_pending", user_id,
        lambda svc, uid: svc.send_operator_pending_email(
            to_email,
            tenant_email=ctx.get("tenant_email"),
            business_name=ctx.get("business_name"),
            plan_type=ctx.get("plan_type"),
        ),
    )


@celery_app.task(
    name="app.workers.tasks.email_tasks.send_status_change_email",
    autoretry_for=(Exception,),
    max_retries=3,
    retry_backoff=True,
)
def send_status_change_email(
    to_email: str,
    full_name: Optional[str] = None,
    context: Optional[dict] = None,
    user_id: Optional[str] = None,
) -> dict:
    """Compra aprovada ou rejeitada."""
    ctx = context or {}
    return _send_or_skip(
        to_email, "status_change", user_id,
        lambda svc, uid: svc.send_status_change_email(
            to_email,
            full_name,
            status=ctx.get("status"),
            plan_type=ctx.get("plan_type"),
            approved=_flag(ctx.get("approved")),
            user_id=uid,
        ),
    )


@celery_app.task(
    name="app.workers.tasks.email_tasks.send_cancellation_request_email",
    autoretry_for=(Exception,),
    max_retries=3,
    retry_backoff=True,
)
def send_cancellation_request_email(
    to_email: str,
    full_name: Optional[str] = None,
    context: Optional[dict] = None,
    user_id: Optional[str] = None,
) -> dict:
    """Avisa o operador de um pedido de cancelamento."""
    ctx = context or {}
    return _send_or_skip(
        to_email, "cancellation_request", user_id,
        lambda svc, uid: svc.send_cancellation_request_email(
            to_email,
            tenant_email=ctx.get("tenant_email"),
            business_name=ctx.get("business_name"),
            plan_type=ctx.get("plan_type"),
        ),
    )


@celery_app.task(
    name="app.workers.tasks.email_tasks.send_cancellation_decision_email",
    autoretry_for=(Exception,),
    max_retries=3,
    retry_backoff=True,
)
def send_cancellation_decision_email(
    to_email: str,
    full_name: Optional[str] = None,
    context: Optional[dict] = None,
    user_id: Optional[str] = None,
) -> dict:
    ctx = context or {}
    return _send_or_skip(
        to_email, "cancellation_decision", user_id,
        lambda svc, uid: svc.send_cancellation_decision_email(
            to_email,
            full_name,
            approved=_flag(ctx.get("approved")),
            trial_ends_at=ctx.get("trial_ends_at"),
            user_id=uid,
        ),
    )


@celery_app.task(
    name="app.workers.tasks.email_tasks.send_trial_expiring_email",
    autoretry_for=(Exception,),
    max_retries=3,
    retry_backoff=True,
)
def send_trial_expiring_email(
    to_email: str,
    full_name: Optional[str] = None,
    context: Optional[dict] = None,
    user_id: Optional[str] = None,
) -> dict:
    ctx = context or {}
    return _send_or_skip(
        to_email, "trial_expiring", user_id,
        lambda svc, uid: svc.send_trial_expiring_email(
            to_email,
            full_name,
            time_remaining=ctx.get("time_remaining") or "less than a day",
            user_id=uid,
        ),
    )


@celery_app.task(
    name="app.workers.tasks.email_tasks.send_renewal_reminder_email",
    autoretry_for=(Exception,),
    max_retries=3,
    retry_backoff=True,
)
def send_renewal_reminder_email(
    to_email: str,
    full_name: Optional[str] = None,
    context: Optional[dict] = None,
    user_id: Optional[str] = None,
) -> dict:
    ctx = context or {}
    return _send_or_skip(
        to_email, "renewal_reminder", user_id,
        lambda svc, uid: svc.send_renewal_reminder_email(
            to_email,
            full_name,
            plan_type=ctx.get("plan_type"),
            renews_at=ctx.get("renews_at") or "-",
            user_id=uid,
        ),
    )


@celery_app.task(
    name="app.workers.tasks.email_tasks.send_renewal_approved_email",
    autoretry_for=(Exception,),
    max_retries=3,
    retry_backoff=True,
)
def send_renewal_approved_email(
    to_email: str,
    full_name: Optional[str] = None,
    context: Optional[dict] = None,
    user_id: Optional[str] = None,
) -> dict:
    """Renovacao aprovada; informa o novo fim de periodo."""
    ctx = context or {}
    return _send_or_skip(
        to_email, "renewal_approved", user_id,
        lambda svc, uid: svc.send_renewal_approved_email(
            to_email,
            full_name,
            plan_type=ctx.get("plan_type"),
            period_end=ctx.get("current_period_end"),
            user_id=uid,
        ),
    )


@celery_app.task(
    name="app.workers.tasks.email_tasks.send_plan_change_request_email",
    autoretry_for=(Exception,),
    max_retries=3,
    retry_backoff=True,
)
def send_plan_change_request_email(
    to_email: str,
    full_name: Optional[str] = None,
    context: Optional[dict] = None,
    user_id: Optional[str] = None,
) -> dict:
    """Avisa o operador de um pedido de troca de plano."""
    ctx = context or {}
    return _send_or_skip(
        to_email, "plan_change_request", user_id,
        lambda svc, uid: svc.send_plan_change_request_email(
            to_email,
            tenant_email=ctx.get("tenant_email"),
            business_name=ctx.get("business_name"),
            current_plan=ctx.get("current_plan"),
            target_plan=ctx.get("target_plan"),
            description=ctx.get("description"),
        ),
    )
