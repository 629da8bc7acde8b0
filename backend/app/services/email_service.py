"""
EmailService — envia emails transacionais via Mailtrap SDK e registra logs.

Uso sincronizado (Celery workers). Configuracao vem das env vars (Settings);
cada tentativa (enviada, falha ou pulada) gera uma linha em email_logs.
"""
from __future__ import annotations

import html
import logging
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.email_log import EmailLog, EmailStatus
from app.services.plan_catalog import get_plan

logger = logging.getLogger(__name__)


def _plan_name(plan_type: Optional[str]) -> str:
    return f"{get_plan(plan_type).display_name} Plan"


def _button(link: str, label: str) -> str:
    return f"""
            <div style="text-align:center;margin:30px 0">
              <a href="{link}"
                 style="background:linear-gradient(135deg,#667eea,#764ba2);color:#ffffff;
                        padding:12px 32px;border-radius:10px;text-decoration:none;
                        font-weight:700;display:inline-block;font-size:14px">
                {label}
              </a>
            </div>"""


class EmailService:
    """Envia emails transacionais usando Mailtrap e registra cada envio."""

    def __init__(self, db: Session) -> None:
        self._db = db
        self._api_key: Optional[str] = settings.MAILTRAP_API_KEY or None
        self._sender_email: str = settings.MAILTRAP_SENDER_EMAIL
        self._sender_name: str = settings.MAILTRAP_SENDER_NAME

    def is_configured(self) -> bool:
        """Verifica se o servico de email esta habilitado e configurado."""
        return bool(settings.EMAIL_ENABLED and self._api_key)

    # ------------------------------------------------------------------
    # Log helper
    # ------------------------------------------------------------------

    def _log(
        self,
        *,
        recipient_email: str,
        recipient_user_id: Optional[UUID],
        email_type: str,
        subject: str,
        status: str,
        error_message: Optional[str] = None,
    ) -> None:
        """Persiste um registro de envio na tabela email_logs."""
        entry = EmailLog(
            recipient_email=recipient_email,
            recipient_user_id=recipient_user_id,
            email_type=email_type,
            subject=subject,
            status=status,
            error_message=error_message,
        )
        self._db.add(entry)
        self._db.flush()

    # ------------------------------------------------------------------
    # Envio
    # ------------------------------------------------------------------

    def _send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        *,
        email_type: str,
        recipient_user_id: Optional[UUID] = None,
    ) -> None:
        """Envia email via Mailtrap SDK e registra o resultado."""
        import mailtrap as mt

        try:
            mail = mt.Mail(
                sender=mt.Address(email=self._sender_email, name=self._sender_name),
                to=[mt.Address(email=to_email)],
                subject=subject,
                html=html_body,
                category="billing",
            )
            client = mt.MailtrapClient(token=self._api_key)
            client.send(mail)

            self._log(
                recipient_email=to_email,
                recipient_user_id=recipient_user_id,
                email_type=email_type,
                subject=subject,
                status=EmailStatus.SENT,
            )
            logger.info("Email enviado para %s: %s", to_email, subject)

        except Exception as exc:
            self._log(
                recipient_email=to_email,
                recipient_user_id=recipient_user_id,
                email_type=email_type,
                subject=subject,
                status=EmailStatus.FAILED,
                error_message=str(exc)[:500],
            )
            raise

    def log_skipped(
        self,
        to_email: str,
        email_type: str,
        *,
        recipient_user_id: Optional[UUID] = None,
    ) -> None:
        """Registra que um email foi pulado (servico nao configurado)."""
        self._log(
            recipient_email=to_email,
            recipient_user_id=recipient_user_id,
            email_type=email_type,
            subject="(skipped)",
            status=EmailStatus.SKIPPED,
            error_message="email_not_configured",
        )

    # ------------------------------------------------------------------
    # Emails transacionais — tenant
    # ------------------------------------------------------------------

    def send_purchase_received_email(
        self,
        to_email: str,
        full_name: Optional[str],
        *,
        plan_type: Optional[str],
        user_id: Optional[UUID] = None,
    ) -> None:
        """Compra recebida, aguardando aprovacao do operador."""
        plan_name = _plan_name(plan_type)
        price = get_plan(plan_type).price
        body = f"""
            <p>Hello {html.escape(full_name or "there")},</p>
            <p>Thank you for purchasing the <strong>{plan_name}</strong> (${price:.2f}/month).</p>
            <p>Your subscription is now <strong>pending approval</strong>. You will receive
            another email as soon as it is reviewed.</p>
            """
        subject = f"Plan Purchase Confirmed - {plan_name}"
        self._send(
            to_email, subject, _render_template(subject, body),
            email_type="purchase_received",
            recipient_user_id=user_id,
        )

    def send_status_change_email(
        self,
        to_email: str,
        full_name: Optional[str],
        *,
        status: Optional[str],
        plan_type: Optional[str],
        approved: bool,
        user_id: Optional[UUID] = None,
    ) -> None:
        """Compra aprovada (ativa) ou rejeitada (cancelada)."""
        plan_name = _plan_name(plan_type)
        if approved:
            subject = f"Your {plan_name} is now active"
            body = f"""
            <p>Hello {html.escape(full_name or "there")},</p>
            <p>Your <strong>{plan_name}</strong> has been approved and is now active.
            All plan features and limits are available right away.</p>
            {_button(f"{settings.FRONTEND_URL}/dashboard", "Open Dashboard")}
            """
        else:
            subject = f"Your {plan_name} purchase was not approved"
            body = f"""
            <p>Hello {html.escape(full_name or "there")},</p>
            <p>Your purchase of the <strong>{plan_name}</strong> was not approved
            (status: {html.escape(status or "canceled")}). Please contact support if you
            believe this is a mistake.</p>
            """
        self._send(
            to_email, subject, _render_template(subject, body),
            email_type="status_change",
            recipient_user_id=user_id,
        )

    def send_cancellation_decision_email(
        self,
        to_email: str,
        full_name: Optional[str],
        *,
        approved: bool,
        trial_ends_at: Optional[str] = None,
        user_id: Optional[UUID] = None,
    ) -> None:
        if approved:
            subject = "Your cancellation was approved"
            body = f"""
            <p>Hello {html.escape(full_name or "there")},</p>
            <p>Your subscription has been cancelled. Your account is back on the
            <strong>Free Trial</strong> until {html.escape(trial_ends_at or "the end of the trial window")}.</p>
            {_button(f"{settings.FRONTEND_URL}/pricing", "See Plans")}
            """
        else:
            subject = "Your cancellation request was declined"
            body = f"""
            <p>Hello {html.escape(full_name or "there")},</p>
            <p>Your cancellation request was declined and your subscription remains active.</p>
            """
        self._send(
            to_email, subject, _render_template(subject, body),
            email_type="cancellation_decision",
            recipient_user_id=user_id,
        )

    def send_trial_expiring_email(
        self,
        to_email: str,
        full_name: Optional[str],
        *,
        time_remaining: str,
        user_id: Optional[UUID] = None,
    ) -> None:
        subject = f"Your Trial is Ending Soon - {time_remaining} Remaining"
        body = f"""
            <p>Hello {html.escape(full_name or "there")},</p>
            <p>Your free trial ends in <strong>{html.escape(time_remaining)}</strong>.
            Choose a plan to keep your data and unlock more customers and features.</p>
            {_button(f"{settings.FRONTEND_URL}/pricing", "Choose a Plan")}
            """
        self._send(
            to_email, subject, _render_template(subject, body),
            email_type="trial_expiring",
            recipient_user_id=user_id,
        )

    def send_renewal_reminder_email(
        self,
        to_email: str,
        full_name: Optional[str],
        *,
        plan_type: Optional[str],
        renews_at: str,
        user_id: Optional[UUID] = None,
    ) -> None:
        plan_name = _plan_name(plan_type)
        subject = f"Subscription Renewal Reminder - {plan_name}"
        body = f"""
            <p>Hello {html.escape(full_name or "there")},</p>
            <p>Your <strong>{plan_name}</strong> renews on {html.escape(renews_at)}.
            Make sure your payment method is up to date to avoid interruptions.</p>
            """
        self._send(
            to_email, subject, _render_template(subject, body),
            email_type="renewal_reminder",
            recipient_user_id=user_id,
        )

    def send_renewal_approved_email(
        self,
        to_email: str,
        full_name: Optional[str],
        *,
        plan_type: Optional[str],
        period_end: Optional[str],
        user_id: Optional[UUID] = None,
    ) -> None:
        """Renovacao aprovada pelo operador; periodo estendido."""
        plan_name = _plan_name(plan_type)
        subject = f"Your {plan_name} has been renewed"
        body = f"""
            <p>Hello {html.escape(full_name or "there")},</p>
            <p>Your <strong>{plan_name}</strong> has been renewed and stays active
            until {html.escape(period_end or "the end of the new billing period")}.</p>
            {_button(f"{settings.FRONTEND_URL}/dashboard", "Open Dashboard")}
            """
        self._send(
            to_email, subject, _render_template(subject, body),
            email_type="renewal_approved",
            recipient_user_id=user_id,
        )

    # ------------------------------------------------------------------
    # Emails transacionais — operador
    # ------------------------------------------------------------------

    def send_operator_pending_email(
        self,
        to_email: str,
        *,
        tenant_email: Optional[str],
        business_name: Optional[str],
        plan_type: Optional[str],
    ) -> None:
        """Nova compra aguardando aprovacao."""
        plan_name = _plan_name(plan_type)
        subject = f"New Plan Purchase - {plan_name} - Approval Required"
        body = f"""
            <p>Hello Super Admin,</p>
            <p>A new plan purchase requires your approval.</p>
            <ul>
              <li><strong>Tenant:</strong> {html.escape(business_name or "-")} ({html.escape(tenant_email or "-")})</li>
              <li><strong>Plan:</strong> {plan_name}</li>
              <li><strong>Status:</strong> Pending Approval</li>
            </ul>
            {_button(f"{settings.FRONTEND_URL}/admin/subscriptions", "Review Purchase")}
            """
        self._send(
            to_email, subject, _render_template(subject, body),
            email_type="operator_pending",
        )

    def send_cancellation_request_email(
        self,
        to_email: str,
        *,
        tenant_email: Optional[str],
        business_name: Optional[str],
        plan_type: Optional[str],
    ) -> None:
        plan_name = _plan_name(plan_type)
        subject = f"Cancellation Request - {business_name or tenant_email}"
        body = f"""
            <p>Hello Super Admin,</p>
            <p><strong>{html.escape(business_name or tenant_email or "A tenant")}</strong>
            asked to cancel the <strong>{plan_name}</strong>.</p>
            {_button(f"{settings.FRONTEND_URL}/admin/subscriptions", "Review Request")}
            """
        self._send(
            to_email, subject, _render_template(subject, body),
            email_type="cancellation_request",
        )

    def send_plan_change_request_email(
        self,
        to_email: str,
        *,
        tenant_email: Optional[str],
        business_name: Optional[str],
        current_plan: Optional[str],
        target_plan: Optional[str],
        description: Optional[str],
    ) -> None:
        """Tenant pediu troca de plano; operador entra em contato."""
        tenant = business_name or tenant_email or "A tenant"
        subject = f"Plan Change Request - {tenant}"
        reason = html.escape(description or "-").replace("\n", "<br>")
        body = f"""
            <p>Hello Super Admin,</p>
            <p><strong>{html.escape(tenant)}</strong> asked to change their subscription plan.</p>
            <ul>
              <li><strong>Tenant:</strong> {html.escape(tenant_email or "-")}</li>
              <li><strong>Current plan:</strong> {_plan_name(current_plan)}</li>
              <li><strong>Requested plan:</strong> {_plan_name(target_plan)}</li>
            </ul>
            <div style="background:#fef3c7;border-left:4px solid #f59e0b;padding:12px 16px">
              {reason}
            </div>
            {_button(f"{settings.FRONTEND_URL}/admin/subscriptions", "Open Admin")}
            """
        self._send(
            to_email, subject, _render_template(subject, body),
            email_type="plan_change_request",
        )


def _render_template(title: str, body: str) -> str:
    """Renderiza template HTML inline para emails de billing (identidade QueueFlow)."""
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width,initial-scale=1">
</head>
<body style="margin:0;padding:0;background:#f3f4f6;font-family:Arial,Helvetica,sans-serif">
  <div style="max-width:600px;margin:40px auto;background:#ffffff;border-radius:10px;
              border:1px solid #e5e7eb;overflow:hidden">
    <!-- Header -->
    <div style="background:linear-gradient(135deg,#667eea 0%,#764ba2 100%);padding:26px 32px">
      <h1 style="margin:0;color:#ffffff;font-size:20px">{html.escape(title)}</h1>
    </div>
    <!-- Body -->
    <div style="padding:32px;color:#1f2937;font-size:15px;line-height:1.6">
      {body}
    </div>
    <!-- Footer -->
    <div style="padding:16px 32px;border-top:1px solid #e5e7eb;
                text-align:center;color:#6b7280;font-size:12px">
      This is an automated email from {html.escape(settings.APP_NAME)}.
    </div>
  </div>
</body>
</html>"""
