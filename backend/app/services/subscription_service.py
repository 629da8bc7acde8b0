"""
Subscription service — Stripe checkout, webhook receiver and checkout verifier.

Webhook events and the post-checkout verifier are the two producers that move
a tenant into ``pending``; both converge on ``SubscriptionStore.apply_checkout``
so a redelivered event and a racing verification land on the same row state.
Credenciais vem das variaveis de ambiente (Settings).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Optional
from uuid import UUID, uuid4

import stripe
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.stripe_event import StripeEvent
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.user import User
from app.services.entitlement_service import has_paid_access
from app.services.notification_service import (
    Notification,
    NotificationKind,
    operator_notification,
)
from app.services.plan_catalog import PAID_PLAN_TYPES, normalize_plan_type
from app.services.subscription_events import SubscriptionChange, SubscriptionChangeFeed
from app.services.subscription_store import (
    OUTCOME_APPLIED,
    InvalidStateError,
    StoreUnavailableError,
    SubscriptionNotFoundError,
    SubscriptionServiceError,
    SubscriptionStore,
    TransitionResult,
    dialect_insert,
)

logger = logging.getLogger(__name__)


class StripeNotConfiguredError(SubscriptionServiceError):
    """Credenciais Stripe nao configuradas."""

    def __init__(self, detail: str = "Stripe nao configurado. Defina STRIPE_SECRET_KEY.") -> None:
        super().__init__(detail, code="stripe_not_configured")


class InvalidSignatureError(SubscriptionServiceError):
    def __init__(self, detail: str = "Assinatura do webhook invalida.") -> None:
        super().__init__(detail, code="invalid_webhook_signature")


class MissingAttributionError(SubscriptionServiceError):
    """Checkout without a usable tenant/plan attribution."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail, code="missing_attribution")


class PaymentIncompleteError(SubscriptionServiceError):
    def __init__(self, detail: str = "Payment not completed.") -> None:
        super().__init__(detail, code="payment_incomplete")


class ProcessorError(SubscriptionServiceError):
    """The payment processor API failed or returned something unusable."""

    def __init__(self, detail: str = "Payment processor unavailable.") -> None:
        super().__init__(detail, code="processor_error")


# Ledger statuses
EVENT_PROCESSED = "processed"
EVENT_SKIPPED = "skipped"
EVENT_IGNORED = "ignored"
EVENT_FAILED = "failed"

OUTCOME_DUPLICATE = "duplicate"
OUTCOME_IGNORED = "ignored"
OUTCOME_ALREADY_APPLIED = "already_applied"

_FINAL_EVENT_STATUSES = (EVENT_PROCESSED, EVENT_SKIPPED, EVENT_IGNORED)

_PROCESSOR_STATUS_MAP = {
    "canceled": SubscriptionStatus.CANCELED.value,
    "past_due": SubscriptionStatus.PAST_DUE.value,
    "unpaid": SubscriptionStatus.EXPIRED.value,
    "incomplete_expired": SubscriptionStatus.EXPIRED.value,
}

_SETTLED_CHECKOUT_PAYMENT = ("paid", "no_payment_required")
_SETTLED_PROCESSOR_STATUSES = ("active", "trialing")


def map_processor_status(raw_status: Optional[str]) -> str:
    """Stripe subscription status -> local status (anything else counts as active)."""
    return _PROCESSOR_STATUS_MAP.get(raw_status or "", SubscriptionStatus.ACTIVE.value)


def _field(obj: Any, key: str, default: Any = None) -> Any:
    """Read ``key`` from a StripeObject, dict or plain object."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    getter = getattr(obj, "get", None)
    if callable(getter):
        return getter(key, default)
    return getattr(obj, key, default)


def _ref(value: Any) -> Optional[str]:
    """Id of an expandable field (plain id string or expanded object)."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    return _field(value, "id")


def _timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), UTC).replace(tzinfo=None)


def _period_bounds(stripe_sub: Any) -> tuple[Optional[datetime], Optional[datetime]]:
    """
    Current period of a Stripe subscription.

    Newer API versions moved the period onto the subscription items.
    """
    start = _field(stripe_sub, "current_period_start")
    end = _field(stripe_sub, "current_period_end")
    if not start or not end:
        items = _field(_field(stripe_sub, "items"), "data") or []
        if items:
            start = start or _field(items[0], "current_period_start")
            end = end or _field(items[0], "current_period_end")
    return _timestamp(start), _timestamp(end)


def _price_ref(stripe_sub: Any) -> Optional[str]:
    items = _field(_field(stripe_sub, "items"), "data") or []
    if not items:
        return None
    return _ref(_field(items[0], "price"))


def _metadata(*sources: Any) -> dict[str, str]:
    """First non-empty value per key, earlier sources win."""
    merged: dict[str, str] = {}
    for source in sources:
        metadata = _field(source, "metadata") or {}
        for key in ("tenant_id", "plan_type"):
            value = _field(metadata, key)
            if value and key not in merged:
                merged[key] = str(value)
    return merged


@dataclass(frozen=True)
class WebhookResult:
    event_type: str
    outcome: str


@dataclass(frozen=True)
class VerificationResult:
    tenant_id: UUID
    subscription: Optional[Subscription]
    outcome: str
    already_applied: bool


class SubscriptionService:
    """
    Stripe-facing operations.

    Usa factory ``from_settings`` para carregar credenciais das env vars.
    """

    def __init__(
        self,
        *,
        secret_key: str,
        webhook_secret: str,
        publishable_key: str = "",
    ) -> None:
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._publishable_key = publishable_key

    def _configure_stripe(self) -> None:
        """Seta stripe.api_key antes de cada operacao."""
        stripe.api_key = self._secret_key

    def _require_webhook_secret(self) -> None:
        if not self._webhook_secret:
            raise StripeNotConfiguredError(
                "Stripe webhook secret nao configurado. Defina STRIPE_WEBHOOK_SECRET."
            )

    @classmethod
    def from_settings(cls) -> SubscriptionService:
        """
        Factory — credenciais das env vars.

        Raises:
            StripeNotConfiguredError: Se STRIPE_SECRET_KEY estiver vazio.
        """
        if not settings.STRIPE_SECRET_KEY:
            raise StripeNotConfiguredError()
        return cls(
            secret_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            publishable_key=settings.STRIPE_PUBLISHABLE_KEY,
        )

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def create_checkout_session(
        self,
        db: AsyncSession,
        *,
        tenant: User,
        plan_type: str,
        success_url: str,
        cancel_url: str,
    ) -> dict[str, str]:
        """
        Create a Stripe Checkout Session for a paid plan.

        The session and the subscription both carry ``tenant_id``/``plan_type``
        metadata so webhook and verifier can attribute the purchase.

        Returns:
            dict with checkout_url and session_id.
        """
        normalized = normalize_plan_type(plan_type)
        if normalized is None or normalized.value not in PAID_PLAN_TYPES:
            raise SubscriptionServiceError(
                f"Plano invalido para compra: {plan_type}",
                code="invalid_plan",
            )
        plan = normalized.value

        price_id = settings.stripe_price_ids.get(plan)
        if not price_id:
            raise SubscriptionServiceError(
                "Plano nao possui preco configurado no Stripe.",
                code="plan_no_stripe_price",
            )

        existing = await SubscriptionStore.get_by_tenant(db, tenant.id)
        if existing is not None:
            if existing.status == SubscriptionStatus.PENDING.value:
                raise InvalidStateError("A purchase is already awaiting approval.")
            if has_paid_access(existing) and existing.plan_type == plan:
                raise InvalidStateError(f"Already subscribed to the {plan} plan.")

        customer_kwarg: dict[str, Any] = {}
        if existing is not None and existing.external_customer_ref:
            customer_kwarg["customer"] = existing.external_customer_ref
        else:
            customer_kwarg["customer_email"] = tenant.email

        metadata = {"tenant_id": str(tenant.id), "plan_type": plan}
        self._configure_stripe()
        try:
            session = stripe.checkout.Session.create(
                mode="subscription",
                line_items=[{"price": price_id, "quantity": 1}],
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=str(tenant.id),
                metadata=metadata,
                subscription_data={"metadata": metadata},
                **customer_kwarg,
            )
        except stripe.StripeError as exc:
            logger.error("stripe_checkout_create_failed: tenant=%s error=%s", tenant.id, exc)
            raise ProcessorError(f"Falha ao criar checkout: {exc.user_message or exc}") from exc

        logger.info(
            "checkout_session_created: tenant=%s plan=%s session=%s",
            tenant.id, plan, session.id,
        )
        return {
            "checkout_url": session.url,
            "session_id": session.id,
        }

    # ------------------------------------------------------------------
    # Webhook receiver
    # ------------------------------------------------------------------

    async def handle_webhook_event(
        self,
        db: AsyncSession,
        payload: bytes,
        sig_header: Optional[str],
    ) -> WebhookResult:
        """
        Verify and dispatch a Stripe webhook event.

        A signature failure raises before anything is written. Every verified
        event gets a ledger row; an event id already processed is a no-op.

        Raises:
            InvalidSignatureError, MissingAttributionError, ProcessorError,
            StoreUnavailableError. The caller commits in all cases but the
            signature and store failures so the ledger keeps the failure.
        """
        self._require_webhook_secret()
        self._configure_stripe()
        if not sig_header:
            raise InvalidSignatureError("Header Stripe-Signature ausente.")
        try:
            event = stripe.Webhook.construct_event(
                payload, sig_header, self._webhook_secret,
            )
        except (stripe.SignatureVerificationError, ValueError) as exc:
            logger.warning("stripe_webhook_signature_invalid: %s", exc)
            raise InvalidSignatureError() from exc

        event_type = event["type"]
        event_id = event["id"]
        data = event["data"]["object"]

        previous = await self._get_event(db, event_id)
        if previous is not None and previous.status in _FINAL_EVENT_STATUSES:
            logger.info("stripe_webhook_duplicate: id=%s type=%s", event_id, event_type)
            return WebhookResult(event_type, OUTCOME_DUPLICATE)

        handler = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_succeeded": self._handle_payment_succeeded,
            "invoice.paid": self._handle_payment_succeeded,
            "invoice_payment.paid": self._handle_payment_succeeded,
            "invoice.payment_failed": self._handle_payment_failed,
        }.get(event_type)

        if handler is None:
            await self._record_event(
                db, event_id=event_id, event_type=event_type,
                status=EVENT_IGNORED, outcome=OUTCOME_IGNORED, data=data,
            )
            logger.debug("Stripe webhook ignored: %s", event_type)
            return WebhookResult(event_type, OUTCOME_IGNORED)

        try:
            result = await handler(db, data)
        except StoreUnavailableError:
            raise
        except SubscriptionServiceError as exc:
            await self._record_event(
                db, event_id=event_id, event_type=event_type,
                status=EVENT_FAILED, outcome=exc.code, data=data,
                error_message=exc.detail[:500],
            )
            logger.error(
                "stripe_webhook_failed: id=%s type=%s code=%s detail=%s",
                event_id, event_type, exc.code, exc.detail,
            )
            raise

        outcome = result.outcome if isinstance(result, TransitionResult) else result
        tenant_id = (
            result.subscription.tenant_id
            if isinstance(result, TransitionResult) and result.subscription is not None
            else None
        )
        await self._record_event(
            db,
            event_id=event_id,
            event_type=event_type,
            status=EVENT_PROCESSED if outcome == OUTCOME_APPLIED else EVENT_SKIPPED,
            outcome=outcome,
            data=data,
            tenant_id=tenant_id,
        )
        logger.info("Stripe webhook processed: %s outcome=%s", event_type, outcome)
        return WebhookResult(event_type, outcome)

    # ------------------------------------------------------------------
    # Internal webhook handlers
    # ------------------------------------------------------------------

    async def _handle_checkout_completed(
        self, db: AsyncSession, data: Any,
    ) -> TransitionResult | str:
        """checkout.session.completed — record the purchase as pending."""
        mode = _field(data, "mode")
        if mode and mode != "subscription":
            logger.info("checkout_completed_ignored: mode=%s", mode)
            return OUTCOME_IGNORED

        raw_subscription = _field(data, "subscription")
        subscription_ref = _ref(raw_subscription)
        if not subscription_ref:
            raise MissingAttributionError("Checkout concluido sem subscription.")

        stripe_sub = (
            raw_subscription
            if not isinstance(raw_subscription, str)
            else self._retrieve_subscription(subscription_ref)
        )
        tenant, plan_type = await self._resolve_attribution(db, _metadata(data, stripe_sub))
        customer_ref = _ref(_field(data, "customer")) or _ref(_field(stripe_sub, "customer"))

        return await self._record_checkout(
            db,
            tenant=tenant,
            plan_type=plan_type,
            subscription_ref=subscription_ref,
            customer_ref=customer_ref,
            price_ref=_price_ref(stripe_sub),
            source="webhook",
        )

    async def _handle_subscription_updated(
        self, db: AsyncSession, data: Any,
    ) -> TransitionResult:
        """customer.subscription.updated — refresh status and period of an approved cycle."""
        period_start, period_end = _period_bounds(data)
        result = await SubscriptionStore.refresh_status(
            db,
            subscription_ref=_field(data, "id"),
            target_status=map_processor_status(_field(data, "status")),
            period_start=period_start,
            period_end=period_end,
            canceled_at=_timestamp(_field(data, "canceled_at")),
        )
        self._stage_status_change(db, result, reason="processor_update")
        return result

    async def _handle_subscription_deleted(
        self, db: AsyncSession, data: Any,
    ) -> TransitionResult:
        """customer.subscription.deleted — expire unless already terminal."""
        result = await SubscriptionStore.mark_deleted(db, _field(data, "id"))
        self._stage_status_change(db, result, reason="processor_deleted")
        return result

    async def _handle_payment_succeeded(
        self, db: AsyncSession, data: Any,
    ) -> TransitionResult | str:
        """invoice paid — renew an approved cycle; pending purchases stay pending."""
        subscription_ref = self._invoice_subscription_ref(data)
        if not subscription_ref:
            logger.info("invoice_paid_ignored: invoice without subscription")
            return OUTCOME_IGNORED

        existing = await SubscriptionStore.get_by_external_ref(db, subscription_ref)
        period_start = period_end = None
        if existing is not None and existing.status != SubscriptionStatus.PENDING.value:
            period_start, period_end = _period_bounds(
                self._retrieve_subscription(subscription_ref)
            )

        result = await SubscriptionStore.refresh_status(
            db,
            subscription_ref=subscription_ref,
            target_status=SubscriptionStatus.ACTIVE.value,
            period_start=period_start,
            period_end=period_end,
        )
        self._stage_status_change(db, result, reason="payment_succeeded")
        return result

    async def _handle_payment_failed(
        self, db: AsyncSession, data: Any,
    ) -> TransitionResult | str:
        """invoice.payment_failed — mark subscription as past_due."""
        subscription_ref = self._invoice_subscription_ref(data)
        if not subscription_ref:
            return OUTCOME_IGNORED

        result = await SubscriptionStore.mark_payment_failed(db, subscription_ref)
        self._stage_status_change(db, result, reason="payment_failed")
        return result

    def _invoice_subscription_ref(self, data: Any) -> Optional[str]:
        """Subscription id of an invoice (or invoice_payment) payload."""
        ref = _ref(_field(data, "subscription"))
        if ref:
            return ref

        details = _field(_field(data, "parent"), "subscription_details")
        ref = _ref(_field(details, "subscription"))
        if ref:
            return ref

        if _field(data, "object") == "invoice_payment":
            invoice_ref = _ref(_field(data, "invoice"))
            if invoice_ref:
                try:
                    invoice = stripe.Invoice.retrieve(invoice_ref)
                except stripe.StripeError as exc:
                    logger.error("stripe_invoice_retrieve_failed: %s error=%s", invoice_ref, exc)
                    raise ProcessorError() from exc
                return self._invoice_subscription_ref(invoice)
        return None

    # ------------------------------------------------------------------
    # Checkout verifier
    # ------------------------------------------------------------------

    async def verify_checkout(
        self,
        db: AsyncSession,
        *,
        tenant: User,
        session_id: Optional[str] = None,
    ) -> VerificationResult:
        """
        Confirm a purchase directly with Stripe, independently of the webhook.

        With ``session_id`` the checkout session is authoritative: its
        metadata decides the tenant even when it differs from the caller.
        Without it, the tenant's latest Stripe subscription is looked up by
        customer (stored ref, else email).

        Raises:
            PaymentIncompleteError: Session not paid / subscription not active.
            MissingAttributionError: No usable metadata on the purchase.
            SubscriptionNotFoundError: Nothing to verify for this tenant.
            ProcessorError: Stripe API failure.
        """
        self._configure_stripe()
        if session_id:
            return await self._verify_session(db, tenant=tenant, session_id=session_id)
        return await self._verify_latest_subscription(db, tenant=tenant)

    async def _verify_session(
        self, db: AsyncSession, *, tenant: User, session_id: str,
    ) -> VerificationResult:
        try:
            session = stripe.checkout.Session.retrieve(session_id, expand=["subscription"])
        except stripe.InvalidRequestError as exc:
            logger.warning("checkout_session_not_found: session=%s error=%s", session_id, exc)
            raise SubscriptionNotFoundError("Checkout session not found.") from exc
        except stripe.StripeError as exc:
            logger.error("stripe_session_retrieve_failed: session=%s error=%s", session_id, exc)
            raise ProcessorError() from exc

        if _field(session, "payment_status") not in _SETTLED_CHECKOUT_PAYMENT:
            raise PaymentIncompleteError()

        raw_subscription = _field(session, "subscription")
        subscription_ref = _ref(raw_subscription)
        if not subscription_ref:
            raise SubscriptionNotFoundError("Checkout session has no subscription.")
        stripe_sub = (
            raw_subscription
            if not isinstance(raw_subscription, str)
            else self._retrieve_subscription(subscription_ref)
        )

        purchaser, plan_type = await self._resolve_attribution(db, _metadata(session, stripe_sub))
        self._warn_on_mismatch(tenant, purchaser)

        return await self._apply_verified(
            db,
            purchaser=purchaser,
            plan_type=plan_type,
            subscription_ref=subscription_ref,
            customer_ref=_ref(_field(session, "customer")) or _ref(_field(stripe_sub, "customer")),
            price_ref=_price_ref(stripe_sub),
        )

    async def _verify_latest_subscription(
        self, db: AsyncSession, *, tenant: User,
    ) -> VerificationResult:
        existing = await SubscriptionStore.get_by_tenant(db, tenant.id)
        customer_ref = existing.external_customer_ref if existing is not None else None

        try:
            if not customer_ref:
                customers = stripe.Customer.list(email=tenant.email, limit=1)
                found = _field(customers, "data") or []
                customer_ref = _ref(found[0]) if found else None
            if not customer_ref:
                raise SubscriptionNotFoundError("No Stripe customer found for this account.")

            subscriptions = stripe.Subscription.list(customer=customer_ref, limit=1)
        except stripe.StripeError as exc:
            logger.error("stripe_lookup_failed: tenant=%s error=%s", tenant.id, exc)
            raise ProcessorError() from exc

        found_subs = _field(subscriptions, "data") or []
        if not found_subs:
            raise SubscriptionNotFoundError("No Stripe subscription found for this account.")
        stripe_sub = found_subs[0]
        subscription_ref = _ref(stripe_sub)

        if existing is not None and existing.external_subscription_ref == subscription_ref:
            return VerificationResult(tenant.id, existing, OUTCOME_ALREADY_APPLIED, True)

        if _field(stripe_sub, "status") not in _SETTLED_PROCESSOR_STATUSES:
            raise PaymentIncompleteError(
                f"Subscription status is {_field(stripe_sub, 'status')}."
            )

        purchaser, plan_type = await self._resolve_attribution(db, _metadata(stripe_sub))
        self._warn_on_mismatch(tenant, purchaser)

        return await self._apply_verified(
            db,
            purchaser=purchaser,
            plan_type=plan_type,
            subscription_ref=subscription_ref,
            customer_ref=customer_ref,
            price_ref=_price_ref(stripe_sub),
        )

    async def _apply_verified(
        self,
        db: AsyncSession,
        *,
        purchaser: User,
        plan_type: str,
        subscription_ref: str,
        customer_ref: Optional[str],
        price_ref: Optional[str],
    ) -> VerificationResult:
        existing = await SubscriptionStore.get_by_tenant(db, purchaser.id)
        if existing is not None and existing.external_subscription_ref == subscription_ref:
            logger.info(
                "checkout_verify_already_applied: tenant=%s ref=%s status=%s",
                purchaser.id, subscription_ref, existing.status,
            )
            return VerificationResult(purchaser.id, existing, OUTCOME_ALREADY_APPLIED, True)

        result = await self._record_checkout(
            db,
            tenant=purchaser,
            plan_type=plan_type,
            subscription_ref=subscription_ref,
            customer_ref=customer_ref,
            price_ref=price_ref,
            source="verifier",
        )
        return VerificationResult(
            purchaser.id, result.subscription, result.outcome, not result.applied,
        )

    @staticmethod
    def _warn_on_mismatch(caller: User, purchaser: User) -> None:
        if caller.id != purchaser.id:
            logger.warning(
                "checkout_verify_tenant_mismatch: caller=%s metadata_tenant=%s (using metadata)",
                caller.id, purchaser.id,
            )

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    async def _record_checkout(
        self,
        db: AsyncSession,
        *,
        tenant: User,
        plan_type: str,
        subscription_ref: str,
        customer_ref: Optional[str],
        price_ref: Optional[str],
        source: str,
    ) -> TransitionResult:
        result = await SubscriptionStore.apply_checkout(
            db,
            tenant_id=tenant.id,
            plan_type=plan_type,
            subscription_ref=subscription_ref,
            customer_ref=customer_ref,
            price_ref=price_ref,
        )
        if result.applied and result.subscription is not None:
            context = {
                "plan_type": plan_type,
                "tenant_email": tenant.email,
                "business_name": tenant.business_name,
                "source": source,
            }
            SubscriptionChangeFeed.stage(
                db,
                SubscriptionChange.from_subscription(
                    result.subscription,
                    reason="checkout_completed",
                    notifications=[
                        Notification(
                            kind=NotificationKind.PURCHASE_RECEIVED,
                            to_email=tenant.email,
                            full_name=tenant.full_name,
                            user_id=tenant.id,
                            context=context,
                        ),
                        operator_notification(NotificationKind.OPERATOR_PENDING, **context),
                    ],
                ),
            )
        return result

    @staticmethod
    def _stage_status_change(db: AsyncSession, result: TransitionResult, *, reason: str) -> None:
        if result.applied and result.subscription is not None:
            SubscriptionChangeFeed.stage(
                db, SubscriptionChange.from_subscription(result.subscription, reason=reason),
            )

    async def _resolve_attribution(
        self, db: AsyncSession, metadata: dict[str, str],
    ) -> tuple[User, str]:
        """Tenant and paid plan named by checkout metadata."""
        raw_tenant = metadata.get("tenant_id")
        raw_plan = metadata.get("plan_type")
        if not raw_tenant or not raw_plan:
            raise MissingAttributionError("Checkout sem metadata tenant_id/plan_type.")

        normalized = normalize_plan_type(raw_plan)
        if normalized is None or normalized.value not in PAID_PLAN_TYPES:
            raise MissingAttributionError(f"Plano desconhecido na metadata: {raw_plan}")

        try:
            tenant_id = UUID(raw_tenant)
        except ValueError as exc:
            raise MissingAttributionError(f"tenant_id invalido na metadata: {raw_tenant}") from exc

        result = await SubscriptionStore.execute(db, select(User).where(User.id == tenant_id))
        tenant = result.scalar_one_or_none()
        if tenant is None:
            raise MissingAttributionError(f"Tenant nao encontrado: {tenant_id}")
        return tenant, normalized.value

    def _retrieve_subscription(self, subscription_ref: str) -> Any:
        try:
            return stripe.Subscription.retrieve(subscription_ref)
        except stripe.StripeError as exc:
            logger.error("stripe_subscription_retrieve_failed: %s error=%s", subscription_ref, exc)
            raise ProcessorError() from exc

    # ------------------------------------------------------------------
    # Event ledger
    # ------------------------------------------------------------------

    @staticmethod
    async def _get_event(db: AsyncSession, event_id: str) -> Optional[StripeEvent]:
        result = await SubscriptionStore.execute(
            db, select(StripeEvent).where(StripeEvent.event_id == event_id),
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _record_event(
        db: AsyncSession,
        *,
        event_id: str,
        event_type: str,
        status: str,
        outcome: Optional[str] = None,
        data: Any = None,
        tenant_id: Optional[UUID] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Upsert the ledger row for ``event_id`` (a retried event overwrites its failure)."""
        now = datetime.utcnow()
        subscription_ref = (
            _ref(_field(data, "subscription"))
            if _field(data, "object") != "subscription"
            else _ref(data)
        )
        values = {
            "event_type": event_type,
            "status": status,
            "outcome": outcome,
            "customer_id": _ref(_field(data, "customer")),
            "subscription_id": subscription_ref,
            "tenant_id": tenant_id,
            "error_message": error_message,
            "payload_summary": str(data)[:500] if data is not None else None,
            "updated_at": now,
        }
        insert = dialect_insert(db)
        stmt = insert(StripeEvent).values(
            id=uuid4(), event_id=event_id, created_at=now, **values,
        )
        stmt = stmt.on_conflict_do_update(index_elements=[StripeEvent.event_id], set_=values)
        await SubscriptionStore.execute(db, stmt)
