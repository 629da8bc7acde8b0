"""
Stripe webhook tests — signature, attribution, idempotent ledger and transitions.

``stripe.Webhook.construct_event`` is patched to return the event under test;
no request reaches Stripe.
"""
from __future__ import annotations

import json
import time
from datetime import datetime, timedelta
from typing import Any, Optional
from unittest.mock import patch

import pytest
import stripe
from httpx import AsyncClient
from sqlalchemy import select

from app.models.stripe_event import StripeEvent
from app.services.notification_service import NotificationKind
from app.services.subscription_events import channel_name
from app.services.subscription_store import SubscriptionStore

WEBHOOK_URL = "/api/v1/billing/webhook"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _event(event_type: str, obj: dict[str, Any], event_id: str = "evt_1") -> dict[str, Any]:
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def _checkout_session(
    tenant_id: Optional[str],
    plan_type: Optional[str] = "professional",
    subscription: Any = "sub_1",
) -> dict[str, Any]:
    metadata = {}
    if tenant_id:
        metadata["tenant_id"] = tenant_id
    if plan_type:
        metadata["plan_type"] = plan_type
    return {
        "id": "cs_test_1",
        "object": "checkout.session",
        "mode": "subscription",
        "customer": "cus_1",
        "subscription": subscription,
        "payment_status": "paid",
        "metadata": metadata,
    }


def _stripe_subscription(
    ref: str = "sub_1",
    status: str = "active",
    metadata: Optional[dict[str, str]] = None,
) -> dict[str, Any]:
    now = int(time.time())
    return {
        "id": ref,
        "object": "subscription",
        "customer": "cus_1",
        "status": status,
        "metadata": metadata or {},
        "items": {
            "data": [
                {
                    "price": {"id": "price_professional"},
                    "current_period_start": now,
                    "current_period_end": now + 30 * 86400,
                }
            ]
        },
    }


async def _post(client: AsyncClient, event: dict[str, Any]):
    with patch("stripe.Webhook.construct_event", return_value=event), \
            patch("stripe.Subscription.retrieve", return_value=_stripe_subscription()):
        return await client.post(
            WEBHOOK_URL,
            content=json.dumps(event).encode(),
            headers={"stripe-signature": "t=1,v1=test"},
        )


async def _ledger(session_factory) -> list[StripeEvent]:
    async with session_factory() as session:
        result = await session.execute(select(StripeEvent).order_by(StripeEvent.created_at))
        return list(result.scalars().all())


async def _subscription(session_factory, tenant_id):
    async with session_factory() as session:
        return await SubscriptionStore.get_by_tenant(session, tenant_id)


async def _active(make_subscription, tenant, ref: str = "sub_1"):
    now = datetime.utcnow()
    return await make_subscription(
        tenant,
        status="active",
        plan_type="professional",
        external_subscription_ref=ref,
        external_customer_ref="cus_1",
        current_period_start=now - timedelta(days=1),
        current_period_end=now + timedelta(days=29),
    )


# ---------------------------------------------------------------------------
# Signature
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_invalid_signature_is_rejected_without_ledger_row(
    client: AsyncClient, session_factory,
) -> None:
    with patch(
        "stripe.Webhook.construct_event",
        side_effect=stripe.SignatureVerificationError("bad signature", "t=1,v1=bad"),
    ):
        response = await client.post(
            WEBHOOK_URL, content=b"{}", headers={"stripe-signature": "t=1,v1=bad"},
        )

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "invalid_webhook_signature"
    assert await _ledger(session_factory) == []


@pytest.mark.asyncio
async def test_missing_signature_header_is_rejected(client: AsyncClient) -> None:
    response = await client.post(WEBHOOK_URL, content=b"{}")

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "invalid_webhook_signature"


# ---------------------------------------------------------------------------
# checkout.session.completed
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_checkout_completed_records_pending_purchase(
    client: AsyncClient, session_factory, make_user, fake_redis, sent_notifications,
) -> None:
    tenant = await make_user("buyer@example.com")
    event = _event("checkout.session.completed", _checkout_session(str(tenant.id)))

    response = await _post(client, event)

    assert response.status_code == 200, response.text
    assert response.json() == {
        "status": "ok", "event": "checkout.session.completed", "outcome": "applied",
    }

    row = await _subscription(session_factory, tenant.id)
    assert row.status == "pending"
    assert row.plan_type == "professional"
    assert row.external_subscription_ref == "sub_1"
    assert row.external_price_ref == "price_professional"

    ledger = await _ledger(session_factory)
    assert [(e.event_id, e.status, e.outcome) for e in ledger] == [("evt_1", "processed", "applied")]
    assert ledger[0].tenant_id == tenant.id

    kinds = {(n.kind, n.to_email) for n in sent_notifications}
    assert kinds == {
        (NotificationKind.PURCHASE_RECEIVED, "buyer@example.com"),
        (NotificationKind.OPERATOR_PENDING, "ops@queueflow.test"),
    }
    channels = [channel for channel, _ in fake_redis.published]
    assert channels == [channel_name(tenant.id)]


@pytest.mark.asyncio
async def test_redelivered_event_is_duplicate(
    client: AsyncClient, session_factory, make_user, sent_notifications,
) -> None:
    tenant = await make_user()
    event = _event("checkout.session.completed", _checkout_session(str(tenant.id)))

    await _post(client, event)
    sent_before = len(sent_notifications)
    response = await _post(client, event)

    assert response.status_code == 200
    assert response.json()["outcome"] == "duplicate"
    assert len(sent_notifications) == sent_before
    assert len(await _ledger(session_factory)) == 1


@pytest.mark.asyncio
async def test_same_purchase_under_new_event_id_is_noop(
    client: AsyncClient, session_factory, make_user,
) -> None:
    tenant = await make_user()
    await _post(client, _event("checkout.session.completed", _checkout_session(str(tenant.id))))

    response = await _post(
        client,
        _event("checkout.session.completed", _checkout_session(str(tenant.id)), event_id="evt_2"),
    )

    assert response.json()["outcome"] == "noop"
    statuses = {e.event_id: e.status for e in await _ledger(session_factory)}
    assert statuses == {"evt_1": "processed", "evt_2": "skipped"}


@pytest.mark.asyncio
async def test_missing_metadata_fails_and_keeps_failed_ledger_row(
    client: AsyncClient, session_factory, make_user,
) -> None:
    tenant = await make_user()
    event = _event("checkout.session.completed", _checkout_session(None, None))

    response = await _post(client, event)

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "missing_attribution"
    assert await _subscription(session_factory, tenant.id) is None

    ledger = await _ledger(session_factory)
    assert [(e.status, e.outcome) for e in ledger] == [("failed", "missing_attribution")]
    assert ledger[0].error_message


@pytest.mark.asyncio
async def test_metadata_falls_back_to_subscription_object(
    client: AsyncClient, session_factory, make_user,
) -> None:
    tenant = await make_user()
    expanded = _stripe_subscription(
        metadata={"tenant_id": str(tenant.id), "plan_type": "starter"},
    )
    event = _event("checkout.session.completed", _checkout_session(None, None, subscription=expanded))

    response = await _post(client, event)

    assert response.status_code == 200, response.text
    row = await _subscription(session_factory, tenant.id)
    assert row.plan_type == "starter"
    assert row.status == "pending"


@pytest.mark.asyncio
async def test_payment_mode_checkout_is_ignored(client: AsyncClient, session_factory) -> None:
    session_object = _checkout_session(None, None)
    session_object["mode"] = "payment"

    response = await _post(client, _event("checkout.session.completed", session_object))

    assert response.status_code == 200
    assert response.json()["outcome"] == "ignored"


# ---------------------------------------------------------------------------
# Other event types
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_unknown_event_type_is_acknowledged(client: AsyncClient, session_factory) -> None:
    response = await _post(client, _event("customer.created", {"id": "cus_1", "object": "customer"}))

    assert response.status_code == 200
    assert response.json()["outcome"] == "ignored"
    ledger = await _ledger(session_factory)
    assert [(e.event_type, e.status) for e in ledger] == [("customer.created", "ignored")]


@pytest.mark.asyncio
async def test_subscription_update_does_not_activate_pending_purchase(
    client: AsyncClient, session_factory, make_user,
) -> None:
    tenant = await make_user()
    await _post(client, _event("checkout.session.completed", _checkout_session(str(tenant.id))))

    response = await _post(
        client,
        _event("customer.subscription.updated", _stripe_subscription(status="active"), event_id="evt_2"),
    )

    assert response.json()["outcome"] == "skipped_pending"
    row = await _subscription(session_factory, tenant.id)
    assert row.status == "pending"
    assert row.current_period_start is None


@pytest.mark.asyncio
async def test_invoice_paid_on_pending_purchase_is_skipped_without_processor_call(
    client: AsyncClient, session_factory, make_user,
) -> None:
    tenant = await make_user()
    await _post(client, _event("checkout.session.completed", _checkout_session(str(tenant.id))))
    invoice = {"id": "in_1", "object": "invoice", "customer": "cus_1", "subscription": "sub_1"}
    event = _event("invoice.payment_succeeded", invoice, event_id="evt_2")

    with patch("stripe.Webhook.construct_event", return_value=event), \
            patch("stripe.Subscription.retrieve") as retrieve:
        response = await client.post(
            WEBHOOK_URL,
            content=json.dumps(event).encode(),
            headers={"stripe-signature": "t=1,v1=test"},
        )

    assert response.status_code == 200
    assert response.json()["outcome"] == "skipped_pending"
    retrieve.assert_not_called()
    row = await _subscription(session_factory, tenant.id)
    assert row.status == "pending"
    assert row.current_period_start is None
    assert row.current_period_end is None


@pytest.mark.asyncio
async def test_subscription_canceled_after_unapproved_payment_failure(
    client: AsyncClient, session_factory, make_user,
) -> None:
    tenant = await make_user()
    await _post(client, _event("checkout.session.completed", _checkout_session(str(tenant.id))))
    invoice = {"id": "in_1", "object": "invoice", "customer": "cus_1", "subscription": "sub_1"}
    await _post(client, _event("invoice.payment_failed", invoice, event_id="evt_2"))

    response = await _post(
        client,
        _event("customer.subscription.updated", _stripe_subscription(status="canceled"), event_id="evt_3"),
    )

    assert response.json()["outcome"] == "applied"
    row = await _subscription(session_factory, tenant.id)
    assert row.status == "canceled"
    assert row.current_period_start is None


@pytest.mark.asyncio
async def test_payment_failed_moves_active_to_past_due(
    client: AsyncClient, session_factory, make_user, make_subscription,
) -> None:
    tenant = await make_user()
    await _active(make_subscription, tenant)
    invoice = {"id": "in_1", "object": "invoice", "customer": "cus_1", "subscription": "sub_1"}

    response = await _post(client, _event("invoice.payment_failed", invoice))

    assert response.json()["outcome"] == "applied"
    row = await _subscription(session_factory, tenant.id)
    assert row.status == "past_due"


@pytest.mark.asyncio
async def test_invoice_paid_reads_subscription_from_invoice_parent(
    client: AsyncClient, session_factory, make_user, make_subscription,
) -> None:
    tenant = await make_user()
    now = datetime.utcnow()
    await make_subscription(
        tenant,
        status="past_due",
        plan_type="professional",
        external_subscription_ref="sub_1",
        current_period_start=now - timedelta(days=31),
        current_period_end=now - timedelta(days=1),
    )
    invoice = {
        "id": "in_2",
        "object": "invoice",
        "customer": "cus_1",
        "parent": {"subscription_details": {"subscription": "sub_1"}},
    }

    response = await _post(client, _event("invoice.paid", invoice))

    assert response.json()["outcome"] == "applied"
    row = await _subscription(session_factory, tenant.id)
    assert row.status == "active"
    assert row.current_period_end > now


@pytest.mark.asyncio
async def test_subscription_deleted_expires_row(
    client: AsyncClient, session_factory, make_user, make_subscription,
) -> None:
    tenant = await make_user()
    await _active(make_subscription, tenant)

    response = await _post(
        client, _event("customer.subscription.deleted", _stripe_subscription(status="canceled")),
    )

    assert response.json()["outcome"] == "applied"
    row = await _subscription(session_factory, tenant.id)
    assert row.status == "expired"
