"""
Checkout verifier tests — fallback confirmation after the Stripe redirect.
"""
from __future__ import annotations

from typing import Any, Optional
from unittest.mock import patch

import pytest
import stripe
from httpx import AsyncClient

from app.services.subscription_service import (
    OUTCOME_ALREADY_APPLIED,
    PaymentIncompleteError,
    SubscriptionService,
)
from app.services.subscription_store import SubscriptionNotFoundError, SubscriptionStore


def _subscription(tenant_id: Optional[str], plan_type: str = "professional", status: str = "active") -> dict[str, Any]:
    metadata = {"tenant_id": tenant_id, "plan_type": plan_type} if tenant_id else {}
    return {
        "id": "sub_verify",
        "object": "subscription",
        "customer": "cus_verify",
        "status": status,
        "metadata": metadata,
        "items": {"data": [{"price": {"id": "price_professional"}}]},
    }


def _session(subscription: dict[str, Any], payment_status: str = "paid", metadata: Optional[dict] = None) -> dict[str, Any]:
    return {
        "id": "cs_verify",
        "object": "checkout.session",
        "payment_status": payment_status,
        "customer": "cus_verify",
        "subscription": subscription,
        "metadata": metadata or {},
    }


# ---------------------------------------------------------------------------
# With a checkout session id
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_session_metadata_decides_the_tenant(db, make_user) -> None:
    """The purchase belongs to the tenant in the metadata, not to the caller."""
    caller = await make_user("caller@example.com")
    purchaser = await make_user("purchaser@example.com")
    session = _session(_subscription(str(purchaser.id)))

    svc = SubscriptionService.from_settings()
    with patch("stripe.checkout.Session.retrieve", return_value=session):
        result = await svc.verify_checkout(db, tenant=caller, session_id="cs_verify")
    await db.commit()

    assert result.tenant_id == purchaser.id
    assert result.already_applied is False
    assert result.subscription.status == "pending"
    assert await SubscriptionStore.get_by_tenant(db, caller.id) is None


@pytest.mark.asyncio
async def test_second_verification_reports_already_applied(db, make_user) -> None:
    tenant = await make_user()
    session = _session(_subscription(str(tenant.id)))

    svc = SubscriptionService.from_settings()
    with patch("stripe.checkout.Session.retrieve", return_value=session):
        first = await svc.verify_checkout(db, tenant=tenant, session_id="cs_verify")
        await db.commit()
        second = await svc.verify_checkout(db, tenant=tenant, session_id="cs_verify")

    assert first.already_applied is False
    assert second.already_applied is True
    assert second.outcome == OUTCOME_ALREADY_APPLIED
    assert second.subscription.id == first.subscription.id


@pytest.mark.asyncio
async def test_unpaid_session_is_rejected(db, make_user) -> None:
    tenant = await make_user()
    session = _session(_subscription(str(tenant.id)), payment_status="unpaid")

    svc = SubscriptionService.from_settings()
    with patch("stripe.checkout.Session.retrieve", return_value=session):
        with pytest.raises(PaymentIncompleteError):
            await svc.verify_checkout(db, tenant=tenant, session_id="cs_verify")

    assert await SubscriptionStore.get_by_tenant(db, tenant.id) is None


@pytest.mark.asyncio
async def test_unknown_session_is_not_found(db, make_user) -> None:
    tenant = await make_user()

    svc = SubscriptionService.from_settings()
    with patch(
        "stripe.checkout.Session.retrieve",
        side_effect=stripe.InvalidRequestError("No such checkout.session", "id"),
    ):
        with pytest.raises(SubscriptionNotFoundError):
            await svc.verify_checkout(db, tenant=tenant, session_id="cs_missing")


# ---------------------------------------------------------------------------
# Without a session id (latest subscription of the customer)
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_latest_subscription_lookup_by_email(db, make_user) -> None:
    tenant = await make_user("lookup@example.com")

    svc = SubscriptionService.from_settings()
    with patch("stripe.Customer.list", return_value={"data": [{"id": "cus_verify"}]}) as customers, \
            patch("stripe.Subscription.list", return_value={"data": [_subscription(str(tenant.id))]}):
        result = await svc.verify_checkout(db, tenant=tenant)

    customers.assert_called_once_with(email="lookup@example.com", limit=1)
    assert result.subscription.status == "pending"
    assert result.subscription.external_customer_ref == "cus_verify"


@pytest.mark.asyncio
async def test_latest_subscription_not_yet_active_is_incomplete(db, make_user) -> None:
    tenant = await make_user()

    svc = SubscriptionService.from_settings()
    with patch("stripe.Customer.list", return_value={"data": [{"id": "cus_verify"}]}), \
            patch(
                "stripe.Subscription.list",
                return_value={"data": [_subscription(str(tenant.id), status="incomplete")]},
            ):
        with pytest.raises(PaymentIncompleteError):
            await svc.verify_checkout(db, tenant=tenant)


# ---------------------------------------------------------------------------
# Endpoint
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_verify_checkout_endpoint(client: AsyncClient, make_user, auth_headers, sent_notifications) -> None:
    tenant = await make_user()
    session = _session(_subscription(str(tenant.id)))

    with patch("stripe.checkout.Session.retrieve", return_value=session):
        response = await client.post(
            "/api/v1/billing/verify-checkout",
            json={"session_id": "cs_verify"},
            headers=auth_headers(tenant),
        )

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["success"] is True
    assert body["outcome"] == "applied"
    assert body["tenant_id"] == str(tenant.id)
    assert body["subscription"]["status"] == "pending"
    assert len(sent_notifications) == 2


@pytest.mark.asyncio
async def test_verify_checkout_endpoint_maps_incomplete_payment(
    client: AsyncClient, make_user, auth_headers,
) -> None:
    tenant = await make_user()
    session = _session(_subscription(str(tenant.id)), payment_status="unpaid")

    with patch("stripe.checkout.Session.retrieve", return_value=session):
        response = await client.post(
            "/api/v1/billing/verify-checkout",
            json={"session_id": "cs_verify"},
            headers=auth_headers(tenant),
        )

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "payment_incomplete"
