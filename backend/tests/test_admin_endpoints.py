"""
Admin API tests — operator-only access, review queues and the billing event ledger.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from uuid import uuid4

import pytest
from httpx import AsyncClient

from app.core.rbac import UserRole
from app.models.stripe_event import StripeEvent


async def _seed_events(session_factory, count: int, *, status: str = "processed") -> None:
    base = datetime.utcnow() - timedelta(minutes=count)
    async with session_factory() as session:
        for index in range(count):
            session.add(
                StripeEvent(
                    id=uuid4(),
                    event_id=f"evt_{status}_{index}",
                    event_type="invoice.paid" if index % 2 else "checkout.session.completed",
                    status=status,
                    outcome="applied" if status == "processed" else "missing_attribution",
                    created_at=base + timedelta(minutes=index),
                    updated_at=base + timedelta(minutes=index),
                )
            )
        await session.commit()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "path",
    [
        "/api/v1/admin/subscriptions/pending",
        "/api/v1/admin/subscriptions/cancellation-requests",
        "/api/v1/admin/subscriptions/pending-renewals",
        "/api/v1/admin/billing-events",
        "/api/v1/admin/audit-logs",
    ],
)
async def test_tenant_admin_cannot_use_operator_api(
    client: AsyncClient, make_user, auth_headers, path: str,
) -> None:
    tenant = await make_user()

    response = await client.get(path, headers=auth_headers(tenant))

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_operator_email_grants_access(client: AsyncClient, make_user, auth_headers) -> None:
    operator = await make_user("OPS@queueflow.test", role=UserRole.ADMIN.value)

    response = await client.get("/api/v1/admin/subscriptions/pending", headers=auth_headers(operator))

    assert response.status_code == 200
    assert response.json() == []


@pytest.mark.asyncio
async def test_pending_queue_lists_only_pending_rows(
    client: AsyncClient, make_user, make_subscription, auth_headers,
) -> None:
    operator = await make_user(role=UserRole.SUPER_ADMIN.value)
    waiting = await make_user("waiting@example.com", business_name="Salao Bela")
    trial = await make_user("trial@example.com")
    await make_subscription(waiting, status="pending", plan_type="starter", external_subscription_ref="sub_w")
    await make_subscription(trial)

    response = await client.get("/api/v1/admin/subscriptions/pending", headers=auth_headers(operator))

    [item] = response.json()
    assert item["tenant_email"] == "waiting@example.com"
    assert item["business_name"] == "Salao Bela"
    assert item["subscription"]["plan_type"] == "starter"


@pytest.mark.asyncio
async def test_unknown_subscription_decision_is_404(client: AsyncClient, make_user, auth_headers) -> None:
    operator = await make_user(role=UserRole.SUPER_ADMIN.value)

    response = await client.post(
        "/api/v1/admin/subscriptions/approve-cancellation",
        json={"subscriptionId": str(uuid4()), "approve": True},
        headers=auth_headers(operator),
    )

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "subscription_not_found"


@pytest.mark.asyncio
async def test_billing_events_are_paginated_newest_first(
    client: AsyncClient, session_factory, make_user, auth_headers,
) -> None:
    operator = await make_user(role=UserRole.SUPER_ADMIN.value)
    await _seed_events(session_factory, 5)

    response = await client.get(
        "/api/v1/admin/billing-events", params={"page": 1, "limit": 2}, headers=auth_headers(operator),
    )

    body = response.json()
    assert body["pagination"] == {"total": 5, "page": 1, "pages": 3, "limit": 2}
    assert [item["event_id"] for item in body["items"]] == ["evt_processed_4", "evt_processed_3"]


@pytest.mark.asyncio
async def test_billing_events_filter_by_status_and_type(
    client: AsyncClient, session_factory, make_user, auth_headers,
) -> None:
    operator = await make_user(role=UserRole.SUPER_ADMIN.value)
    await _seed_events(session_factory, 3)
    await _seed_events(session_factory, 2, status="failed")
    headers = auth_headers(operator)

    failed = await client.get("/api/v1/admin/billing-events", params={"status": "failed"}, headers=headers)
    paid = await client.get(
        "/api/v1/admin/billing-events", params={"event_type": "invoice.paid"}, headers=headers,
    )

    assert {item["status"] for item in failed.json()["items"]} == {"failed"}
    assert failed.json()["pagination"]["total"] == 2
    assert {item["event_type"] for item in paid.json()["items"]} == {"invoice.paid"}
    assert paid.json()["pagination"]["total"] == 2


@pytest.mark.asyncio
async def test_empty_audit_log(client: AsyncClient, make_user, auth_headers) -> None:
    operator = await make_user(role=UserRole.SUPER_ADMIN.value)

    response = await client.get("/api/v1/admin/audit-logs", headers=auth_headers(operator))

    assert response.json() == {
        "items": [],
        "pagination": {"total": 0, "page": 1, "pages": 0, "limit": 50},
    }
