"""
Reminder task tests — due-window selection, once-per-window delivery and renewal flagging.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select

from app.models.subscription import Subscription
from app.models.user import User
from app.services.notification_service import NotificationKind
from app.workers.tasks.billing_tasks import (
    _format_remaining,
    send_renewal_reminders,
    send_trial_expiration_reminders,
)


@pytest.fixture
def seed(sync_session_factory):
    def _seed(*, email: str, is_active: bool = True, **fields) -> User:
        tenant = User(id=uuid4(), email=email, full_name="Dono", role="admin", is_active=is_active)
        with sync_session_factory() as session:
            session.add(tenant)
            session.add(Subscription(id=uuid4(), tenant_id=tenant.id, **fields))
            session.commit()
        return tenant

    return _seed


def test_trial_reminder_is_sent_once_per_window(seed, sync_session_factory, sent_notifications) -> None:
    now = datetime.utcnow()
    seed(email="soon@example.com", status="trial", plan_type="trial", trial_ends_at=now + timedelta(hours=5))
    seed(email="later@example.com", status="trial", plan_type="trial", trial_ends_at=now + timedelta(days=3))
    seed(email="over@example.com", status="trial", plan_type="trial", trial_ends_at=now - timedelta(hours=1))
    seed(
        email="inactive@example.com", is_active=False,
        status="trial", plan_type="trial", trial_ends_at=now + timedelta(hours=2),
    )

    first = send_trial_expiration_reminders()
    second = send_trial_expiration_reminders()

    assert first == {"checked": 1, "sent": 1}
    assert second == {"checked": 1, "sent": 0}
    [notification] = sent_notifications
    assert notification.kind == NotificationKind.TRIAL_EXPIRING
    assert notification.to_email == "soon@example.com"
    assert notification.context["time_remaining"] == "4 hours"

    with sync_session_factory() as session:
        stamped = session.execute(
            select(Subscription).where(Subscription.last_reminder_sent_at.is_not(None))
        ).scalars().all()
    assert len(stamped) == 1


def test_new_trial_window_rearms_reminder(seed, sync_session_factory, sent_notifications) -> None:
    now = datetime.utcnow()
    seed(
        email="again@example.com",
        status="trial",
        plan_type="trial",
        trial_ends_at=now + timedelta(hours=10),
        last_reminder_sent_at=now - timedelta(days=30),
    )

    assert send_trial_expiration_reminders() == {"checked": 1, "sent": 1}


def test_renewal_reminder_targets_active_period_end(seed, sync_session_factory, sent_notifications) -> None:
    now = datetime.utcnow()
    seed(
        email="renew@example.com",
        status="active",
        plan_type="starter",
        current_period_start=now - timedelta(days=29, hours=12),
        current_period_end=now + timedelta(hours=12),
    )
    seed(
        email="pending@example.com",
        status="pending",
        plan_type="starter",
        current_period_end=now + timedelta(hours=12),
    )

    first = send_renewal_reminders()
    second = send_renewal_reminders()

    assert first == {"checked": 1, "sent": 1}
    assert second["sent"] == 0
    [notification] = sent_notifications
    assert notification.kind == NotificationKind.RENEWAL_REMINDER
    assert notification.to_email == "renew@example.com"
    assert notification.context["plan_type"] == "starter"

    with sync_session_factory() as session:
        flagged = session.execute(
            select(Subscription).where(Subscription.pending_renewal.is_(True))
        ).scalars().all()
    assert [row.tenant_id for row in flagged] == [notification.user_id]
    assert flagged[0].renewal_notification_sent_at is not None


@pytest.mark.parametrize(
    ("delta", "expected"),
    [
        (timedelta(days=2, hours=1), "2 days"),
        (timedelta(hours=25), "1 day"),
        (timedelta(hours=1, minutes=30), "1 hour"),
        (timedelta(minutes=20), "less than an hour"),
    ],
)
def test_format_remaining(delta: timedelta, expected: str) -> None:
    assert _format_remaining(delta) == expected
