"""
Subscription model — one billing lifecycle row per tenant.
"""
from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String
from sqlalchemy.dialects.postgresql import UUID as SQLAlchemyUUID
from sqlalchemy.orm import relationship

from app.core.database import Base


class SubscriptionStatus(str, Enum):
    """Lifecycle states. ``trial`` is also the implicit state of an absent row."""

    TRIAL = "trial"
    PENDING = "pending"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"


TERMINAL_STATUSES: frozenset[str] = frozenset(
    {SubscriptionStatus.CANCELED.value, SubscriptionStatus.EXPIRED.value}
)

# States whose stored plan_type grants paid entitlements
PAID_ACCESS_STATUSES: frozenset[str] = frozenset(
    {SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value}
)


class Subscription(Base):
    """
    Tenant subscription: status, plan, Stripe references, periods and
    cancellation-request flags.

    Never hard-deleted; terminal rows stay for audit.
    """

    __tablename__ = "subscriptions"

    id = Column(SQLAlchemyUUID(as_uuid=True), primary_key=True, default=uuid4, index=True)
    tenant_id = Column(
        SQLAlchemyUUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )

    plan_type = Column(
        String(20),
        nullable=False,
        default="trial",
        comment="trial|starter|professional|enterprise",
    )
    status = Column(
        String(20),
        nullable=False,
        default=SubscriptionStatus.TRIAL.value,
        index=True,
        comment="trial|pending|active|past_due|canceled|expired",
    )

    # Stripe IDs (idempotency keys for ingestion)
    external_subscription_ref = Column(
        String(255), nullable=True, index=True, comment="sub_xxx do Stripe"
    )
    external_customer_ref = Column(String(255), nullable=True, index=True, comment="cus_xxx do Stripe")
    external_price_ref = Column(String(255), nullable=True, comment="price_xxx do Stripe")

    # Billing period (NULL while pending)
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    trial_ends_at = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)

    # Cancellation request / decision
    cancellation_requested = Column(Boolean, default=False, nullable=False)
    cancellation_requested_at = Column(DateTime, nullable=True)
    cancellation_approved = Column(Boolean, default=False, nullable=False)
    cancellation_approved_at = Column(DateTime, nullable=True)
    cancellation_approved_by = Column(
        SQLAlchemyUUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Renewal: flagged by the reminder sweep, extended by an operator
    pending_renewal = Column(Boolean, default=False, nullable=False)
    renewal_notification_sent_at = Column(DateTime, nullable=True)
    renewal_approved_at = Column(DateTime, nullable=True)
    renewal_approved_by = Column(
        SQLAlchemyUUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    last_reminder_sent_at = Column(
        DateTime, nullable=True,
        comment="Last lifecycle reminder; claims one notification per window",
    )

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    # Relationships
    tenant = relationship("User", back_populates="subscription", foreign_keys=[tenant_id])

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, tenant_id={self.tenant_id}, "
            f"plan='{self.plan_type}', status='{self.status}')>"
        )
