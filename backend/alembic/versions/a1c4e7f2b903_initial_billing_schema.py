"""initial billing schema

Revision ID: a1c4e7f2b903
Revises:
Create Date: 2026-10-17 09:00:00.000000

Tenants (users), a subscription por tenant, ledger de webhooks Stripe,
audit log das decisoes do operador, email log e os recursos contados
pelos limites de plano.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "a1c4e7f2b903"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _tenant_resource_table(name: str, *columns: sa.Column) -> None:
    op.create_table(
        name,
        sa.Column("id", UUID(as_uuid=True), primary_key=True, index=True),
        sa.Column(
            "tenant_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        *columns,
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
    )


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, index=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True, index=True),
        sa.Column("full_name", sa.String(255), nullable=True),
        sa.Column("business_name", sa.String(255), nullable=True),
        sa.Column(
            "tenant_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
        sa.Column("role", sa.String(20), nullable=False, server_default="admin",
                  comment="super_admin|admin|staff"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, index=True),
        sa.Column(
            "tenant_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
            index=True,
        ),
        sa.Column("plan_type", sa.String(20), nullable=False, server_default="trial"),
        sa.Column("status", sa.String(20), nullable=False, server_default="trial", index=True),
        sa.Column("external_subscription_ref", sa.String(255), nullable=True, index=True),
        sa.Column("external_customer_ref", sa.String(255), nullable=True, index=True),
        sa.Column("external_price_ref", sa.String(255), nullable=True),
        sa.Column("current_period_start", sa.DateTime(), nullable=True),
        sa.Column("current_period_end", sa.DateTime(), nullable=True),
        sa.Column("trial_ends_at", sa.DateTime(), nullable=True),
        sa.Column("canceled_at", sa.DateTime(), nullable=True),
        sa.Column("cancellation_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cancellation_requested_at", sa.DateTime(), nullable=True),
        sa.Column("cancellation_approved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cancellation_approved_at", sa.DateTime(), nullable=True),
        sa.Column(
            "cancellation_approved_by",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("pending_renewal", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("renewal_notification_sent_at", sa.DateTime(), nullable=True),
        sa.Column("renewal_approved_at", sa.DateTime(), nullable=True),
        sa.Column(
            "renewal_approved_by",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("last_reminder_sent_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
    )

    op.create_table(
        "stripe_events",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, index=True),
        sa.Column("event_id", sa.String(255), nullable=False, unique=True, index=True),
        sa.Column("event_type", sa.String(100), nullable=False, index=True),
        sa.Column("status", sa.String(20), nullable=False, index=True,
                  comment="processed|skipped|ignored|failed"),
        sa.Column("outcome", sa.String(50), nullable=True),
        sa.Column("customer_id", sa.String(255), nullable=True),
        sa.Column("subscription_id", sa.String(255), nullable=True),
        sa.Column(
            "tenant_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("payload_summary", sa.String(500), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("now()"), index=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, index=True),
        sa.Column(
            "actor_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
        sa.Column("action", sa.String(100), nullable=False, index=True),
        sa.Column("target_type", sa.String(50), nullable=True),
        sa.Column("target_id", sa.String(36), nullable=True),
        sa.Column("changes", sa.JSON(), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("now()"), index=True),
    )

    op.create_table(
        "email_logs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, index=True),
        sa.Column("recipient_email", sa.String(255), nullable=False, index=True),
        sa.Column(
            "recipient_user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
        sa.Column("email_type", sa.String(50), nullable=False, index=True),
        sa.Column("subject", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, index=True, comment="sent|failed|skipped"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("now()"), index=True),
    )

    _tenant_resource_table(
        "customers",
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
    )
    _tenant_resource_table(
        "workers",
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("specialty", sa.String(255), nullable=True),
    )
    _tenant_resource_table(
        "products",
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("stock", sa.Integer(), nullable=False, server_default="0"),
    )
    _tenant_resource_table(
        "queue_entries",
        sa.Column("customer_name", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="waiting"),
    )
    _tenant_resource_table(
        "feedback",
        sa.Column("rating", sa.Integer(), nullable=False),
        sa.Column("comment", sa.Text(), nullable=True),
    )


def downgrade() -> None:
    for table in ("feedback", "queue_entries", "products", "workers", "customers"):
        op.drop_table(table)
    op.drop_table("email_logs")
    op.drop_table("audit_logs")
    op.drop_table("stripe_events")
    op.drop_table("subscriptions")
    op.drop_table("users")
