"""
EmailLog model — trilha de entrega das notificacoes de billing.

Uma linha por tentativa; a linha nunca e atualizada depois de gravada.
"""
from datetime import datetime
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, String, Text
from sqlalchemy.dialects.postgresql import UUID as SQLAlchemyUUID
from sqlalchemy.orm import relationship

from app.core.database import Base


class EmailStatus:
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class EmailLog(Base):
    """Delivery attempt for one billing notification (tenant or operator)."""

    __tablename__ = "email_logs"

    id = Column(SQLAlchemyUUID(as_uuid=True), primary_key=True, default=uuid4, index=True)
    recipient_email = Column(String(255), nullable=False, index=True)
    recipient_user_id = Column(
        SQLAlchemyUUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    email_type = Column(
        String(50),
        nullable=False,
        index=True,
        comment="purchase_received|operator_pending|status_change|cancellation_request|cancellation_decision|trial_expiring|renewal_reminder|renewal_approved|plan_change_request",
    )
    subject = Column(String(255), nullable=False)
    status = Column(
        String(20),
        nullable=False,
        index=True,
        comment="sent|failed|skipped",
    )
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    recipient = relationship("User", foreign_keys=[recipient_user_id])

    def __repr__(self) -> str:
        return f"<EmailLog({self.email_type} -> {self.recipient_email}: {self.status})>"
