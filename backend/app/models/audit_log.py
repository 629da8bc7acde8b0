"""
AuditLog model — immutable record of operator decisions.
"""
from datetime import datetime
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, ForeignKey, String
from sqlalchemy.dialects.postgresql import UUID as SQLAlchemyUUID
from sqlalchemy.orm import relationship

from app.core.database import Base


class AuditLog(Base):
    """
    Tracks approval-gate actions (subscription and cancellation decisions).
    """

    __tablename__ = "audit_logs"

    id = Column(SQLAlchemyUUID(as_uuid=True), primary_key=True, default=uuid4, index=True)
    actor_id = Column(
        SQLAlchemyUUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    action = Column(String(100), nullable=False, index=True, comment="e.g. subscription.approved")
    target_type = Column(String(50), nullable=True, comment="e.g. subscription")
    target_id = Column(String(36), nullable=True, comment="UUID of the target entity")
    changes = Column(JSON, nullable=True, comment="Before/after snapshot")
    ip_address = Column(String(45), nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    # Relationships
    actor = relationship("User", foreign_keys=[actor_id])

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, action='{self.action}', actor={self.actor_id})>"
