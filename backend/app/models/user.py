"""
User model — tenant admins, their staff, and platform operators.
"""
from datetime import datetime
from uuid import uuid4
from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey
from sqlalchemy.dialects.postgresql import UUID as SQLAlchemyUUID
from sqlalchemy.orm import relationship

from app.core.database import Base
from app.core.rbac import UserRole


class User(Base):
    """
    Account identity consumed by the billing engine.

    An ``admin`` account is a tenant: it owns exactly one subscription row and
    the resources counted against its plan. ``staff`` accounts point at their
    admin through ``tenant_id``.
    """
    __tablename__ = "users"

    id = Column(SQLAlchemyUUID(as_uuid=True), primary_key=True, default=uuid4, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    business_name = Column(String(255), nullable=True)

    tenant_id = Column(
        SQLAlchemyUUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
        comment="Admin account this staff user belongs to; NULL for admins",
    )

    # User authorization role (system-level RBAC)
    role = Column(
        String(20),
        default=UserRole.ADMIN.value,
        nullable=False,
        comment="super_admin|admin|staff",
    )

    # Account status
    is_active = Column(Boolean, default=True, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    # Relationships
    subscription = relationship(
        "Subscription",
        back_populates="tenant",
        uselist=False,
        foreign_keys="Subscription.tenant_id",
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}', role='{self.role}')>"
