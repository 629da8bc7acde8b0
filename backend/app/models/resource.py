"""
Tenant-scoped business resources counted and gated by the plan entitlements.
"""
from datetime import datetime
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.dialects.postgresql import UUID as SQLAlchemyUUID

from app.core.database import Base


def _tenant_column() -> Column:
    return Column(
        SQLAlchemyUUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )


class Customer(Base):
    """Customer of the tenant's business (quota: maxCustomers)."""

    __tablename__ = "customers"

    id = Column(SQLAlchemyUUID(as_uuid=True), primary_key=True, default=uuid4, index=True)
    tenant_id = _tenant_column()
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Customer(id={self.id}, tenant_id={self.tenant_id})>"


class Worker(Base):
    """Worker (service provider) on the tenant's team (quota: maxWorkers)."""

    __tablename__ = "workers"

    id = Column(SQLAlchemyUUID(as_uuid=True), primary_key=True, default=uuid4, index=True)
    tenant_id = _tenant_column()
    name = Column(String(255), nullable=False)
    specialty = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Worker(id={self.id}, tenant_id={self.tenant_id})>"


class Product(Base):
    """Inventory item (feature: inventoryTracking, quota: maxProducts)."""

    __tablename__ = "products"

    id = Column(SQLAlchemyUUID(as_uuid=True), primary_key=True, default=uuid4, index=True)
    tenant_id = _tenant_column()
    name = Column(String(255), nullable=False)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    stock = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Product(id={self.id}, tenant_id={self.tenant_id})>"


class QueueEntry(Base):
    """Walk-in queue ticket (feature: basicQueueManagement)."""

    __tablename__ = "queue_entries"

    id = Column(SQLAlchemyUUID(as_uuid=True), primary_key=True, default=uuid4, index=True)
    tenant_id = _tenant_column()
    customer_name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="waiting", comment="waiting|in_service|done")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<QueueEntry(id={self.id}, tenant_id={self.tenant_id}, status='{self.status}')>"


class Feedback(Base):
    """Customer feedback entry (feature: customerFeedback)."""

    __tablename__ = "feedback"

    id = Column(SQLAlchemyUUID(as_uuid=True), primary_key=True, default=uuid4, index=True)
    tenant_id = _tenant_column()
    rating = Column(Integer, nullable=False)
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Feedback(id={self.id}, tenant_id={self.tenant_id}, rating={self.rating})>"
