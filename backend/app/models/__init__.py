"""
Database Models Package
SQLAlchemy ORM models for PostgreSQL.
"""

from app.models.user import User
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.stripe_event import StripeEvent
from app.models.audit_log import AuditLog
from app.models.email_log import EmailLog
from app.models.resource import Customer, Feedback, Product, QueueEntry, Worker

__all__ = [
    "User",
    "Subscription",
    "SubscriptionStatus",
    "StripeEvent",
    "AuditLog",
    "EmailLog",
    "Customer",
    "Worker",
    "Product",
    "QueueEntry",
    "Feedback",
]
