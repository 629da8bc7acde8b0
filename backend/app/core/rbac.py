"""
Role-Based Access Control (RBAC) definitions and helpers.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional

from app.core.config import settings


class UserRole(str, Enum):
    """
    System roles used for authorization.

    ``admin`` accounts own a tenant (and its subscription); ``staff`` accounts
    work inside an admin's tenant; ``super_admin`` operates the platform.
    """

    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    STAFF = "staff"


class Permission(str, Enum):
    """
    Fine-grained permissions mapped to roles.
    """

    BILLING_READ_SELF = "billing:read_self"
    BILLING_MANAGE_SELF = "billing:manage_self"
    RESOURCES_MANAGE = "resources:manage"
    QUEUE_MANAGE = "queue:manage"
    SUBSCRIPTIONS_REVIEW = "subscriptions:review"
    BILLING_EVENTS_READ = "billing_events:read"


ROLE_PERMISSIONS: dict[UserRole, frozenset[Permission]] = {
    UserRole.SUPER_ADMIN: frozenset(permission for permission in Permission),
    UserRole.ADMIN: frozenset(
        {
            Permission.BILLING_READ_SELF,
            Permission.BILLING_MANAGE_SELF,
            Permission.RESOURCES_MANAGE,
            Permission.QUEUE_MANAGE,
        }
    ),
    UserRole.STAFF: frozenset(
        {
            Permission.BILLING_READ_SELF,
            Permission.QUEUE_MANAGE,
        }
    ),
}


def normalize_role(role: str | UserRole | None) -> UserRole:
    """
    Normalize string/enum role values to a valid ``UserRole``.

    Args:
        role: Raw role value from DB/token input.

    Returns:
        Normalized role. Falls back to ``UserRole.STAFF`` for unknown values.
    """

    if isinstance(role, UserRole):
        return role

    if role is None:
        return UserRole.STAFF

    try:
        return UserRole(str(role))
    except ValueError:
        return UserRole.STAFF


def get_role_permissions(role: str | UserRole | None) -> frozenset[Permission]:
    """
    Resolve the permission set for a role.
    """

    normalized_role = normalize_role(role)
    return ROLE_PERMISSIONS.get(normalized_role, frozenset())


def has_permission(role: str | UserRole | None, permission: Permission) -> bool:
    """
    Check if role grants the required permission.
    """

    return permission in get_role_permissions(role)


def is_super_admin(role: str | UserRole | None, email: Optional[str] = None) -> bool:
    """
    Super admin = role ``super_admin`` or the configured operator email.

    Args:
        role: Role value.
        email: Account email, compared case-insensitively to SUPER_ADMIN_EMAIL.

    Returns:
        ``True`` when the account may operate the approval gate.
    """

    if normalize_role(role) == UserRole.SUPER_ADMIN:
        return True
    operator_email = settings.SUPER_ADMIN_EMAIL.strip().lower()
    return bool(operator_email) and (email or "").strip().lower() == operator_email
