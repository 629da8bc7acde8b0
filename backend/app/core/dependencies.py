"""
Request dependencies: bearer auth, RBAC checks and tenant resolution.
"""
from collections.abc import Callable
from typing import Optional
from uuid import UUID
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.core.database import get_db
from app.core.rbac import Permission, has_permission, is_super_admin
from app.core.security import decode_token
from app.models.user import User

security = HTTPBearer()


async def resolve_user_from_token(db: AsyncSession, token: str) -> Optional[User]:
    """
    Decode an access token and load the active user it refers to.

    Returns:
        User, or None when the token is invalid or the account is unknown.
    """
    payload = decode_token(token)
    if payload is None:
        return None

    if payload.get("type", "access") != "access":
        return None

    raw_user_id: Optional[str] = payload.get("sub")
    if raw_user_id is None:
        return None
    try:
        user_id = UUID(str(raw_user_id))
    except (TypeError, ValueError):
        return None

    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> User:
    """
    Authenticated, active account behind the bearer token.

    Raises:
        HTTPException 401: Invalid token or unknown account.
        HTTPException 403: Disabled account.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    user = await resolve_user_from_token(db, credentials.credentials)
    if user is None:
        raise credentials_exception

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is disabled"
        )

    return user


def require_permissions(*required_permissions: Permission) -> Callable[..., User]:
    """
    Build dependency that requires one or more RBAC permissions.

    Args:
        required_permissions: Permissions required to access a route.

    Returns:
        FastAPI dependency that yields authenticated user if authorized.
    """

    async def _permission_dependency(
        current_user: User = Depends(get_current_user),
    ) -> User:
        if is_super_admin(current_user.role, current_user.email):
            return current_user

        missing_permissions = [
            permission.value
            for permission in required_permissions
            if not has_permission(current_user.role, permission)
        ]

        if missing_permissions:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=(
                    "Insufficient permissions: "
                    + ", ".join(missing_permissions)
                ),
            )

        return current_user

    return _permission_dependency


async def resolve_tenant(db: AsyncSession, user: User) -> Optional[User]:
    """Admins are their own tenant; staff accounts resolve to their admin."""
    if user.tenant_id is None or user.tenant_id == user.id:
        return user
    result = await db.execute(select(User).where(User.id == user.tenant_id))
    return result.scalar_one_or_none()


async def get_current_tenant(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Resolve the tenant (admin account) the caller acts for.

    Raises:
        HTTPException 400: Staff account without a tenant.
    """
    tenant = await resolve_tenant(db, current_user)
    if tenant is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Tenant account not found for this user.",
        )
    return tenant
