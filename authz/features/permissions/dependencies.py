"""
FastAPI dependencies for route protection.
"""
from typing import Optional
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from authz.context import AuthorizationContext
from authz.core.database.engine import get_db
from authz.features.users.dependencies import get_current_user
from authz.features.users.models import User


def get_context(request: Request) -> AuthorizationContext:
    """The process-wide context created at startup."""
    return request.app.state.authz


def require_permission(
    permission: str,
    organization_kind_param: Optional[str] = None,
    organization_uuid_param: Optional[str] = None,
):
    """
    FastAPI dependency to require a specific permission.

    The organization is read from the named path parameters when given, so a
    grant inside that organization is enough.

    Usage:
        @router.get("/{kind}/{uuid}/members")
        async def list_members(
            user: User = Depends(require_permission("users-basic:list", "kind", "uuid"))
        ):
            pass

    Returns:
        Dependency function that returns the current user if the permission is granted

    Raises:
        ForbiddenError: if the permission is not granted
    """
    async def permission_dependency(
        request: Request,
        db: AsyncSession = Depends(get_db),
        current_user: User = Depends(get_current_user),
        context: AuthorizationContext = Depends(get_context),
    ) -> User:
        kind = request.path_params.get(organization_kind_param) if organization_kind_param else None
        uuid = request.path_params.get(organization_uuid_param) if organization_uuid_param else None
        await context.checks.ensure_granted(db, current_user.id, permission, uuid, kind)
        return current_user

    return permission_dependency
