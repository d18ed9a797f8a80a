"""
Permission catalog and self-check routes.
"""
from typing import Annotated, Any, Dict, List, Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from authz.context import AuthorizationContext
from authz.core.database.engine import get_db
from authz.errors import BadRequestError, NotFoundError
from authz.features.permissions import catalog
from authz.features.permissions.dependencies import get_context
from authz.features.permissions.validators import allowed_scopes, filtered_groups, unmet_dependencies
from authz.features.users.dependencies import get_current_user
from authz.features.users.models import User


router = APIRouter(tags=["permissions"])


@router.get("/")
async def list_permission_groups(
    _user: Annotated[User, Depends(get_current_user)],
    scope: Optional[str] = Query(None, description="global or an organization kind"),
    include_hidden: bool = False,
) -> List[Dict[str, Any]]:
    """Catalog groups usable in ``scope``."""
    if scope is not None and scope not in catalog.ALL_SCOPES:
        raise BadRequestError(f"Unknown scope: {scope}")
    return filtered_groups(scope, include_hidden)


@router.get("/me")
async def get_my_permissions(
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
    organization_kind: Optional[str] = None,
    organization_uuid: Optional[str] = None,
) -> List[str]:
    """Concrete permission keys of the current user, wildcards expanded."""
    if (organization_kind is None) != (organization_uuid is None):
        raise BadRequestError("organization_kind and organization_uuid must be given together")
    if organization_kind is None:
        return await context.checks.get_all_granted_permissions(db, user.id)
    return await context.checks.get_organization_aware_permissions(
        db, user.id, organization_uuid, organization_kind
    )


@router.get("/check")
async def check_permission(
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
    permission: str,
    organization_kind: Optional[str] = None,
    organization_uuid: Optional[str] = None,
):
    granted = await context.checks.is_granted(db, user.id, permission, organization_uuid, organization_kind)
    return {"permission": permission, "granted": granted}


@router.get("/{key}")
async def get_permission(
    key: str,
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
    scope: Optional[str] = None,
):
    """One catalog entry with the dependencies the current user is missing."""
    definition = catalog.get_permission(key)
    if definition is None:
        raise NotFoundError(f"Unknown permission: {key}")
    granted = await context.checks.get_all_granted_permissions(db, user.id)
    return {
        **definition.to_dict(),
        "allowed_scopes": allowed_scopes(key),
        "unmet_dependencies": unmet_dependencies(key, granted, scope),
    }
