"""
Direct permission routes, mounted under /users/{user_id}/permissions.
"""
from typing import Annotated, List, Optional
from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from authz.context import AuthorizationContext
from authz.core.database.engine import get_db
from authz.features.claims.schemas import ClaimsResponse, UserClaims
from authz.features.permissions import catalog
from authz.features.permissions.dependencies import get_context, require_permission
from authz.features.user_permissions.schemas import DirectPermissionCreate, DirectPermissionResponse
from authz.features.users.models import User


router = APIRouter(tags=["user-permissions"])


@router.get("/", response_model=ClaimsResponse)
async def get_effective_permissions(
    user_id: str,
    _user: Annotated[User, Depends(require_permission(catalog.USERS_BASIC_SHOW))],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    claims = await context.user_permissions.get_user_permissions(db, user_id)
    return ClaimsResponse(user_id=user_id, claims=UserClaims.model_validate(claims))


@router.get("/direct", response_model=List[DirectPermissionResponse])
async def list_direct_permissions(
    user_id: str,
    _user: Annotated[User, Depends(require_permission(catalog.USERS_BASIC_SHOW))],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    return await context.user_permissions.list_direct_permissions(db, user_id)


@router.post("/", response_model=DirectPermissionResponse, status_code=status.HTTP_201_CREATED)
async def add_direct_permission(
    user_id: str,
    payload: DirectPermissionCreate,
    user: Annotated[User, Depends(require_permission(catalog.USERS_PERMISSIONS_ASSIGN))],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    grant = await context.user_permissions.add_permission(db, user_id, payload, user.id)
    return DirectPermissionResponse(
        permission=grant.permission,
        organization_kind=grant.organization_kind,
        organization_uuid=payload.organization_uuid,
        created_at=grant.created_at,
    )


@router.delete("/{permission}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_direct_permission(
    user_id: str,
    permission: str,
    user: Annotated[User, Depends(require_permission(catalog.USERS_PERMISSIONS_ASSIGN))],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
    organization_kind: Optional[str] = None,
    organization_uuid: Optional[str] = None,
):
    await context.user_permissions.remove_permission(
        db, user_id, permission, organization_kind, organization_uuid, user.id
    )
