"""
Claims routes.
"""
from typing import Annotated, Any, Dict, List
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from authz.context import AuthorizationContext
from authz.core.database.engine import get_db
from authz.features.claims.schemas import BatchSummary, ClaimsResponse, UserClaims, UserRoleInfo
from authz.features.permissions import catalog
from authz.features.permissions.dependencies import get_context, require_permission
from authz.features.users.dependencies import get_current_user
from authz.features.users.models import User


router = APIRouter(tags=["claims"])


@router.get("/me", response_model=ClaimsResponse)
async def get_my_claims(
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    claims = await context.claims.get_claims(db, user.id)
    return ClaimsResponse(user_id=user.id, claims=UserClaims.model_validate(claims))


@router.get("/me/roles", response_model=List[UserRoleInfo])
async def get_my_roles(
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    return await context.claims.get_role_infos(db, user.id)


@router.get("/me/memberships")
async def get_my_memberships(
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
) -> List[Dict[str, Any]]:
    return await context.memberships.get_user_memberships(db, user.id)


@router.get("/{user_id}", response_model=ClaimsResponse)
async def get_user_claims(
    user_id: str,
    _user: Annotated[User, Depends(require_permission(catalog.USERS_BASIC_SHOW))],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    claims = await context.user_permissions.get_user_permissions(db, user_id)
    return ClaimsResponse(user_id=user_id, claims=UserClaims.model_validate(claims))


@router.post("/refresh", response_model=BatchSummary)
async def refresh_claims(
    user_ids: List[str],
    _user: Annotated[User, Depends(require_permission(catalog.SYSTEM_ADMINISTRATION_MANAGE_CACHE))],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    """Recompute claims of several users; one failure does not stop the batch."""
    results = await context.claims.refresh_users_claims(db, user_ids)
    return BatchSummary.from_results(results)
