"""
Administration routes for cache maintenance and the system owner record.
"""
from typing import Annotated, Optional
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from authz.context import AuthorizationContext
from authz.core.database.engine import get_db
from authz.features.permissions import catalog
from authz.features.permissions.dependencies import get_context, require_permission
from authz.features.users.models import User


router = APIRouter(tags=["admin"])

require_cache_admin = require_permission(catalog.SYSTEM_ADMINISTRATION_MANAGE_CACHE)


class SystemOwnerUpdate(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=26)


class SystemOwnerResponse(BaseModel):
    user_id: Optional[str] = None
    previous_user_id: Optional[str] = None


@router.post("/cache/wildcards/clear")
async def clear_wildcard_cache(
    _user: Annotated[User, Depends(require_cache_admin)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    return {"cleared": context.admin.clear_wildcard_cache()}


@router.post("/claims/invalidate", status_code=status.HTTP_204_NO_CONTENT)
async def invalidate_all_claims(
    _user: Annotated[User, Depends(require_cache_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    await context.admin.invalidate_all_claims(db)


@router.get("/system-owner", response_model=SystemOwnerResponse)
async def get_system_owner(
    _user: Annotated[User, Depends(require_cache_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    return SystemOwnerResponse(user_id=await context.admin.get_system_owner(db))


@router.put("/system-owner", response_model=SystemOwnerResponse)
async def set_system_owner(
    payload: SystemOwnerUpdate,
    _user: Annotated[User, Depends(require_permission(catalog.WILDCARD))],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    """Only a holder of ``*`` may hand the system over."""
    previous = await context.admin.set_system_owner(db, payload.user_id)
    return SystemOwnerResponse(user_id=payload.user_id, previous_user_id=previous)
