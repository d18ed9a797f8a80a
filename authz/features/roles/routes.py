"""
Role management and assignment routes.
"""
from typing import Annotated, List
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from authz.context import AuthorizationContext
from authz.core.database.engine import get_db
from authz.features.permissions.dependencies import get_context
from authz.features.roles.schemas import (
    RoleAssignment,
    RoleCreate,
    RoleFilters,
    RoleMember,
    RoleMembersSync,
    RoleMembersSyncResult,
    RoleReorder,
    RoleResponse,
    RoleUpdate,
)
from authz.features.users.dependencies import get_current_user
from authz.features.users.models import User


router = APIRouter(tags=["roles"])


# Role CRUD endpoints
@router.get("/", response_model=List[RoleResponse])
async def list_roles(
    filters: Annotated[RoleFilters, Query()],
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    """Roles visible to the current user, highest order first."""
    roles = await context.roles.list_roles(db, filters, user.id)
    return await context.roles.to_responses(db, roles)


@router.post("/", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def create_role(
    payload: RoleCreate,
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    role = await context.roles.create_role(db, payload, user.id)
    return await context.roles.to_response(db, role)


@router.put("/reorder")
async def reorder_roles(
    payload: RoleReorder,
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    updated = await context.roles.reorder_roles(db, payload, user.id)
    return {"updated": updated}


@router.get("/{uuid}", response_model=RoleResponse)
async def get_role(
    uuid: str,
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    role = await context.roles.show(db, uuid, user.id)
    return await context.roles.to_response(db, role)


@router.patch("/{uuid}", response_model=RoleResponse)
async def update_role(
    uuid: str,
    payload: RoleUpdate,
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    role = await context.roles.update_role(db, uuid, payload, user.id)
    return await context.roles.to_response(db, role)


@router.delete("/{uuid}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    uuid: str,
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    await context.roles.delete_role(db, uuid, user.id)


# Role members
@router.get("/{uuid}/members", response_model=List[RoleMember])
async def get_role_members(
    uuid: str,
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    return await context.roles.get_role_members(db, uuid, user.id)


@router.put("/{uuid}/members", response_model=RoleMembersSyncResult)
async def sync_role_members(
    uuid: str,
    payload: RoleMembersSync,
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    """Make the role's holders exactly ``user_ids``; failures are reported per user."""
    return await context.assignments.sync_members(db, uuid, payload.user_ids, user.id)


# Assignment endpoints
@router.post("/users/{user_id}/assign", status_code=status.HTTP_204_NO_CONTENT)
async def assign_roles(
    user_id: str,
    payload: RoleAssignment,
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    await context.assignments.assign_roles(db, payload.role_uuids, user_id, user.id)


@router.post("/users/{user_id}/unassign", status_code=status.HTTP_204_NO_CONTENT)
async def unassign_roles(
    user_id: str,
    payload: RoleAssignment,
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    await context.assignments.unassign_roles(db, payload.role_uuids, user_id, user.id)
