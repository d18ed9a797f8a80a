"""
Organization routes: company creation, membership and the current user's organizations.
"""
from typing import Annotated, List
from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from authz.context import AuthorizationContext
from authz.core.database.engine import get_db
from authz.features.organizations.constants import OrganizationKind
from authz.features.organizations.schemas import (
    CompanyCreate,
    CompanyResponse,
    MemberAdd,
    MemberRolesUpdate,
    MembershipSummary,
    OrganizationMember,
)
from authz.features.permissions import catalog
from authz.features.permissions.dependencies import get_context, require_permission
from authz.features.users.dependencies import get_current_user
from authz.features.users.models import User


router = APIRouter(tags=["organizations"])


@router.post("/companies", response_model=CompanyResponse, status_code=status.HTTP_201_CREATED)
async def create_company(
    payload: CompanyCreate,
    user: Annotated[User, Depends(require_permission("companies:create"))],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    """Create a company with its default roles; the owner gets its ADMIN role."""
    return await context.organizations.create_company(db, payload, user.id)


@router.get("/me", response_model=List[MembershipSummary])
async def get_my_organizations(
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    return await context.organizations.get_current_user_memberships(db, user.id)


# Members
@router.get("/{kind}/{uuid}/members", response_model=List[OrganizationMember])
async def list_members(
    kind: OrganizationKind,
    uuid: str,
    _user: Annotated[User, Depends(require_permission(catalog.USERS_BASIC_LIST, "kind", "uuid"))],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    return await context.organizations.get_members(db, kind.value, uuid)


@router.get("/{kind}/{uuid}/members/{user_id}", response_model=OrganizationMember)
async def get_member(
    kind: OrganizationKind,
    uuid: str,
    user_id: str,
    _user: Annotated[User, Depends(require_permission(catalog.USERS_BASIC_SHOW, "kind", "uuid"))],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    return await context.organizations.get_member(db, kind.value, uuid, user_id)


@router.post("/{kind}/{uuid}/members", response_model=OrganizationMember, status_code=status.HTTP_201_CREATED)
async def add_member(
    kind: OrganizationKind,
    uuid: str,
    payload: MemberAdd,
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    await context.organizations.add_member(db, kind.value, uuid, payload.user_id, payload.role_uuids, user.id)
    return await context.organizations.get_member(db, kind.value, uuid, payload.user_id)


@router.put("/{kind}/{uuid}/members/{user_id}/roles", response_model=OrganizationMember)
async def update_member_roles(
    kind: OrganizationKind,
    uuid: str,
    user_id: str,
    payload: MemberRolesUpdate,
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    await context.organizations.update_member_roles(db, kind.value, uuid, user_id, payload.role_uuids, user.id)
    return await context.organizations.get_member(db, kind.value, uuid, user_id)


@router.delete("/{kind}/{uuid}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_member(
    kind: OrganizationKind,
    uuid: str,
    user_id: str,
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthorizationContext, Depends(get_context)],
):
    await context.organizations.remove_member(db, kind.value, uuid, user_id, user.id)
