"""
Organization membership operations, independent of the organization kind.

Membership changes and the role changes they imply run in one transaction.
Claims, role summaries and memberships of the affected user are invalidated
after the commit.
"""
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from authz.errors import AuthorizationError, BadRequestError, ConflictError, ForbiddenError, NotFoundError
from authz.features.claims.service import ClaimsService, has_permission
from authz.features.organizations.base_adapter import BaseOrganizationAdapter
from authz.features.organizations.constants import OrganizationKind
from authz.features.organizations.models import Company
from authz.features.organizations.registry import OrganizationAdapterRegistry
from authz.features.organizations.schemas import (
    CompanyCreate,
    MemberRole,
    MembershipSummary,
    OrganizationMember,
    OrganizationSummary,
)
from authz.features.permissions import catalog
from authz.features.permissions.catalog import WILDCARD
from authz.features.roles.assignment import RoleAssignmentService
from authz.features.roles.models import Role, UserRole
from authz.features.user_memberships.service import UserMembershipsService
from authz.features.users.models import User
from authz.utils import get_logger


log = get_logger(__name__)


class OrganizationsService:
    def __init__(
        self,
        claims: ClaimsService,
        memberships: UserMembershipsService,
        registry: OrganizationAdapterRegistry,
        assignments: RoleAssignmentService,
    ):
        self.claims = claims
        self.memberships = memberships
        self.registry = registry
        self.assignments = assignments

    async def _resolve(self, db: AsyncSession, kind: str, organization_uuid: str) -> Tuple[BaseOrganizationAdapter, int]:
        adapter = self.registry.require_registered(kind)
        organization_id = await adapter.get_organization_id(db, organization_uuid)
        if organization_id is None:
            raise NotFoundError("Organization not found")
        return adapter, organization_id

    async def _refresh_user(self, db: AsyncSession, user_id: str) -> None:
        await self.claims.invalidate_user_claims_and_roles(db, user_id)
        await self.memberships.invalidate_user_memberships(db, user_id)

    async def _organization_roles(
        self,
        db: AsyncSession,
        role_uuids: List[str],
        kind: str,
        organization_id: int,
    ) -> List[Role]:
        roles = await self.assignments.get_roles_info(db, role_uuids)
        for role in roles:
            if role.organization_kind != kind or role.organization_id != organization_id:
                raise BadRequestError(f"Role {role.uuid} does not belong to this organization")
        return roles

    async def _member_roles(
        self,
        db: AsyncSession,
        user_ids: List[str],
        kind: str,
        organization_id: int,
    ) -> Dict[str, List[MemberRole]]:
        result = await db.execute(
            select(UserRole.user_id, UserRole.created_at, Role)
            .join(Role, Role.id == UserRole.role_id)
            .where(
                UserRole.user_id.in_(user_ids),
                UserRole.organization_kind == kind,
                UserRole.organization_id == organization_id,
            )
            .order_by(Role.order.desc())
        )
        roles: Dict[str, List[MemberRole]] = defaultdict(list)
        for user_id, assigned_at, role in result.all():
            roles[user_id].append(MemberRole(
                uuid=role.uuid, name=role.name, type=role.type, order=role.order, assigned_at=assigned_at,
            ))
        return roles

    # ========================================================================
    # Organizations
    # ========================================================================

    async def create_company(self, db: AsyncSession, payload: CompanyCreate, actor_id: str) -> Company:
        """Create a company and hand it to its adapter for initialization."""
        owner_id = payload.owner_id or actor_id
        if (await db.execute(select(User.id).where(User.id == owner_id))).first() is None:
            raise NotFoundError("Owner not found")

        company = Company(name=payload.name, logo_src=payload.logo_src)
        db.add(company)
        await db.flush()
        await self.initialize_organization(db, OrganizationKind.COMPANY.value, company.uuid, owner_id)
        await db.refresh(company)
        return company

    async def initialize_organization(self, db: AsyncSession, kind: str, organization_uuid: str, owner_id: str) -> None:
        """Default roles, ownership and the owner's ADMIN role, then commit."""
        adapter = self.registry.require(kind)
        await adapter.initialize(db, organization_uuid, owner_id)
        await db.commit()
        await self._refresh_user(db, owner_id)

    # ========================================================================
    # Members
    # ========================================================================

    async def get_members(self, db: AsyncSession, kind: str, organization_uuid: str) -> List[OrganizationMember]:
        adapter, organization_id = await self._resolve(db, kind, organization_uuid)
        owner_id = await adapter.get_owner_uuid(db, organization_uuid)
        member_data = await adapter.get_all_members_data(db, organization_id)
        if not member_data:
            return []

        result = await db.execute(select(User).where(User.id.in_(list(member_data))))
        users = {user.id: user for user in result.scalars().all()}
        roles = await self._member_roles(db, list(member_data), kind, organization_id)

        members = []
        for user_id, data in member_data.items():
            user = users.get(user_id)
            if user is None:
                continue
            members.append(OrganizationMember(
                user_id=user.id,
                email=user.email,
                name=user.name,
                is_active=user.is_active,
                is_admin=data.is_admin,
                is_owner=user.id == owner_id,
                joined_at=data.created_at,
                membership_updated_at=data.updated_at,
                roles=roles.get(user_id, []),
            ))
        return members

    async def get_member(self, db: AsyncSession, kind: str, organization_uuid: str, user_id: str) -> OrganizationMember:
        adapter, organization_id = await self._resolve(db, kind, organization_uuid)
        if not await adapter.is_member(db, user_id, organization_id):
            raise NotFoundError(f"User is not a member of this {kind} organization")

        user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
        if user is None:
            raise NotFoundError("User not found")
        data = await adapter.get_member_data(db, user_id, organization_id)
        roles = await self._member_roles(db, [user_id], kind, organization_id)
        return OrganizationMember(
            user_id=user.id,
            email=user.email,
            name=user.name,
            is_active=user.is_active,
            is_admin=data.is_admin,
            is_owner=await adapter.is_owner(db, user_id, organization_uuid),
            joined_at=data.created_at,
            membership_updated_at=data.updated_at,
            roles=roles.get(user_id, []),
        )

    async def add_member(
        self,
        db: AsyncSession,
        kind: str,
        organization_uuid: str,
        user_id: str,
        role_uuids: List[str],
        actor_id: str,
        extra: Optional[dict] = None,
    ) -> None:
        """
        Add an existing user with at least one role.

        A soft-deleted user is restored. Membership row and roles are written
        in one transaction.
        """
        if not role_uuids:
            raise BadRequestError("At least one role is required")
        adapter, organization_id = await self._resolve(db, kind, organization_uuid)
        await self.assignments.ensure_can_add_members(db, kind, organization_id, actor_id)

        user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
        if user is None:
            raise NotFoundError("User not found")
        await adapter.validate_membership_constraints(db, user_id, organization_id)
        if await adapter.is_member(db, user_id, organization_id):
            raise ConflictError(f"User is already a member of this {kind} organization")
        await self._organization_roles(db, role_uuids, kind, organization_id)

        try:
            if user.deleted_at is not None:
                await db.execute(update(User).where(User.id == user_id).values(deleted_at=None))
            await adapter.add_member(db, user_id, organization_id, actor_id, extra)
            await self.assignments.assign_roles(db, role_uuids, user_id, actor_id, in_transaction=True)
            await db.commit()
        except (AuthorizationError, SQLAlchemyError):
            await db.rollback()
            raise

        await self._refresh_user(db, user_id)
        log.info(f"User {actor_id} added user {user_id} to {kind}:{organization_uuid}")

    async def update_member_roles(
        self,
        db: AsyncSession,
        kind: str,
        organization_uuid: str,
        user_id: str,
        role_uuids: List[str],
        actor_id: str,
    ) -> None:
        """
        Replace the member's roles in this organization with ``role_uuids``.

        Only the difference is applied, so roles kept across the update never
        pass through an unassigned state. Changing one's own roles needs a
        cross-organization assignment permission.
        """
        if not role_uuids:
            raise BadRequestError("At least one role is required")
        adapter, organization_id = await self._resolve(db, kind, organization_uuid)
        if not await adapter.is_member(db, user_id, organization_id):
            raise NotFoundError(f"User is not a member of this {kind} organization")
        await self.assignments.ensure_can_add_members(db, kind, organization_id, actor_id)

        if actor_id == user_id and not self.assignments.bypass:
            claims = await self.claims.get_claims(db, actor_id)
            if WILDCARD not in claims["global"] and not has_permission(
                claims, catalog.USERS_ROLES_ASSIGN_ALL_ORGANIZATIONS
            ):
                raise ForbiddenError("You cannot change your own roles")

        desired = await self._organization_roles(db, role_uuids, kind, organization_id)

        result = await db.execute(
            select(Role.uuid)
            .join(UserRole, UserRole.role_id == Role.id)
            .where(
                UserRole.user_id == user_id,
                UserRole.organization_kind == kind,
                UserRole.organization_id == organization_id,
            )
        )
        current = set(result.scalars().all())
        wanted = {role.uuid for role in desired}
        to_add = [uuid for uuid in wanted if uuid not in current]
        to_remove = [uuid for uuid in current if uuid not in wanted]
        if not to_add and not to_remove:
            return

        try:
            if to_add:
                await self.assignments.assign_roles(db, to_add, user_id, actor_id, in_transaction=True)
            if to_remove:
                await self.assignments.unassign_roles(db, to_remove, user_id, actor_id, in_transaction=True)
            await db.commit()
        except (AuthorizationError, SQLAlchemyError):
            await db.rollback()
            raise

        await self._refresh_user(db, user_id)
        log.info(f"User {actor_id} set roles of {user_id} in {kind}:{organization_uuid}: +{len(to_add)} -{len(to_remove)}")

    async def remove_member(
        self,
        db: AsyncSession,
        kind: str,
        organization_uuid: str,
        user_id: str,
        actor_id: str,
    ) -> None:
        """Revoke every role the member holds in the organization, then the membership itself."""
        adapter, organization_id = await self._resolve(db, kind, organization_uuid)
        if not await adapter.is_member(db, user_id, organization_id):
            raise NotFoundError(f"User is not a member of this {kind} organization")
        if await adapter.is_owner(db, user_id, organization_uuid):
            raise ForbiddenError("The organization owner cannot be removed")
        await self.assignments.ensure_can_remove_members(db, kind, organization_id, actor_id)

        result = await db.execute(
            select(Role.uuid)
            .join(UserRole, UserRole.role_id == Role.id)
            .where(
                UserRole.user_id == user_id,
                UserRole.organization_kind == kind,
                UserRole.organization_id == organization_id,
            )
        )
        role_uuids = list(result.scalars().all())

        try:
            if role_uuids:
                await self.assignments.unassign_roles(db, role_uuids, user_id, actor_id, in_transaction=True)
            await adapter.remove_member(db, user_id, organization_id, actor_id)
            await db.commit()
        except (AuthorizationError, SQLAlchemyError):
            await db.rollback()
            raise

        await self._refresh_user(db, user_id)
        log.info(f"User {actor_id} removed user {user_id} from {kind}:{organization_uuid}")

    # ========================================================================
    # Current user
    # ========================================================================

    async def get_current_user_memberships(self, db: AsyncSession, user_id: str) -> List[MembershipSummary]:
        """Every organization the user holds a role in, sorted by kind then name."""
        result = await db.execute(
            select(UserRole.created_at, Role)
            .join(Role, Role.id == UserRole.role_id)
            .where(UserRole.user_id == user_id, Role.organization_kind.is_not(None))
            .order_by(Role.organization_kind, Role.organization_id, Role.order.desc())
        )

        grouped: Dict[Tuple[str, int], List[MemberRole]] = {}
        for assigned_at, role in result.all():
            grouped.setdefault((role.organization_kind, role.organization_id), []).append(MemberRole(
                uuid=role.uuid, name=role.name, type=role.type, order=role.order, assigned_at=assigned_at,
            ))

        summaries = []
        for (kind, organization_id), roles in grouped.items():
            adapter = self.registry.get(kind)
            if adapter is None:
                continue
            try:
                organization_uuid = await adapter.get_organization_uuid(db, organization_id)
                if organization_uuid is None:
                    continue
                details = await adapter.get_organization_details(db, organization_uuid)
                if details is None:
                    continue
                data = await adapter.get_member_data(db, user_id, organization_id)
            except SQLAlchemyError:
                log.exception(f"Failed to load {kind}:{organization_id} for user {user_id}")
                continue

            summaries.append(MembershipSummary(
                organization=OrganizationSummary(
                    kind=kind, uuid=details.uuid, name=details.name, logo_src=details.logo_src,
                ),
                is_admin=data.is_admin,
                is_owner=details.owner_uuid == user_id,
                joined_at=data.created_at,
                membership_updated_at=data.updated_at,
                roles=roles,
            ))

        return sorted(summaries, key=lambda s: (s.organization.kind, s.organization.name))
