"""
Role assignment coordinator.

Every grant or revoke runs validate -> before hooks -> persist -> after hooks
-> commit -> invalidate. Validation finishes before the first write, so a
rejected request never leaves partial rows behind.

Callers that compose several steps into one transaction (the organizations
service) pass ``in_transaction=True`` and take over the commit and the
invalidation.
"""
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from authz.core import config
from authz.core.database.base import is_valid_ulid
from authz.errors import AuthorizationError, BadRequestError, ConflictError, ForbiddenError, NotFoundError
from authz.features.claims.schemas import BatchItemResult
from authz.features.claims.service import ClaimsService, has_permission
from authz.features.organizations.base_adapter import BaseOrganizationAdapter
from authz.features.organizations.registry import OrganizationAdapterRegistry
from authz.features.permissions import catalog
from authz.features.permissions.catalog import WILDCARD
from authz.features.roles.models import Role, RoleType, UserRole
from authz.features.roles.schemas import RoleMembersSyncResult
from authz.features.roles.validation import RoleValidationService, is_organization_member
from authz.features.user_memberships.service import UserMembershipsService
from authz.utils import get_logger


log = get_logger(__name__)

OWNER_ADMIN_REQUIRED_MESSAGE = "The organization owner must keep an admin role"

OrganizationKey = Tuple[str, int]


def group_by_organization(roles: Iterable[Role]) -> Tuple[List[Role], Dict[OrganizationKey, List[Role]]]:
    """Split roles into global roles and roles per (kind, organization id)."""
    global_roles: List[Role] = []
    by_organization: Dict[OrganizationKey, List[Role]] = OrderedDict()
    for role in roles:
        if role.organization_kind is None or role.organization_id is None:
            global_roles.append(role)
        else:
            by_organization.setdefault((role.organization_kind, role.organization_id), []).append(role)
    return global_roles, by_organization


class RoleAssignmentService:
    def __init__(
        self,
        claims: ClaimsService,
        memberships: UserMembershipsService,
        registry: OrganizationAdapterRegistry,
        validation: RoleValidationService,
        bypass: Optional[bool] = None,
    ):
        self.claims = claims
        self.memberships = memberships
        self.registry = registry
        self.validation = validation
        self.bypass = config.AUTH_BYPASS_ENABLED if bypass is None else bypass

    # ========================================================================
    # Lookup
    # ========================================================================

    async def get_role_info(self, db: AsyncSession, role_uuid: str) -> Role:
        """Roles are addressed by UUID only."""
        if not is_valid_ulid(role_uuid):
            raise BadRequestError("Invalid role UUID format")
        result = await db.execute(select(Role).where(Role.uuid == role_uuid))
        role = result.scalar_one_or_none()
        if role is None:
            raise NotFoundError("Role not found")
        return role

    async def get_roles_info(self, db: AsyncSession, role_uuids: Iterable[str]) -> List[Role]:
        return [await self.get_role_info(db, uuid) for uuid in dict.fromkeys(role_uuids)]

    def _adapter(self, kind: str) -> BaseOrganizationAdapter:
        return self.registry.require_registered(kind)

    # ========================================================================
    # Permission checks
    # ========================================================================

    async def ensure_can_manage_role_assignment(
        self,
        db: AsyncSession,
        role: Role,
        target_user_id: str,
        actor_id: str,
    ) -> None:
        """
        Global roles need ``users-roles:assign-global``. Organization roles need
        the own-organization permission when actor and target both belong to
        the organization, the all-organizations permission otherwise.
        """
        if self.bypass:
            return
        claims = await self.claims.get_claims(db, actor_id)
        if WILDCARD in claims["global"]:
            return

        if role.organization_kind is None or role.organization_id is None:
            if not has_permission(claims, catalog.USERS_ROLES_ASSIGN_GLOBAL):
                raise ForbiddenError()
            return

        adapter = self._adapter(role.organization_kind)
        uuid = await adapter.get_organization_uuid(db, role.organization_id)
        if uuid is None:
            raise ForbiddenError()

        actor_is_member = is_organization_member(claims, role.organization_kind, uuid)
        target_is_member = await adapter.is_member(db, target_user_id, role.organization_id)
        if actor_is_member and target_is_member:
            if not has_permission(
                claims, catalog.USERS_ROLES_ASSIGN_OWN_ORGANIZATION, uuid, role.organization_kind
            ):
                raise ForbiddenError()
        elif not has_permission(claims, catalog.USERS_ROLES_ASSIGN_ALL_ORGANIZATIONS):
            raise ForbiddenError()

    async def _ensure_can_change_members(
        self,
        db: AsyncSession,
        kind: str,
        organization_id: int,
        actor_id: str,
        own_permission: str,
        all_permission: str,
    ) -> None:
        if self.bypass:
            return
        claims = await self.claims.get_claims(db, actor_id)
        if WILDCARD in claims["global"]:
            return

        uuid = await self._adapter(kind).get_organization_uuid(db, organization_id)
        if uuid is None:
            raise ForbiddenError()
        if is_organization_member(claims, kind, uuid):
            if not has_permission(claims, own_permission, uuid, kind):
                raise ForbiddenError()
        elif not has_permission(claims, all_permission):
            raise ForbiddenError()

    async def ensure_can_add_members(self, db: AsyncSession, kind: str, organization_id: int, actor_id: str) -> None:
        await self._ensure_can_change_members(
            db, kind, organization_id, actor_id,
            catalog.USERS_MEMBERS_ADD_OWN_ORGANIZATION,
            catalog.USERS_MEMBERS_ADD_ALL_ORGANIZATIONS,
        )

    async def ensure_can_remove_members(self, db: AsyncSession, kind: str, organization_id: int, actor_id: str) -> None:
        await self._ensure_can_change_members(
            db, kind, organization_id, actor_id,
            catalog.USERS_MEMBERS_REMOVE_OWN_ORGANIZATION,
            catalog.USERS_MEMBERS_REMOVE_ALL_ORGANIZATIONS,
        )

    async def _validate(self, db: AsyncSession, roles: List[Role], user_id: str, actor_id: str) -> None:
        skip_hierarchy = self.bypass or await self.validation.should_skip_hierarchy_check(db, actor_id)
        for role in roles:
            await self.ensure_can_manage_role_assignment(db, role, user_id, actor_id)
            await self.validation.ensure_higher_order_than_role(
                db,
                actor_id,
                role.order,
                role.organization_kind,
                role.organization_id,
                skip_hierarchy_check=skip_hierarchy,
            )
            await self.validation.validate_can_grant_permissions(db, actor_id, role.permissions or [])

    async def _ensure_owner_keeps_admin(
        self,
        db: AsyncSession,
        user_id: str,
        by_organization: Dict[OrganizationKey, List[Role]],
    ) -> None:
        """Revoking every ADMIN role an owner holds in their organization is rejected."""
        for (kind, organization_id), roles in by_organization.items():
            removed = {role.id for role in roles if role.type == RoleType.ADMIN}
            if not removed:
                continue
            adapter = self._adapter(kind)
            uuid = await adapter.get_organization_uuid(db, organization_id)
            if uuid is None or not await adapter.is_owner(db, user_id, uuid):
                continue

            result = await db.execute(
                select(UserRole.role_id)
                .join(Role, Role.id == UserRole.role_id)
                .where(
                    UserRole.user_id == user_id,
                    UserRole.organization_kind == kind,
                    UserRole.organization_id == organization_id,
                    Role.type == RoleType.ADMIN,
                )
            )
            remaining = set(result.scalars().all()) - removed
            if not remaining:
                log.info(f"Refused to revoke the last admin role of owner {user_id} in {kind}:{organization_id}")
                raise ForbiddenError(OWNER_ADMIN_REQUIRED_MESSAGE)

    # ========================================================================
    # Hooks
    # ========================================================================

    async def _run_hooks(
        self,
        db: AsyncSession,
        hook: str,
        user_id: str,
        by_organization: Dict[OrganizationKey, List[Role]],
        actor_id: str,
    ) -> None:
        """One batch hook call per organization; the adapter falls back to its single hook."""
        for (kind, organization_id), roles in by_organization.items():
            adapter = self.registry.get(kind)
            if adapter is None:
                continue
            await getattr(adapter, hook)(db, user_id, [role.id for role in roles], organization_id, actor_id)

    # ========================================================================
    # Assign / unassign
    # ========================================================================

    async def assign_role(
        self,
        db: AsyncSession,
        role_uuid: str,
        user_id: str,
        actor_id: str,
        in_transaction: bool = False,
    ) -> None:
        await self.assign_roles(db, [role_uuid], user_id, actor_id, in_transaction)

    async def unassign_role(
        self,
        db: AsyncSession,
        role_uuid: str,
        user_id: str,
        actor_id: str,
        in_transaction: bool = False,
    ) -> None:
        await self.unassign_roles(db, [role_uuid], user_id, actor_id, in_transaction)

    async def assign_roles(
        self,
        db: AsyncSession,
        role_uuids: Iterable[str],
        user_id: str,
        actor_id: str,
        in_transaction: bool = False,
    ) -> List[Role]:
        """
        Grant several roles to one user.

        Roles the user already holds are skipped; when every requested role is
        already held the call fails with ConflictError. Organization roles
        require the user to be a member of that organization.
        """
        roles = await self.get_roles_info(db, role_uuids)
        if not roles:
            raise BadRequestError("At least one role is required")
        await self._validate(db, roles, user_id, actor_id)

        global_roles, by_organization = group_by_organization(roles)
        for (kind, organization_id) in by_organization:
            if not await self._adapter(kind).is_member(db, user_id, organization_id):
                raise ConflictError(f"User is not a member of this {kind} organization")

        result = await db.execute(
            select(UserRole.role_id).where(
                UserRole.user_id == user_id,
                UserRole.role_id.in_([role.id for role in roles]),
            )
        )
        held = set(result.scalars().all())
        new_roles = [role for role in roles if role.id not in held]
        if not new_roles:
            raise ConflictError("User already has the requested role(s)")
        _, new_by_organization = group_by_organization(new_roles)

        await self._run_hooks(db, "before_add_roles", user_id, new_by_organization, actor_id)
        db.add_all([
            UserRole(
                user_id=user_id,
                role_id=role.id,
                organization_kind=role.organization_kind,
                organization_id=role.organization_id,
            )
            for role in new_roles
        ])
        await db.flush()
        await self._run_hooks(db, "after_add_roles", user_id, new_by_organization, actor_id)

        log.info(f"User {actor_id} assigned roles {[role.uuid for role in new_roles]} to user {user_id}")
        if not in_transaction:
            await self._commit_and_invalidate(db, user_id, bool(new_by_organization))
        return new_roles

    async def unassign_roles(
        self,
        db: AsyncSession,
        role_uuids: Iterable[str],
        user_id: str,
        actor_id: str,
        in_transaction: bool = False,
    ) -> List[Role]:
        """
        Revoke several roles from one user.

        Roles the user does not hold are skipped; when none is held the call
        fails with NotFoundError. An organization owner always keeps at least
        one ADMIN role in their organization.
        """
        roles = await self.get_roles_info(db, role_uuids)
        if not roles:
            raise BadRequestError("At least one role is required")
        await self._validate(db, roles, user_id, actor_id)

        result = await db.execute(
            select(UserRole.role_id).where(
                UserRole.user_id == user_id,
                UserRole.role_id.in_([role.id for role in roles]),
            )
        )
        held = set(result.scalars().all())
        removed_roles = [role for role in roles if role.id in held]
        if not removed_roles:
            raise NotFoundError("User does not have the requested role(s)")
        _, by_organization = group_by_organization(removed_roles)
        await self._ensure_owner_keeps_admin(db, user_id, by_organization)

        await self._run_hooks(db, "before_remove_roles", user_id, by_organization, actor_id)
        await db.execute(
            delete(UserRole).where(
                UserRole.user_id == user_id,
                UserRole.role_id.in_([role.id for role in removed_roles]),
            )
        )
        await db.flush()
        await self._run_hooks(db, "after_remove_roles", user_id, by_organization, actor_id)

        log.info(f"User {actor_id} unassigned roles {[role.uuid for role in removed_roles]} from user {user_id}")
        if not in_transaction:
            await self._commit_and_invalidate(db, user_id, bool(by_organization))
        return removed_roles

    async def _commit_and_invalidate(self, db: AsyncSession, user_id: str, organizations_touched: bool) -> None:
        await db.commit()
        await self.claims.invalidate_user_claims_and_roles(db, user_id)
        # Organization roles can flip the member's admin flag
        if organizations_touched:
            await self.memberships.invalidate_user_memberships(db, user_id)

    # ========================================================================
    # Bulk sync
    # ========================================================================

    async def sync_members(
        self,
        db: AsyncSession,
        role_uuid: str,
        user_ids: Iterable[str],
        actor_id: str,
    ) -> RoleMembersSyncResult:
        """
        Make the role's holders equal ``user_ids``.

        Each add or remove is its own transaction; a failure is recorded for
        that user and the sync carries on.
        """
        role = await self.get_role_info(db, role_uuid)
        desired = list(dict.fromkeys(user_ids))

        current = await self.claims.get_role_holder_ids(db, role.id)
        current_set = set(current)
        desired_set = set(desired)
        to_add = [user_id for user_id in desired if user_id not in current_set]
        to_remove = [user_id for user_id in current if user_id not in desired_set]

        results: List[BatchItemResult] = []
        added = removed = 0
        for user_id in to_add:
            if await self._sync_one(db, self.assign_role, role_uuid, user_id, actor_id, results):
                added += 1
        for user_id in to_remove:
            if await self._sync_one(db, self.unassign_role, role_uuid, user_id, actor_id, results):
                removed += 1

        failed = sum(1 for item in results if not item.ok)
        log.info(f"Synced members of role {role_uuid}: {added} added, {removed} removed, {failed} failed")
        return RoleMembersSyncResult(added=added, removed=removed, failed=failed, results=results)

    async def _sync_one(self, db, operation, role_uuid, user_id, actor_id, results) -> bool:
        try:
            await operation(db, role_uuid, user_id, actor_id)
        except (AuthorizationError, SQLAlchemyError) as exc:
            await db.rollback()
            log.error(f"Failed to sync user {user_id} for role {role_uuid}: {exc}")
            results.append(BatchItemResult(id=user_id, ok=False, error=str(exc)))
            return False
        results.append(BatchItemResult(id=user_id, ok=True))
        return True
