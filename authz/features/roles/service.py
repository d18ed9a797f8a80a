"""
Role CRUD, reordering and default-role bootstrap.

BASIC and ADMIN roles are created by the system. Their type and order never
change, ADMIN permissions are fixed and neither can be deleted. Permission
edits invalidate claims (not role summaries) for every holder.
"""
from collections import defaultdict
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from authz.core import config
from authz.core.database.base import is_valid_ulid
from authz.errors import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from authz.features.claims.service import ClaimsService, has_permission
from authz.features.organizations.registry import OrganizationAdapterRegistry
from authz.features.permissions import catalog
from authz.features.permissions.catalog import WILDCARD
from authz.features.permissions.validators import unmet_dependencies, validate_permissions_for_scope
from authz.features.roles.constants import GLOBAL_DEFAULT_ROLES
from authz.features.roles.models import Role, RoleType, UserRole
from authz.features.roles.schemas import (
    RoleCreate,
    RoleFilters,
    RoleMember,
    RoleReorder,
    RoleResponse,
    RoleUpdate,
)
from authz.features.roles.validation import RoleValidationService
from authz.features.users.models import User
from authz.utils import get_logger


log = get_logger(__name__)

# Fields a protected role accepts in an update
PROTECTED_ROLE_FIELDS = {
    RoleType.BASIC: {"name", "description", "permissions"},
    RoleType.ADMIN: {"name", "description"},
}


class RolesService:
    def __init__(
        self,
        claims: ClaimsService,
        registry: OrganizationAdapterRegistry,
        validation: RoleValidationService,
        bypass: Optional[bool] = None,
    ):
        self.claims = claims
        self.registry = registry
        self.validation = validation
        self.bypass = config.AUTH_BYPASS_ENABLED if bypass is None else bypass

    # ========================================================================
    # Helpers
    # ========================================================================

    async def resolve_scope(
        self,
        db: AsyncSession,
        organization_kind: Optional[str],
        organization_uuid: Optional[str],
    ) -> Optional[int]:
        """Organization id for a (kind, uuid) pair, None for global scope."""
        if (organization_kind is None) != (organization_uuid is None):
            raise BadRequestError("organization_kind and organization_uuid must be given together")
        if organization_kind is None:
            return None
        adapter = self.registry.require(organization_kind)
        organization_id = await adapter.get_organization_id(db, organization_uuid)
        if organization_id is None:
            raise NotFoundError(f"Organization not found: {organization_uuid}")
        return organization_id

    async def get_role(self, db: AsyncSession, uuid: str) -> Role:
        if not is_valid_ulid(uuid):
            raise BadRequestError("Invalid role UUID format")
        result = await db.execute(select(Role).where(Role.uuid == uuid))
        role = result.scalar_one_or_none()
        if role is None:
            raise NotFoundError("Role not found")
        return role

    async def to_responses(self, db: AsyncSession, roles: List[Role]) -> List[RoleResponse]:
        ids_by_kind: Dict[str, Set[int]] = defaultdict(set)
        for role in roles:
            if role.organization_kind is not None:
                ids_by_kind[role.organization_kind].add(role.organization_id)

        uuids: Dict[Tuple[str, int], str] = {}
        for kind, ids in ids_by_kind.items():
            adapter = self.registry.get(kind)
            if adapter is None:
                continue
            for organization_id, uuid in (await adapter.get_organization_uuids(db, ids)).items():
                uuids[(kind, organization_id)] = uuid

        return [
            RoleResponse(
                uuid=role.uuid,
                name=role.name,
                description=role.description,
                type=role.type,
                permissions=list(role.permissions or []),
                order=role.order,
                organization_kind=role.organization_kind,
                organization_uuid=uuids.get((role.organization_kind, role.organization_id)),
                created_at=role.created_at,
                updated_at=role.updated_at,
            )
            for role in roles
        ]

    async def to_response(self, db: AsyncSession, role: Role) -> RoleResponse:
        return (await self.to_responses(db, [role]))[0]

    def _warn_unmet_dependencies(self, role_name: str, permissions: List[str], scope: Optional[str]) -> None:
        if WILDCARD in permissions:
            return
        for key in permissions:
            if catalog.is_group_wildcard(key):
                continue
            missing = unmet_dependencies(key, permissions, scope)
            if missing:
                log.warning(f"Role {role_name!r} grants {key} without its dependencies {missing}")

    async def _ensure_order_below_actor(
        self,
        db: AsyncSession,
        actor_id: str,
        orders: List[int],
        organization_kind: Optional[str],
        organization_id: Optional[int],
    ) -> None:
        for order in orders:
            await self.validation.ensure_higher_order_than_role(
                db, actor_id, order, organization_kind, organization_id
            )

    # ========================================================================
    # Queries
    # ========================================================================

    async def list_roles(self, db: AsyncSession, filters: RoleFilters, actor_id: Optional[str] = None) -> List[Role]:
        """
        Roles matching ``filters`` that the actor may list.

        Listing needs ``role-view:list-globals`` for global roles and
        ``role-view:list-all-organizations`` or membership for organization
        roles. Roles the actor holds are always included.
        """
        stmt = select(Role).order_by(Role.organization_kind, Role.organization_id, Role.order.desc(), Role.id)
        if filters.organization_kind is not None:
            organization_id = await self.resolve_scope(db, filters.organization_kind, filters.organization_uuid)
            stmt = stmt.where(
                Role.organization_kind == filters.organization_kind,
                Role.organization_id == organization_id,
            )
        if filters.type is not None:
            stmt = stmt.where(Role.type == filters.type)
        if filters.search:
            stmt = stmt.where(Role.name.ilike(f"%{filters.search}%"))

        if actor_id is not None and not self.bypass:
            visibility = await self._visibility_clause(db, actor_id)
            if visibility is not None:
                stmt = stmt.where(visibility)

        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def _visibility_clause(self, db: AsyncSession, actor_id: str):
        """None when the actor may list every role."""
        claims = await self.claims.get_claims(db, actor_id)
        if WILDCARD in claims["global"]:
            return None
        can_list_globals = has_permission(claims, catalog.ROLE_VIEW_LIST_GLOBALS)
        can_list_organizations = has_permission(claims, catalog.ROLE_VIEW_LIST_ALL_ORGANIZATIONS)
        if can_list_globals and can_list_organizations:
            return None

        held = select(UserRole.role_id).where(UserRole.user_id == actor_id)
        clauses = [Role.id.in_(held)]
        if can_list_globals:
            clauses.append(Role.organization_kind.is_(None))
        if can_list_organizations:
            clauses.append(Role.organization_kind.is_not(None))
        else:
            for kind, organizations in claims.get("organizations", {}).items():
                adapter = self.registry.get(kind)
                member_of = [uuid for uuid, permissions in organizations.items() if permissions]
                if adapter is None or not member_of:
                    continue
                ids = list((await adapter.get_organization_ids(db, member_of)).values())
                if ids:
                    clauses.append(and_(Role.organization_kind == kind, Role.organization_id.in_(ids)))
        return or_(*clauses)

    async def show(self, db: AsyncSession, uuid: str, actor_id: Optional[str] = None) -> Role:
        role = await self.get_role(db, uuid)
        if actor_id is not None:
            await self.validation.ensure_can_access_role(db, actor_id, role)
        return role

    async def get_role_members(self, db: AsyncSession, uuid: str, actor_id: Optional[str] = None) -> List[RoleMember]:
        role = await self.show(db, uuid, actor_id)
        result = await db.execute(
            select(User.id, User.email, User.name, UserRole.created_at)
            .join(UserRole, UserRole.user_id == User.id)
            .where(UserRole.role_id == role.id)
            .order_by(UserRole.created_at)
        )
        return [
            RoleMember(user_id=row.id, email=row.email, name=row.name, assigned_at=row.created_at)
            for row in result.all()
        ]

    # ========================================================================
    # Mutations
    # ========================================================================

    async def create_role(self, db: AsyncSession, payload: RoleCreate, actor_id: Optional[str] = None) -> Role:
        """User-created roles are always CUSTOM."""
        organization_id = await self.resolve_scope(db, payload.organization_kind, payload.organization_uuid)
        validate_permissions_for_scope(payload.permissions, payload.organization_kind)

        if actor_id is not None and not self.bypass:
            await self.validation.validate_can_grant_permissions(db, actor_id, payload.permissions)
            if await self.validation.ensure_can_create_role(db, actor_id, payload.organization_kind, organization_id):
                await self._ensure_order_below_actor(
                    db, actor_id, [payload.order], payload.organization_kind, organization_id
                )

        await self._ensure_unique_name(db, payload.name, payload.organization_kind, organization_id)
        self._warn_unmet_dependencies(payload.name, payload.permissions, payload.organization_kind)

        role = Role(
            name=payload.name,
            description=payload.description,
            type=RoleType.CUSTOM,
            permissions=list(payload.permissions),
            order=payload.order,
            organization_kind=payload.organization_kind,
            organization_id=organization_id,
        )
        db.add(role)
        try:
            await db.commit()
        except IntegrityError as exc:
            await db.rollback()
            raise ConflictError(f"Role name already in use: {payload.name}") from exc
        await db.refresh(role)
        log.info(f"Created role {role!r}")
        return role

    async def _ensure_unique_name(
        self,
        db: AsyncSession,
        name: str,
        organization_kind: Optional[str],
        organization_id: Optional[int],
        exclude_id: Optional[int] = None,
    ) -> None:
        stmt = select(Role.id).where(Role.name == name)
        if organization_kind is None:
            stmt = stmt.where(Role.organization_kind.is_(None))
        else:
            stmt = stmt.where(Role.organization_kind == organization_kind, Role.organization_id == organization_id)
        if exclude_id is not None:
            stmt = stmt.where(Role.id != exclude_id)
        if (await db.execute(stmt)).first() is not None:
            raise ConflictError(f"Role name already in use: {name}")

    async def update_role(
        self,
        db: AsyncSession,
        uuid: str,
        payload: RoleUpdate,
        actor_id: Optional[str] = None,
    ) -> Role:
        role = await self.get_role(db, uuid)
        changes = payload.model_dump(exclude_unset=True)

        allowed = PROTECTED_ROLE_FIELDS.get(role.type)
        if allowed is not None and set(changes) - allowed:
            raise ForbiddenError(
                f"Only {', '.join(sorted(allowed))} can be changed on a {role.type.value} role"
            )

        if actor_id is not None and not self.bypass:
            hierarchy = await self.validation.ensure_can_modify_role(db, actor_id, role, "update")
            if "permissions" in changes:
                await self.validation.validate_can_grant_permissions(db, actor_id, changes["permissions"])
            if hierarchy and "order" in changes:
                await self._ensure_order_below_actor(
                    db, actor_id, [changes["order"]], role.organization_kind, role.organization_id
                )

        if "permissions" in changes:
            validate_permissions_for_scope(changes["permissions"], role.organization_kind)
            self._warn_unmet_dependencies(role.name, changes["permissions"], role.organization_kind)
        if "name" in changes:
            await self._ensure_unique_name(
                db, changes["name"], role.organization_kind, role.organization_id, exclude_id=role.id
            )

        permissions_changed = "permissions" in changes and list(changes["permissions"]) != list(role.permissions or [])
        for field, value in changes.items():
            setattr(role, field, list(value) if field == "permissions" else value)
        try:
            await db.commit()
        except IntegrityError as exc:
            await db.rollback()
            raise ConflictError("Role name already in use") from exc
        await db.refresh(role)

        if permissions_changed:
            await self.claims.invalidate_claims_for_role(db, role.id)
        log.info(f"Updated role {role!r}: {sorted(changes)}")
        return role

    async def delete_role(self, db: AsyncSession, uuid: str, actor_id: Optional[str] = None) -> None:
        role = await self.get_role(db, uuid)
        if role.type != RoleType.CUSTOM:
            raise ForbiddenError(f"The {role.type.value} role is managed by the system and cannot be deleted")

        if actor_id is not None and not self.bypass:
            await self.validation.ensure_can_modify_role(db, actor_id, role, "delete")

        holders = await self.claims.get_role_holder_ids(db, role.id)
        await db.execute(delete(UserRole).where(UserRole.role_id == role.id))
        await db.delete(role)
        await db.commit()
        # Holders lost a role, so their role summaries are stale too
        await self.claims.invalidate_users(db, holders, include_roles=True)
        log.info(f"Deleted role {uuid} held by {len(holders)} user(s)")

    async def reorder_roles(self, db: AsyncSession, payload: RoleReorder, actor_id: Optional[str] = None) -> int:
        """
        Set new orders for roles of one hierarchy.

        Duplicate target orders are rejected with BadRequestError, orders used
        by roles outside the batch with ConflictError. Role content does not
        change, so no claims are invalidated.
        """
        organization_id = await self.resolve_scope(db, payload.organization_kind, payload.organization_uuid)
        updates = {item.uuid: item.order for item in payload.roles}
        if len(updates) != len(payload.roles):
            raise BadRequestError("A role can appear only once in a reorder")

        stmt = select(Role).where(Role.uuid.in_(list(updates)))
        if payload.organization_kind is None:
            stmt = stmt.where(Role.organization_kind.is_(None))
        else:
            stmt = stmt.where(
                Role.organization_kind == payload.organization_kind,
                Role.organization_id == organization_id,
            )
        roles = list((await db.execute(stmt)).scalars().all())
        if len(roles) != len(updates):
            raise NotFoundError("Some roles were not found in this hierarchy")

        if actor_id is not None and not self.bypass:
            if await self.validation.ensure_can_reorder_roles(db, actor_id, payload.organization_kind, organization_id):
                current = [role.order for role in roles]
                await self._ensure_order_below_actor(
                    db, actor_id, current + list(updates.values()), payload.organization_kind, organization_id
                )

        targets = list(updates.values())
        duplicates = sorted({order for order in targets if targets.count(order) > 1})
        if duplicates:
            raise BadRequestError(f"The same order cannot be given to several roles: {duplicates}")

        conflict_stmt = select(Role.name, Role.order).where(
            Role.uuid.not_in(list(updates)),
            Role.order.in_(targets),
        )
        if payload.organization_kind is None:
            conflict_stmt = conflict_stmt.where(Role.organization_kind.is_(None))
        else:
            conflict_stmt = conflict_stmt.where(
                Role.organization_kind == payload.organization_kind,
                Role.organization_id == organization_id,
            )
        conflicts = (await db.execute(conflict_stmt)).all()
        if conflicts:
            names = ", ".join(f"{row.name} (order {row.order})" for row in conflicts)
            raise ConflictError(f"These orders are already used by other roles: {names}")

        for role in roles:
            role.order = updates[role.uuid]
        await db.commit()
        log.info(f"Reordered {len(roles)} role(s) in {payload.organization_kind or 'global'} hierarchy")
        return len(roles)

    # ========================================================================
    # Bootstrap
    # ========================================================================

    async def ensure_global_default_roles(self, db: AsyncSession) -> List[Role]:
        """Create the global BASIC and ADMIN roles when missing. Returns the ones created."""
        result = await db.execute(
            select(Role.type).where(Role.organization_kind.is_(None), Role.type.in_(list(GLOBAL_DEFAULT_ROLES)))
        )
        existing = set(result.scalars().all())

        created = []
        for role_type, definition in GLOBAL_DEFAULT_ROLES.items():
            if role_type in existing:
                continue
            created.append(Role(
                type=definition.type,
                name=definition.name,
                description=definition.description,
                permissions=list(definition.permissions),
                order=definition.order,
            ))
        if created:
            db.add_all(created)
            await db.commit()
            log.info(f"Created global default roles: {[role.name for role in created]}")
        return created

    async def get_global_role(self, db: AsyncSession, role_type: RoleType) -> Optional[Role]:
        result = await db.execute(
            select(Role).where(Role.organization_kind.is_(None), Role.type == role_type).order_by(Role.id)
        )
        return result.scalars().first()
