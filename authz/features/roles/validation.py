"""
Role hierarchy, grant guardrail and role access rules.

Hierarchies are separate: the global one (no organization) and one per
organization instance. An actor manages only roles whose order is strictly
below their own highest order in the same hierarchy.

Every authorization failure raises ForbiddenError with the generic message.
"""
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from authz.core import config
from authz.errors import ForbiddenError
from authz.features.claims.service import ClaimsService, has_permission
from authz.features.organizations.registry import OrganizationAdapterRegistry
from authz.features.permissions import catalog
from authz.features.permissions.catalog import WILDCARD
from authz.features.permissions.wildcards import matches_any
from authz.features.roles.models import Role, UserRole
from authz.utils import get_logger


log = get_logger(__name__)

# action -> (global, own organization, all organizations)
_MANAGE_PERMISSIONS = {
    "create": (
        catalog.ROLE_MANAGE_GLOBAL_CREATE,
        catalog.ROLE_MANAGE_ORGANIZATION_CREATE,
        catalog.ROLE_MANAGE_ALL_ORGANIZATIONS_CREATE,
    ),
    "update": (
        catalog.ROLE_MANAGE_GLOBAL_UPDATE,
        catalog.ROLE_MANAGE_ORGANIZATION_UPDATE,
        catalog.ROLE_MANAGE_ALL_ORGANIZATIONS_UPDATE,
    ),
    "delete": (
        catalog.ROLE_MANAGE_GLOBAL_DELETE,
        catalog.ROLE_MANAGE_ORGANIZATION_DELETE,
        catalog.ROLE_MANAGE_ALL_ORGANIZATIONS_DELETE,
    ),
    "reorder": (
        catalog.ROLE_MANAGE_GLOBAL_REORDER,
        catalog.ROLE_MANAGE_ORGANIZATION_REORDER,
        catalog.ROLE_MANAGE_ALL_ORGANIZATIONS_REORDER,
    ),
}


def is_organization_member(claims: Dict[str, Any], kind: str, organization_uuid: Optional[str]) -> bool:
    """Membership means at least one permission in that organization's claims."""
    if organization_uuid is None:
        return False
    return bool(claims.get("organizations", {}).get(kind, {}).get(organization_uuid))


class RoleValidationService:
    def __init__(
        self,
        claims: ClaimsService,
        registry: OrganizationAdapterRegistry,
        bypass: Optional[bool] = None,
    ):
        self.claims = claims
        self.registry = registry
        self.bypass = config.AUTH_BYPASS_ENABLED if bypass is None else bypass

    # ========================================================================
    # Hierarchy
    # ========================================================================

    async def get_user_highest_role_order(
        self,
        db: AsyncSession,
        user_id: str,
        organization_kind: Optional[str] = None,
        organization_id: Optional[int] = None,
    ) -> Optional[int]:
        stmt = (
            select(func.max(Role.order))
            .join(UserRole, UserRole.role_id == Role.id)
            .where(UserRole.user_id == user_id)
        )
        if organization_kind is None:
            stmt = stmt.where(Role.organization_kind.is_(None), Role.organization_id.is_(None))
        else:
            stmt = stmt.where(
                Role.organization_kind == organization_kind,
                Role.organization_id == organization_id,
            )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def should_skip_hierarchy_check(self, db: AsyncSession, actor_id: str) -> bool:
        """``*`` or the global assign-all-organizations permission bypasses the hierarchy."""
        claims = await self.claims.get_claims(db, actor_id)
        return WILDCARD in claims["global"] or has_permission(
            claims, catalog.USERS_ROLES_ASSIGN_ALL_ORGANIZATIONS
        )

    async def ensure_higher_order_than_role(
        self,
        db: AsyncSession,
        actor_id: str,
        role_order: int,
        organization_kind: Optional[str] = None,
        organization_id: Optional[int] = None,
        skip_hierarchy_check: bool = False,
    ) -> None:
        if self.bypass or skip_hierarchy_check:
            return

        highest = await self.get_user_highest_role_order(db, actor_id, organization_kind, organization_id)
        if highest is None:
            log.debug(f"User {actor_id} holds no role in hierarchy {organization_kind}:{organization_id}")
            raise ForbiddenError()
        if role_order >= highest:
            log.debug(f"User {actor_id} (order {highest}) cannot manage order {role_order}")
            raise ForbiddenError()

    # ========================================================================
    # Grant guardrail
    # ========================================================================

    async def validate_can_grant_permissions(self, db: AsyncSession, actor_id: str, permissions: Iterable[str]) -> None:
        """Every permission must be covered by the actor's own global claims."""
        if self.bypass:
            return
        claims = await self.claims.get_claims(db, actor_id)
        held = claims["global"]
        if WILDCARD in held:
            return

        missing = [p for p in permissions if not matches_any(p, held)]
        if missing:
            log.debug(f"User {actor_id} cannot grant permissions they do not hold: {missing}")
            raise ForbiddenError()

    # ========================================================================
    # Role management rights
    # ========================================================================

    async def _organization_uuid(self, db: AsyncSession, kind: str, organization_id: int) -> str:
        adapter = self.registry.require_registered(kind)
        uuid = await adapter.get_organization_uuid(db, organization_id)
        if uuid is None:
            raise ForbiddenError()
        return uuid

    async def _ensure_can_manage(
        self,
        db: AsyncSession,
        actor_id: str,
        action: str,
        organization_kind: Optional[str],
        organization_id: Optional[int],
    ) -> bool:
        """
        Shared flow for create, update, delete and reorder.

        Global scope needs the global permission; a member of the organization
        needs the own-organization permission inside it; anybody else needs
        the all-organizations permission. Returns whether the role hierarchy
        applies to the actor: it does for global scope and for members, not
        for ``*`` holders or outsiders acting through an all-organizations
        permission.
        """
        global_key, own_key, all_key = _MANAGE_PERMISSIONS[action]
        claims = await self.claims.get_claims(db, actor_id)
        if WILDCARD in claims["global"]:
            return False

        if organization_kind is None or organization_id is None:
            if not has_permission(claims, global_key):
                raise ForbiddenError()
            return True

        uuid = await self._organization_uuid(db, organization_kind, organization_id)
        if is_organization_member(claims, organization_kind, uuid):
            if not has_permission(claims, own_key, uuid, organization_kind):
                raise ForbiddenError()
            return True
        if not has_permission(claims, all_key):
            raise ForbiddenError()
        return False

    async def ensure_can_create_role(
        self,
        db: AsyncSession,
        actor_id: str,
        organization_kind: Optional[str] = None,
        organization_id: Optional[int] = None,
    ) -> bool:
        """Returns whether the requested order must stay below the actor's own."""
        if self.bypass:
            return False
        return await self._ensure_can_manage(db, actor_id, "create", organization_kind, organization_id)

    async def ensure_can_modify_role(self, db: AsyncSession, actor_id: str, role: Role, action: str) -> bool:
        """``action`` is ``update`` or ``delete``. Checks the hierarchy against the role's current order."""
        if self.bypass:
            return False
        hierarchy = await self._ensure_can_manage(
            db, actor_id, action, role.organization_kind, role.organization_id
        )
        if hierarchy:
            await self.ensure_higher_order_than_role(
                db, actor_id, role.order, role.organization_kind, role.organization_id
            )
        return hierarchy

    async def ensure_can_reorder_roles(
        self,
        db: AsyncSession,
        actor_id: str,
        organization_kind: Optional[str] = None,
        organization_id: Optional[int] = None,
    ) -> bool:
        if self.bypass:
            return False
        return await self._ensure_can_manage(db, actor_id, "reorder", organization_kind, organization_id)

    # ========================================================================
    # Row-level access
    # ========================================================================

    async def _holds_role(self, db: AsyncSession, user_id: str, role_id: int) -> bool:
        result = await db.execute(
            select(UserRole.id).where(UserRole.user_id == user_id, UserRole.role_id == role_id)
        )
        return result.first() is not None

    async def can_access_role(self, db: AsyncSession, actor_id: str, role: Role) -> bool:
        """
        A role is visible to holders of the matching view permission, to members
        of its organization and always to users who hold it.
        """
        if self.bypass:
            return True
        claims = await self.claims.get_claims(db, actor_id)
        if WILDCARD in claims["global"]:
            return True

        if role.organization_kind is None:
            if has_permission(claims, catalog.ROLE_VIEW_SHOW_GLOBALS):
                return True
            return await self._holds_role(db, actor_id, role.id)

        adapter = self.registry.get(role.organization_kind)
        if adapter is None:
            return False
        uuid = await adapter.get_organization_uuid(db, role.organization_id)
        if uuid is None:
            return False
        if has_permission(claims, catalog.ROLE_VIEW_SHOW_ALL_ORGANIZATIONS):
            return True
        if is_organization_member(claims, role.organization_kind, uuid):
            return True
        return await self._holds_role(db, actor_id, role.id)

    async def ensure_can_access_role(self, db: AsyncSession, actor_id: str, role: Role) -> None:
        if not await self.can_access_role(db, actor_id, role):
            raise ForbiddenError()
