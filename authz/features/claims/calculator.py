"""
Claims computation.

Builds a user's claims from their roles, direct grants and ownership:

    {"global": [...], "organizations": {kind: {org_uuid: [...]}}}

Wildcards are kept as-is and every scope is canonicalized, so ``*`` always
stands alone and ``g:*`` never sits next to another ``g:`` key.
"""
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from authz.features.claims.overrides import ClaimsOverrideStrategy
from authz.features.organizations.registry import OrganizationAdapterRegistry
from authz.features.permissions.catalog import WILDCARD, is_group_wildcard
from authz.features.permissions.wildcards import optimize_permission_set
from authz.features.roles.models import Role, UserRole
from authz.features.user_permissions.models import UserPermission
from authz.utils import get_logger


log = get_logger(__name__)


@dataclass
class ClaimsResult:
    claims: Dict[str, Any]
    roles: List[Dict[str, str]]


def empty_claims() -> Dict[str, Any]:
    return {"global": [], "organizations": {}}


def clean_organization_claims(organizations: Dict[str, Dict[str, Iterable[str]]]) -> Dict[str, Dict[str, List[str]]]:
    """Drop organizations without permissions and kinds without organizations."""
    cleaned = {}
    for kind, orgs in organizations.items():
        kept = {uuid: sorted(perms) for uuid, perms in orgs.items() if perms}
        if kept:
            cleaned[kind] = kept
    return cleaned


def _is_wildcard(key: str) -> bool:
    return key == WILDCARD or is_group_wildcard(key)


class ClaimsCalculator:
    def __init__(self, registry: OrganizationAdapterRegistry, overrides: Sequence[ClaimsOverrideStrategy]):
        self.registry = registry
        self.overrides = list(overrides)

    async def _map_uuids(self, db: AsyncSession, ids_by_kind: Dict[str, Set[int]]) -> Dict[str, Dict[int, str]]:
        mappings: Dict[str, Dict[int, str]] = {}
        for kind, organization_ids in ids_by_kind.items():
            adapter = self.registry.get(kind)
            if adapter is None:
                log.warning(f"No adapter registered for organization kind {kind}")
                mappings[kind] = {}
                continue
            mappings[kind] = await adapter.get_organization_uuids(db, organization_ids)
        return mappings

    async def calculate(
        self,
        db: AsyncSession,
        user_id: str,
        cached_roles: Optional[List[Dict[str, str]]] = None,
    ) -> ClaimsResult:
        """
        Recompute claims for ``user_id``.

        ``cached_roles`` is the persisted role summary. It is reused when it is
        non-empty and its length matches the roles currently held, which is the
        case after a role's permissions were edited but no assignment changed.
        """
        result = await db.execute(
            select(UserRole)
            .join(Role, Role.id == UserRole.role_id)
            .where(UserRole.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        user_roles = result.scalars().all()

        rebuild_roles = not cached_roles or len(cached_roles) != len(user_roles)
        role_infos: List[Dict[str, str]] = [] if rebuild_roles else list(cached_roles)

        role_org_ids: Dict[str, Set[int]] = {}
        for user_role in user_roles:
            role = user_role.role
            if role.organization_kind is not None and role.organization_id is not None:
                role_org_ids.setdefault(role.organization_kind, set()).add(role.organization_id)
        role_uuid_map = await self._map_uuids(db, role_org_ids)

        # Global roles
        global_claims: Set[str] = set()
        for user_role in user_roles:
            role = user_role.role
            if rebuild_roles:
                role_infos.append(self._role_info(role, role_uuid_map))
            if role.organization_kind is None:
                global_claims.update(role.permissions or [])
        global_claims = optimize_permission_set(global_claims)

        # Organization roles
        organization_claims: Dict[str, Dict[str, Set[str]]] = {}
        for user_role in user_roles:
            role = user_role.role
            if role.organization_kind is None:
                continue
            uuid = role_uuid_map.get(role.organization_kind, {}).get(role.organization_id)
            if uuid is None:
                continue
            scope = organization_claims.setdefault(role.organization_kind, {}).setdefault(uuid, set())
            scope.update(role.permissions or [])
            organization_claims[role.organization_kind][uuid] = optimize_permission_set(scope)

        # Direct grants
        result = await db.execute(select(UserPermission).where(UserPermission.user_id == user_id))
        direct = result.scalars().all()

        direct_org_ids: Dict[str, Set[int]] = {}
        for grant in direct:
            if grant.organization_kind is not None and grant.organization_id is not None:
                direct_org_ids.setdefault(grant.organization_kind, set()).add(grant.organization_id)
        direct_uuid_map = await self._map_uuids(db, direct_org_ids)

        touched: Dict[str, Set[str]] = {}
        for kind, orgs in organization_claims.items():
            touched.setdefault(kind, set()).update(orgs)
        for kind, mapping in direct_uuid_map.items():
            touched.setdefault(kind, set()).update(mapping.values())

        # Overrides, highest precedence first
        owned: Dict[str, Dict[str, List[str]]] = {}
        for strategy in self.overrides:
            override = await strategy.resolve(db, user_id, touched)
            if override is None:
                continue
            if override.exclusive:
                return ClaimsResult(claims=override.to_claims(), roles=role_infos)
            for kind, orgs in override.organizations.items():
                for uuid, permissions in orgs.items():
                    owned.setdefault(kind, {}).setdefault(uuid, list(permissions))
            if override.global_permissions is not None:
                global_claims = set(override.global_permissions)

        for kind, orgs in owned.items():
            for uuid, permissions in orgs.items():
                organization_claims.setdefault(kind, {})[uuid] = set(permissions)

        for grant in direct:
            key = grant.permission
            if grant.organization_kind is None:
                if WILDCARD in global_claims:
                    continue
                global_claims.add(key)
                if _is_wildcard(key):
                    global_claims = optimize_permission_set(global_claims)
                continue

            kind = grant.organization_kind
            uuid = direct_uuid_map.get(kind, {}).get(grant.organization_id)
            if uuid is None:
                log.warning(f"UUID not found for {kind} id {grant.organization_id}, skipping {key}")
                continue
            if uuid in owned.get(kind, {}):
                continue
            scope = organization_claims.setdefault(kind, {}).setdefault(uuid, set())
            if WILDCARD in scope:
                continue
            scope.add(key)
            if _is_wildcard(key):
                organization_claims[kind][uuid] = optimize_permission_set(scope)

        claims = {
            "global": sorted(global_claims),
            "organizations": clean_organization_claims(organization_claims),
        }
        return ClaimsResult(claims=claims, roles=role_infos)

    @staticmethod
    def _role_info(role: Role, uuid_map: Dict[str, Dict[int, str]]) -> Dict[str, str]:
        if role.organization_kind is None:
            return {"uuid": role.uuid}
        uuid = uuid_map.get(role.organization_kind, {}).get(role.organization_id)
        if uuid is None:
            log.warning(f"UUID mapping failed for role {role.uuid} ({role.organization_kind}:{role.organization_id})")
            return {"uuid": role.uuid}
        return {
            "uuid": role.uuid,
            "organization_kind": role.organization_kind,
            "organization_uuid": uuid,
        }
