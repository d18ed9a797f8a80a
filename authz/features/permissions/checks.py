"""
Runtime permission checks against a user's claims.

Every user-facing check honours ``AUTH_BYPASS_ENABLED``: when the flag is on
each check grants without looking at claims.
"""
from typing import Iterable, List, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from authz.core import config
from authz.errors import ForbiddenError, UnauthorizedError
from authz.features.claims.service import ClaimsService, has_permission
from authz.features.permissions.catalog import GLOBAL, WILDCARD
from authz.features.permissions.wildcards import WildcardExpander, matches_any
from authz.features.roles.models import Role
from authz.utils import get_logger


log = get_logger(__name__)


def is_permission_granted_to_role(role: Role, permission: str) -> bool:
    return matches_any(permission, role.permissions or [])


def ensure_role_has_permission(role: Role, permission: Optional[str]) -> None:
    if permission and not is_permission_granted_to_role(role, permission):
        raise ForbiddenError()


class PermissionChecks:
    def __init__(self, claims: ClaimsService, wildcards: WildcardExpander, bypass: Optional[bool] = None):
        self.claims = claims
        self.wildcards = wildcards
        self.bypass = config.AUTH_BYPASS_ENABLED if bypass is None else bypass

    async def is_granted(
        self,
        db: AsyncSession,
        user_id: Optional[str],
        permission: str,
        organization_uuid: Optional[str] = None,
        organization_kind: Optional[str] = None,
    ) -> bool:
        if not user_id:
            raise UnauthorizedError()
        if self.bypass:
            return True

        claims = await self.claims.get_claims(db, user_id)
        granted = has_permission(claims, permission, organization_uuid, organization_kind)
        log.debug(
            f"{'Granted' if granted else 'Denied'} {permission} to user {user_id}"
            f"{f' in {organization_kind}:{organization_uuid}' if organization_uuid else ''}"
        )
        return granted

    async def ensure_granted(
        self,
        db: AsyncSession,
        user_id: Optional[str],
        permission: Optional[str],
        organization_uuid: Optional[str] = None,
        organization_kind: Optional[str] = None,
    ) -> None:
        """Raise ForbiddenError with the generic message when not granted."""
        if not permission or self.bypass:
            return
        if not await self.is_granted(db, user_id, permission, organization_uuid, organization_kind):
            raise ForbiddenError()

    async def get_all_granted_permissions(self, db: AsyncSession, user_id: str) -> List[str]:
        """Global claims expanded to concrete keys usable in global scope."""
        if not user_id:
            raise UnauthorizedError()
        claims = await self.claims.get_claims(db, user_id)
        return self.wildcards.expand(claims["global"], GLOBAL)

    async def is_any_permission_granted_on_any_organization(
        self,
        db: AsyncSession,
        user_id: Optional[str],
        permissions: Union[str, Iterable[str]],
        organization_kind: Optional[str] = None,
    ) -> bool:
        """True when any of ``permissions`` is held globally or in at least one organization."""
        if not user_id:
            return False
        if self.bypass:
            return True

        keys = [permissions] if isinstance(permissions, str) else list(permissions)
        claims = await self.claims.get_claims(db, user_id)
        organizations = claims.get("organizations", {})
        if organization_kind is not None:
            kind = getattr(organization_kind, "value", organization_kind)
            scopes: List[List[str]] = list(organizations.get(kind, {}).values())
        else:
            scopes = [perms for orgs in organizations.values() for perms in orgs.values()]

        for key in keys:
            if matches_any(key, claims["global"]):
                return True
            if any(matches_any(key, scope) for scope in scopes):
                return True
        return False

    async def get_organization_aware_permissions(
        self,
        db: AsyncSession,
        user_id: Optional[str],
        organization_uuid: str,
        organization_kind: str,
    ) -> List[str]:
        """Global plus organization claims, expanded to keys usable in that kind's scope."""
        if not user_id:
            return []
        kind = getattr(organization_kind, "value", organization_kind)
        claims = await self.claims.get_claims(db, user_id)
        organization_perms = claims.get("organizations", {}).get(kind, {}).get(organization_uuid, [])
        raw = list(dict.fromkeys(list(claims["global"]) + list(organization_perms)))
        return self.wildcards.expand(raw, kind)

    async def can_access_organization(
        self,
        db: AsyncSession,
        user_id: Optional[str],
        organization_uuid: str,
        organization_kind: str,
        required_permission: str,
    ) -> bool:
        """A global grant of ``required_permission`` or any permission inside the organization."""
        if not user_id:
            return False
        if self.bypass:
            return True
        kind = getattr(organization_kind, "value", organization_kind)
        claims = await self.claims.get_claims(db, user_id)
        if matches_any(required_permission, claims["global"]):
            return True
        return bool(claims.get("organizations", {}).get(kind, {}).get(organization_uuid))

    async def has_cross_organization_access(self, db: AsyncSession, user_id: str) -> bool:
        """``*`` or any ``*-all-organizations`` key in the global claims."""
        claims = await self.claims.get_claims(db, user_id)
        return any(p == WILDCARD or "all-organizations" in p for p in claims["global"])
