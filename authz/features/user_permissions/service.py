"""
Direct permission grants.

A direct grant adds one permission to a user's claims, globally or inside one
organization, without a role. Grants obey the same scope validation and grant
guardrail as role permissions.
"""
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from authz.core import config
from authz.errors import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from authz.features.claims.service import ClaimsService
from authz.features.organizations.registry import OrganizationAdapterRegistry
from authz.features.permissions.catalog import WILDCARD
from authz.features.permissions.checks import PermissionChecks
from authz.features.permissions.validators import validate_permissions_for_scope
from authz.features.user_permissions.models import UserPermission
from authz.features.user_permissions.schemas import DirectPermissionCreate, DirectPermissionResponse
from authz.features.users.models import User
from authz.utils import get_logger


log = get_logger(__name__)


class UserPermissionsService:
    def __init__(
        self,
        claims: ClaimsService,
        checks: PermissionChecks,
        registry: OrganizationAdapterRegistry,
        bypass: Optional[bool] = None,
    ):
        self.claims = claims
        self.checks = checks
        self.registry = registry
        self.bypass = config.AUTH_BYPASS_ENABLED if bypass is None else bypass

    async def _ensure_user(self, db: AsyncSession, user_id: str) -> None:
        result = await db.execute(select(User.id).where(User.id == user_id))
        if result.first() is None:
            raise NotFoundError("User not found")

    async def _resolve_organization(
        self,
        db: AsyncSession,
        organization_kind: Optional[str],
        organization_uuid: Optional[str],
    ) -> Optional[int]:
        if (organization_kind is None) != (organization_uuid is None):
            raise BadRequestError("organization_kind and organization_uuid must be given together")
        if organization_kind is None:
            return None
        organization_id = await self.registry.require(organization_kind).get_organization_id(db, organization_uuid)
        if organization_id is None:
            raise NotFoundError(f"Organization not found: {organization_uuid}")
        return organization_id

    async def _ensure_can_grant(self, db: AsyncSession, actor_id: str, permission: str) -> None:
        """
        Only a literal key from the actor's expanded global permissions may be
        granted. Group wildcards such as ``posts:*`` never appear in that list,
        so only a ``*`` holder can hand them out directly.
        """
        if self.bypass:
            return
        claims = await self.claims.get_claims(db, actor_id)
        if WILDCARD in claims["global"]:
            return
        granted = await self.checks.get_all_granted_permissions(db, actor_id)
        if permission not in granted:
            log.debug(f"User {actor_id} cannot grant {permission} directly")
            raise ForbiddenError()

    async def get_user_permissions(self, db: AsyncSession, user_id: str) -> Dict[str, Any]:
        """Effective claims of the user."""
        await self._ensure_user(db, user_id)
        return await self.claims.get_claims(db, user_id)

    async def add_permission(
        self,
        db: AsyncSession,
        user_id: str,
        payload: DirectPermissionCreate,
        actor_id: str,
    ) -> UserPermission:
        await self._ensure_user(db, user_id)
        validate_permissions_for_scope([payload.permission], payload.organization_kind)
        organization_id = await self._resolve_organization(db, payload.organization_kind, payload.organization_uuid)
        await self._ensure_can_grant(db, actor_id, payload.permission)

        existing = await self._find(db, user_id, payload.permission, payload.organization_kind, organization_id)
        if existing is not None:
            raise ConflictError(f"User already has the permission {payload.permission}")

        grant = UserPermission(
            user_id=user_id,
            permission=payload.permission,
            organization_kind=payload.organization_kind,
            organization_id=organization_id,
        )
        db.add(grant)
        try:
            await db.commit()
        except IntegrityError as exc:
            await db.rollback()
            raise ConflictError(f"User already has the permission {payload.permission}") from exc
        await db.refresh(grant)

        await self.claims.invalidate_user_claims(db, user_id)
        log.info(f"User {actor_id} granted {payload.permission} directly to user {user_id}")
        return grant

    async def remove_permission(
        self,
        db: AsyncSession,
        user_id: str,
        permission: str,
        organization_kind: Optional[str] = None,
        organization_uuid: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> None:
        await self._ensure_user(db, user_id)
        organization_id = await self._resolve_organization(db, organization_kind, organization_uuid)

        grant = await self._find(db, user_id, permission, organization_kind, organization_id)
        if grant is None:
            raise NotFoundError(f"User has no direct grant of {permission}")

        await db.delete(grant)
        await db.commit()
        await self.claims.invalidate_user_claims(db, user_id)
        log.info(f"User {actor_id} removed direct grant {permission} from user {user_id}")

    async def _find(
        self,
        db: AsyncSession,
        user_id: str,
        permission: str,
        organization_kind: Optional[str],
        organization_id: Optional[int],
    ) -> Optional[UserPermission]:
        stmt = select(UserPermission).where(
            UserPermission.user_id == user_id,
            UserPermission.permission == permission,
        )
        if organization_kind is None:
            stmt = stmt.where(UserPermission.organization_kind.is_(None))
        else:
            stmt = stmt.where(
                UserPermission.organization_kind == organization_kind,
                UserPermission.organization_id == organization_id,
            )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_direct_permissions(self, db: AsyncSession, user_id: str) -> List[DirectPermissionResponse]:
        """Direct grants with organization ids mapped back to UUIDs, newest first."""
        await self._ensure_user(db, user_id)
        result = await db.execute(
            select(UserPermission)
            .where(UserPermission.user_id == user_id)
            .order_by(UserPermission.created_at.desc(), UserPermission.id.desc())
        )
        grants = list(result.scalars().all())

        responses = []
        for grant in grants:
            organization_uuid = None
            if grant.organization_kind is not None:
                adapter = self.registry.get(grant.organization_kind)
                if adapter is not None:
                    organization_uuid = await adapter.get_organization_uuid(db, grant.organization_id)
            responses.append(DirectPermissionResponse(
                permission=grant.permission,
                organization_kind=grant.organization_kind,
                organization_uuid=organization_uuid,
                created_at=grant.created_at,
            ))
        return responses
