"""
Claims cache and invalidation.

Read path:  memory cache -> users.claims snapshot -> recompute and store.
Invalidate: NULL the snapshot and commit first, then drop the memory entry.

Memory-cache failures during invalidation are logged and swallowed: the NULL
snapshot already forces the next read to recompute.
"""
import asyncio
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from authz.core import config
from authz.core.cache import MemoryCache
from authz.errors import AuthorizationError
from authz.features.claims.calculator import ClaimsCalculator, ClaimsResult
from authz.features.claims.schemas import BatchItemResult
from authz.features.permissions.catalog import WILDCARD
from authz.features.permissions.validators import is_allowed_in_scope
from authz.features.permissions.wildcards import matches_wildcard
from authz.features.roles.models import UserRole
from authz.features.users.models import User
from authz.utils import get_logger


log = get_logger(__name__)

REFRESH_BATCH_SIZE = 50


def claims_cache_key(user_id: str) -> str:
    return f"user:{user_id}:claims"


def has_permission(
    claims: Dict[str, Any],
    permission: str,
    organization_uuid: Optional[str] = None,
    organization_kind: Optional[str] = None,
) -> bool:
    """
    Evaluate ``permission`` against a claims value.

    A matching global claim only grants when the permission is usable in global
    scope, so a global ``users-members:*`` does not reach company-only keys.
    An organization claim likewise requires the permission to be usable in
    that kind's scope. ``*`` grants everything in the scope it appears in.
    """
    for granted in claims.get("global", []):
        if matches_wildcard(permission, granted):
            if granted == WILDCARD or is_allowed_in_scope(permission, None):
                return True

    if organization_uuid and organization_kind:
        kind = getattr(organization_kind, "value", organization_kind)
        scope = claims.get("organizations", {}).get(kind, {}).get(organization_uuid)
        for granted in scope or []:
            if matches_wildcard(permission, granted):
                if granted == WILDCARD or is_allowed_in_scope(permission, kind):
                    return True

    return False


class ClaimsService:
    def __init__(self, cache: MemoryCache, calculator: ClaimsCalculator, ttl: int = config.CLAIMS_CACHE_TTL):
        self.cache = cache
        self.calculator = calculator
        self.ttl = ttl

    # ========================================================================
    # Read path
    # ========================================================================

    async def get_claims(self, db: AsyncSession, user_id: str) -> Dict[str, Any]:
        cache_key = claims_cache_key(user_id)
        cached = await self.cache.get(cache_key)
        if cached is not None:
            log.debug(f"Claims cache hit for user {user_id}")
            return cached

        result = await db.execute(
            select(User.claims, User.roles).where(User.id == user_id)
        )
        row = result.first()
        if row is not None and row.claims is not None:
            await self.cache.set(cache_key, row.claims, self.ttl)
            return row.claims

        log.debug(f"Recomputing claims for user {user_id}")
        computed = await self.calculator.calculate(db, user_id, row.roles if row is not None else None)
        await self._save(db, user_id, computed)
        return computed.claims

    async def get_role_infos(self, db: AsyncSession, user_id: str) -> List[Dict[str, str]]:
        """Persisted role summary, recomputed together with claims when missing."""
        result = await db.execute(select(User.roles).where(User.id == user_id))
        roles = result.scalar_one_or_none()
        if roles is not None:
            return roles
        computed = await self.calculator.calculate(db, user_id)
        await self._save(db, user_id, computed)
        return computed.roles

    async def _save(self, db: AsyncSession, user_id: str, computed: ClaimsResult) -> None:
        # Committed by the caller's unit of work
        await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(claims=computed.claims, roles=computed.roles)
        )
        await self.cache.set(claims_cache_key(user_id), computed.claims, self.ttl)

    async def refresh_user_claims(self, db: AsyncSession, user_id: str) -> Dict[str, Any]:
        """Recompute from scratch, role summary included, and persist."""
        computed = await self.calculator.calculate(db, user_id)
        await self._save(db, user_id, computed)
        await db.commit()
        return computed.claims

    async def refresh_users_claims(self, db: AsyncSession, user_ids: Iterable[str]) -> List[BatchItemResult]:
        """
        Refresh many users in batches of fifty, committing per batch.

        A failure is recorded for that user and the batch carries on.
        """
        user_ids = list(dict.fromkeys(user_ids))
        results: List[BatchItemResult] = []
        for start in range(0, len(user_ids), REFRESH_BATCH_SIZE):
            for user_id in user_ids[start:start + REFRESH_BATCH_SIZE]:
                try:
                    await self.refresh_user_claims(db, user_id)
                except (SQLAlchemyError, AuthorizationError) as exc:
                    await db.rollback()
                    log.exception(f"Claims refresh failed for user {user_id}")
                    results.append(BatchItemResult(id=user_id, ok=False, error=str(exc)))
                else:
                    results.append(BatchItemResult(id=user_id, ok=True))
        return results

    # ========================================================================
    # Invalidation
    # ========================================================================

    async def invalidate_user_claims(self, db: AsyncSession, user_id: str) -> None:
        """Claims only. Use when a role's content changed but assignments did not."""
        await self._invalidate_one(db, user_id, include_roles=False)

    async def invalidate_user_claims_and_roles(self, db: AsyncSession, user_id: str) -> None:
        """Claims and role summary. Use after a role was granted or revoked."""
        await self._invalidate_one(db, user_id, include_roles=True)

    async def _invalidate_one(self, db: AsyncSession, user_id: str, include_roles: bool) -> None:
        values = {"claims": None}
        if include_roles:
            values["roles"] = None
        try:
            await db.execute(update(User).where(User.id == user_id).values(**values))
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            log.exception(f"Failed to null the claims snapshot of user {user_id}")
        await self._safe_cache_delete(claims_cache_key(user_id))

    async def invalidate_users(
        self,
        db: AsyncSession,
        user_ids: Iterable[str],
        include_roles: bool = False,
    ) -> List[BatchItemResult]:
        """One snapshot UPDATE for every user, then independent cache deletes."""
        user_ids = list(dict.fromkeys(user_ids))
        if not user_ids:
            return []

        values = {"claims": None}
        if include_roles:
            values["roles"] = None
        db_error = None
        try:
            await db.execute(update(User).where(User.id.in_(user_ids)).values(**values))
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            log.exception(f"Failed to invalidate claims snapshots for {len(user_ids)} users")
            db_error = str(exc)

        outcomes = await asyncio.gather(
            *(self.cache.delete(claims_cache_key(user_id)) for user_id in user_ids),
            return_exceptions=True,
        )

        results = []
        for user_id, outcome in zip(user_ids, outcomes):
            if isinstance(outcome, Exception):
                log.error(f"Failed to drop cached claims for user {user_id}: {outcome}")
                results.append(BatchItemResult(id=user_id, ok=False, error=str(outcome)))
            elif db_error is not None:
                results.append(BatchItemResult(id=user_id, ok=False, error=db_error))
            else:
                results.append(BatchItemResult(id=user_id, ok=True))
        return results

    async def invalidate_claims_for_role(self, db: AsyncSession, role_id: int) -> List[BatchItemResult]:
        """Claims only for every holder of the role; their role summary is still valid."""
        user_ids = await self.get_role_holder_ids(db, role_id)
        return await self.invalidate_users(db, user_ids, include_roles=False)

    async def get_role_holder_ids(self, db: AsyncSession, role_id: int) -> List[str]:
        result = await db.execute(select(UserRole.user_id).where(UserRole.role_id == role_id))
        return list(result.scalars().all())

    async def invalidate_all_claims(self, db: AsyncSession) -> None:
        """Every user's claims. Role summaries are preserved."""
        try:
            await db.execute(update(User).values(claims=None))
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            log.exception("Failed to invalidate all claims snapshots")
        await self._safe_cache_delete("user:*:claims")
        log.info("Invalidated claims for every user")

    async def _safe_cache_delete(self, key: str) -> None:
        try:
            await self.cache.delete(key)
        except Exception:
            log.exception(f"Cache delete failed for {key}")
