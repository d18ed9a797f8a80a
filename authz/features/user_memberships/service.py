"""
Cross-kind membership summary for a user.

Same tiers as claims: memory cache -> users.memberships snapshot -> ask every
registered adapter. Invalidation NULLs the snapshot before the cache entry.
"""
import asyncio
from typing import Any, Dict, List

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from authz.core import config
from authz.core.cache import MemoryCache
from authz.features.organizations.registry import OrganizationAdapterRegistry
from authz.features.users.models import User
from authz.utils import get_logger


log = get_logger(__name__)


def memberships_cache_key(user_id: str) -> str:
    return f"user:{user_id}:memberships"


def filter_memberships_by_kind(memberships: List[Dict[str, Any]], kind) -> List[Dict[str, Any]]:
    kind = getattr(kind, "value", kind)
    return [m for m in memberships if m.get("organization_kind") == kind]


def organization_uuids(memberships: List[Dict[str, Any]], kind) -> List[str]:
    return [m["organization_uuid"] for m in filter_memberships_by_kind(memberships, kind)]


class UserMembershipsService:
    def __init__(
        self,
        cache: MemoryCache,
        registry: OrganizationAdapterRegistry,
        ttl: int = config.MEMBERSHIPS_CACHE_TTL,
    ):
        self.cache = cache
        self.registry = registry
        self.ttl = ttl

    async def get_user_memberships(self, db: AsyncSession, user_id: str) -> List[Dict[str, Any]]:
        cache_key = memberships_cache_key(user_id)
        cached = await self.cache.get(cache_key)
        if cached is not None:
            return cached

        result = await db.execute(select(User.memberships).where(User.id == user_id))
        snapshot = result.scalar_one_or_none()
        if isinstance(snapshot, list):
            await self.cache.set(cache_key, snapshot, self.ttl)
            return snapshot

        memberships = await self._calculate(db, user_id)
        await db.execute(update(User).where(User.id == user_id).values(memberships=memberships))
        await self.cache.set(cache_key, memberships, self.ttl)
        return memberships

    async def _calculate(self, db: AsyncSession, user_id: str) -> List[Dict[str, Any]]:
        memberships: List[Dict[str, Any]] = []
        for adapter in self.registry.get_all():
            try:
                memberships.extend(await adapter.get_user_memberships(db, user_id))
            except SQLAlchemyError:
                # One broken kind must not hide the others
                log.exception(f"Failed to get {adapter.kind} memberships for user {user_id}")
        return memberships

    async def invalidate_user_memberships(self, db: AsyncSession, user_id: str) -> None:
        try:
            await db.execute(update(User).where(User.id == user_id).values(memberships=None))
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            log.exception(f"Failed to null the memberships snapshot of user {user_id}")
        try:
            await self.cache.delete(memberships_cache_key(user_id))
        except Exception:
            log.exception(f"Cache delete failed for memberships of user {user_id}")

    async def invalidate_memberships_for_organization(self, db: AsyncSession, kind, organization_id: int) -> None:
        """Every member of the organization, e.g. after an ownership transfer."""
        adapter = self.registry.get(kind)
        if adapter is None:
            log.error(f"Organization adapter not found for kind {kind}")
            return

        user_ids = await adapter.get_member_user_ids(db, organization_id)
        if not user_ids:
            return
        try:
            await db.execute(update(User).where(User.id.in_(user_ids)).values(memberships=None))
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            log.exception(f"Failed to invalidate membership snapshots for {kind}:{organization_id}")
        await asyncio.gather(
            *(self.cache.delete(memberships_cache_key(user_id)) for user_id in user_ids),
            return_exceptions=True,
        )
