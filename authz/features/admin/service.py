"""
Maintenance operations on the authorization caches and the system owner record.
"""
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from authz.core.kv_store import AUTH_KV_NAMESPACE, SYSTEM_OWNER_KEY, KVStore
from authz.errors import NotFoundError
from authz.features.claims.service import ClaimsService
from authz.features.permissions.wildcards import WildcardExpander
from authz.features.users.models import User
from authz.utils import get_logger


log = get_logger(__name__)


class AdminService:
    def __init__(self, claims: ClaimsService, wildcards: WildcardExpander, kv_store: KVStore):
        self.claims = claims
        self.wildcards = wildcards
        self.kv_store = kv_store

    def clear_wildcard_cache(self) -> int:
        cleared = self.wildcards.clear()
        log.info(f"Cleared {cleared} wildcard expansion entries")
        return cleared

    async def invalidate_all_claims(self, db: AsyncSession) -> None:
        await self.claims.invalidate_all_claims(db)
        log.info("Invalidated claims of every user")

    async def get_system_owner(self, db: AsyncSession) -> Optional[str]:
        return await self.kv_store.get(db, SYSTEM_OWNER_KEY, AUTH_KV_NAMESPACE)

    async def set_system_owner(self, db: AsyncSession, user_id: str) -> Optional[str]:
        """
        Record ``user_id`` as the system owner and return the previous owner.

        The record never expires. Both the previous and the new owner get
        their claims recomputed on next read.
        """
        result = await db.execute(select(User.id).where(User.id == user_id))
        if result.first() is None:
            raise NotFoundError("User not found")

        previous = await self.get_system_owner(db)
        await self.kv_store.set(
            db, SYSTEM_OWNER_KEY, user_id, AUTH_KV_NAMESPACE, ttl=0, description="System owner user id",
        )
        if previous and previous != user_id:
            await self.claims.invalidate_user_claims_and_roles(db, previous)
        await self.claims.invalidate_user_claims_and_roles(db, user_id)
        log.info(f"System owner set to {user_id} (was {previous})")
        return previous
