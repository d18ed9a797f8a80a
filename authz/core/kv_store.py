"""
Namespaced key-value store backed by the ``kv_store`` table with a memory-cache front.

The authorization engine uses it for a single record: the system owner's user id,
stored non-expiring under the ``authorization`` namespace.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from sqlalchemy import JSON, DateTime, String, Text, UniqueConstraint, delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from authz.core import config
from authz.core.cache import MemoryCache
from authz.core.database.base import Base, TimestampMixin, utcnow
from authz.utils import get_logger


log = get_logger(__name__)

AUTH_KV_NAMESPACE = "authorization"
SYSTEM_OWNER_KEY = "system:owner"


class KVEntry(Base, TimestampMixin):
    __tablename__ = "kv_store"
    __table_args__ = (UniqueConstraint("key", "namespace", name="uq_kv_store_key_namespace"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    namespace: Mapped[str] = mapped_column(String(100), nullable=False, default="default")
    value: Mapped[Any] = mapped_column(JSON, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # None means the entry never expires
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<KVEntry(namespace={self.namespace!r}, key={self.key!r})>"


class KVStore:
    """
    Read-through key-value store.

    Reads go memory cache -> table (expired rows ignored). Writes upsert the row,
    commit, then refresh the cached copy.
    """

    CACHE_PREFIX = "kvstore"

    def __init__(self, cache: MemoryCache, default_ttl: int = config.KV_STORE_DEFAULT_TTL):
        self.cache = cache
        self.default_ttl = default_ttl

    def _cache_key(self, key: str, namespace: str) -> str:
        return f"{self.CACHE_PREFIX}:{namespace}:{key}"

    @staticmethod
    def _live_filter():
        return or_(KVEntry.expires_at.is_(None), KVEntry.expires_at > utcnow())

    async def set(
        self,
        db: AsyncSession,
        key: str,
        value: Any,
        namespace: str = "default",
        ttl: Optional[int] = None,
        description: Optional[str] = None,
    ) -> None:
        """Upsert ``key``. ``ttl=None`` uses the default lifetime, ``ttl=0`` never expires."""
        ttl = self.default_ttl if ttl is None else ttl
        expires_at = utcnow() + timedelta(seconds=ttl) if ttl > 0 else None

        result = await db.execute(
            select(KVEntry).where(KVEntry.key == key, KVEntry.namespace == namespace)
        )
        entry = result.scalars().first()
        if entry is None:
            db.add(KVEntry(
                key=key,
                namespace=namespace,
                value=value,
                description=description,
                expires_at=expires_at,
            ))
        else:
            entry.value = value
            entry.expires_at = expires_at
            if description is not None:
                entry.description = description
        await db.commit()

        await self.cache.set(self._cache_key(key, namespace), value, ttl or self.default_ttl)
        log.debug("KV set %s:%s (ttl=%s)", namespace, key, ttl)

    async def get(self, db: AsyncSession, key: str, namespace: str = "default") -> Any:
        cache_key = self._cache_key(key, namespace)
        cached = await self.cache.get(cache_key)
        if cached is not None:
            return cached

        result = await db.execute(
            select(KVEntry).where(
                KVEntry.key == key,
                KVEntry.namespace == namespace,
                self._live_filter(),
            )
        )
        entry = result.scalars().first()
        if entry is None:
            return None

        ttl = self.default_ttl
        if entry.expires_at is not None:
            expires_at = entry.expires_at
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=utcnow().tzinfo)
            ttl = max(1, int((expires_at - utcnow()).total_seconds()))
        await self.cache.set(cache_key, entry.value, ttl)
        return entry.value

    async def exists(self, db: AsyncSession, key: str, namespace: str = "default") -> bool:
        return await self.get(db, key, namespace) is not None

    async def delete(self, db: AsyncSession, key: str, namespace: str = "default") -> bool:
        result = await db.execute(
            delete(KVEntry).where(KVEntry.key == key, KVEntry.namespace == namespace)
        )
        await db.commit()
        await self.cache.delete(self._cache_key(key, namespace))
        return (result.rowcount or 0) > 0

    async def list_entries(self, db: AsyncSession, namespace: str = "default") -> List[Dict[str, Any]]:
        result = await db.execute(
            select(KVEntry)
            .where(KVEntry.namespace == namespace, self._live_filter())
            .order_by(KVEntry.key)
        )
        return [
            {"key": entry.key, "value": entry.value, "expires_at": entry.expires_at}
            for entry in result.scalars().all()
        ]

    async def clear_namespace(self, db: AsyncSession, namespace: str) -> int:
        result = await db.execute(delete(KVEntry).where(KVEntry.namespace == namespace))
        await db.commit()
        await self.cache.delete(self._cache_key("*", namespace))
        log.info("Cleared KV namespace %s", namespace)
        return result.rowcount or 0
