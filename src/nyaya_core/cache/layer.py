"""TTL cache with content-hash lookup on top of the storage facade.

``get`` and ``get_by_hash`` are the only authority on expiry: an entry is
absent once ``now >= expires_at`` whether or not it is still stored. ``sweep``
only bounds storage size and is never needed for correct reads.

Timestamps come from the wall clock; changing the system time shifts every TTL.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

from pydantic import ValidationError

from nyaya_core.config import CacheConfig
from nyaya_core.errors import FlatStoreQuotaExceeded, SerializationFailure, StorageError
from nyaya_core.hashing import cache_key
from nyaya_core.schemas import CacheEntry, Record, now_ms
from nyaya_core.storage import CACHE_COLLECTIONS, StorageFacade

logger = logging.getLogger(__name__)

DEFAULT_TTL_MS = 24 * 60 * 60 * 1000
CONTENT_HASH_INDEX = "content_hash"
EXPIRES_AT_INDEX = "expires_at"


class CacheLayer:
    def __init__(
        self,
        facade: StorageFacade,
        *,
        default_ttl_ms: int = DEFAULT_TTL_MS,
        sweep_on_init: bool = False,
        enabled: bool = True,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if default_ttl_ms <= 0:
            raise ValueError("default_ttl_ms must be > 0")
        self.facade = facade
        self.default_ttl_ms = default_ttl_ms
        self.sweep_on_init = sweep_on_init
        self.enabled = enabled
        self.clock = clock

    @classmethod
    def from_config(cls, facade: StorageFacade, config: CacheConfig) -> CacheLayer:
        return cls(
            facade,
            default_ttl_ms=config.default_ttl_ms,
            sweep_on_init=config.sweep_on_init,
            enabled=config.enabled,
        )

    @staticmethod
    def key(prefix: str, *parts: str) -> str:
        return cache_key(prefix, *parts)

    async def initialize(self) -> None:
        await self.facade.initialize()
        if self.sweep_on_init:
            await self.sweep()

    async def get(self, collection: str, key: str) -> Any | None:
        entry = await self.get_entry(collection, key)
        if entry is None:
            return None
        return entry.value

    async def get_entry(self, collection: str, key: str) -> CacheEntry | None:
        if not self.enabled:
            return None
        try:
            raw = await self.facade.get_by_id(collection, key)
        except StorageError as exc:
            logger.warning("cache read failed collection=%s key=%s: %s", collection, key, exc)
            return None

        if raw is None:
            logger.debug("cache miss collection=%s key=%s reason=not_found", collection, key)
            return None

        entry = _parse_entry(raw)
        if entry is None or entry.is_expired(self.clock()):
            await self._delete_quietly(collection, key)
            logger.debug("cache miss collection=%s key=%s reason=expired", collection, key)
            return None

        logger.debug("cache hit collection=%s key=%s", collection, key)
        return entry

    async def set(
        self,
        collection: str,
        key: str,
        value: Any,
        ttl_ms: int | None = None,
        content_hash: str | None = None,
    ) -> None:
        if ttl_ms is None:
            ttl_ms = self.default_ttl_ms
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be > 0")
        if not self.enabled:
            return

        now = self.clock()
        entry = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            expires_at=now + ttl_ms,
            content_hash=content_hash,
        )
        record = entry.model_dump()
        try:
            await self._put_with_quota_retry(collection, record)
        except SerializationFailure:
            raise
        except StorageError as exc:
            logger.warning("cache write failed collection=%s key=%s: %s", collection, key, exc)
            return
        logger.debug("cache set collection=%s key=%s ttl_ms=%s", collection, key, ttl_ms)

    async def delete(self, collection: str, key: str) -> None:
        await self._delete_quietly(collection, key)

    async def get_by_hash(self, collection: str, content_hash: str) -> Any | None:
        """Return a live entry stored with ``content_hash``.

        When several live entries share the hash, which one is returned is
        unspecified; it depends on the backend's index scan order.
        """
        if not self.enabled:
            return None
        try:
            records = await self.facade.get_by_index(collection, CONTENT_HASH_INDEX, content_hash)
        except StorageError as exc:
            logger.warning(
                "cache hash lookup failed collection=%s hash=%s: %s",
                collection,
                content_hash[:8],
                exc,
            )
            return None

        now = self.clock()
        for raw in records:
            entry = _parse_entry(raw)
            if entry is not None and not entry.is_expired(now):
                logger.debug("cache hit collection=%s hash=%s", collection, content_hash[:8])
                return entry.value
        return None

    async def sweep(self, collections: Iterable[str] = CACHE_COLLECTIONS) -> int:
        now = self.clock()
        removed = 0
        for collection in collections:
            try:
                removed += await self.facade.delete_range(collection, EXPIRES_AT_INDEX, now)
            except StorageError as exc:
                logger.warning("cache sweep failed collection=%s: %s", collection, exc)
        if removed:
            logger.info("cache sweep removed=%s", removed)
        return removed

    async def count(self, collection: str) -> int:
        try:
            return await self.facade.count(collection)
        except StorageError as exc:
            logger.warning("cache count failed collection=%s: %s", collection, exc)
            return 0

    async def _put_with_quota_retry(self, collection: str, record: Record) -> None:
        try:
            await self.facade.put(collection, record)
        except StorageError as exc:
            if not _caused_by_quota(exc):
                raise
            logger.warning("fallback store full, sweeping expired cache entries")
            await self.sweep()
            await self.facade.put(collection, record)

    async def _delete_quietly(self, collection: str, key: str) -> None:
        try:
            await self.facade.delete(collection, key)
        except StorageError as exc:
            logger.warning("cache delete failed collection=%s key=%s: %s", collection, key, exc)


def _parse_entry(raw: Record) -> CacheEntry | None:
    try:
        return CacheEntry.model_validate(raw)
    except ValidationError:
        logger.warning("drop unreadable cache entry key=%s", raw.get("key"))
        return None


def _caused_by_quota(exc: BaseException) -> bool:
    current: BaseException | None = exc
    while current is not None:
        if isinstance(current, FlatStoreQuotaExceeded):
            return True
        current = current.__cause__
    return False
