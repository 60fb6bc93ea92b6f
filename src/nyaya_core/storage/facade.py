from __future__ import annotations

import asyncio
import functools
import json
import logging
import re
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from enum import StrEnum
from typing import Any, TypeVar

from nyaya_core.config import StorageConfig
from nyaya_core.errors import (
    BackendUnavailable,
    MigrationFailure,
    StorageError,
    StorageUnavailableError,
    TransactionFailure,
)
from nyaya_core.schemas import (
    METADATA_ID,
    Record,
    StorageMetadata,
    StorageStats,
    format_bytes,
    now_ms,
)

from .backend import CollectionHandle, StorageBackend, TransactionMode, record_key
from .collections import (
    DEFAULT_COLLECTIONS,
    METADATA,
    CollectionSpec,
    collection_map,
)
from .flat_backend import FlatBackend, FlatKeyValueStore
from .sqlite_backend import SQLiteBackend

logger = logging.getLogger(__name__)

T = TypeVar("T")
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


class BackendState(StrEnum):
    UNINITIALIZED = "uninitialized"
    PRIMARY = "primary"
    FALLBACK = "fallback"


def next_state(state: BackendState, error: BaseException) -> BackendState:
    """Downgrade policy: the only place that decides primary -> fallback."""
    if state == BackendState.FALLBACK:
        return state
    if isinstance(error, BackendUnavailable):
        return BackendState.FALLBACK
    if isinstance(error, TransactionFailure) and state == BackendState.PRIMARY:
        return BackendState.FALLBACK
    return state


class StorageFacade:
    """One logical store over a primary and a fallback backend.

    The fallback state is absorbing: once a primary open or transaction fails,
    every later call in this process goes to the fallback backend, even if the
    primary would work again. Backend calls run on a single worker thread so
    two backend operations never overlap.
    """

    def __init__(
        self,
        *,
        primary: StorageBackend,
        fallback: StorageBackend,
        collections: tuple[CollectionSpec, ...] = DEFAULT_COLLECTIONS,
        legacy: FlatKeyValueStore | None = None,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.collections = collection_map(collections)
        self.legacy = legacy
        self._state = BackendState.UNINITIALIZED
        self._fallback_open = False
        self._init_task: asyncio.Future[None] | None = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="nyaya-storage")
        self._ready = False
        self._closed = False

    @classmethod
    def from_config(
        cls,
        config: StorageConfig,
        collections: tuple[CollectionSpec, ...] = DEFAULT_COLLECTIONS,
    ) -> StorageFacade:
        primary = SQLiteBackend(config.db_path, collections, enabled=config.primary_enabled)
        fallback = FlatBackend(
            config.fallback_path,
            collections,
            quota_bytes=config.fallback_quota_bytes,
        )
        legacy: FlatKeyValueStore | None = None
        if config.legacy_path is not None:
            if config.legacy_path == config.fallback_path:
                legacy = fallback.store
            else:
                legacy = FlatKeyValueStore(config.legacy_path)
        return cls(primary=primary, fallback=fallback, collections=collections, legacy=legacy)

    @property
    def state(self) -> BackendState:
        return self._state

    @property
    def using_fallback(self) -> bool:
        return self._state == BackendState.FALLBACK

    async def __aenter__(self) -> StorageFacade:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def initialize(self) -> None:
        if self._closed:
            raise StorageError("storage facade is closed")
        if self._ready:
            return
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize())
        try:
            await asyncio.shield(self._init_task)
        except Exception:
            self._init_task = None
            raise

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._run(self.primary.close)
        await self._run(self.fallback.close)
        self._executor.shutdown(wait=False)
        logger.info("storage facade closed state=%s", self._state)

    async def get_all(self, collection: str) -> list[Record]:
        records = await self._execute(collection, TransactionMode.READONLY, _get_all)
        return self._sorted(collection, records)

    async def get_by_id(self, collection: str, record_id: str) -> Record | None:
        return await self._execute(
            collection,
            TransactionMode.READONLY,
            lambda handle: handle.get(record_id),
        )

    async def get_by_index(self, collection: str, index: str, value: Any) -> list[Record]:
        records = await self._execute(
            collection,
            TransactionMode.READONLY,
            lambda handle: handle.index(index).get_all(value),
        )
        return self._sorted(collection, records)

    async def put(self, collection: str, record: Record) -> None:
        await self._execute(
            collection,
            TransactionMode.READWRITE,
            lambda handle: handle.put(record),
        )

    async def delete(self, collection: str, record_id: str) -> None:
        await self._execute(
            collection,
            TransactionMode.READWRITE,
            lambda handle: handle.delete(record_id),
        )

    async def replace_all(self, collection: str, records: Iterable[Record]) -> None:
        """Clear ``collection`` and write ``records``.

        Atomic on the primary backend. On the fallback backend it is a plain
        overwrite with no rollback if a write fails half way.
        """
        items = list(records)

        def _replace(handle: CollectionHandle) -> None:
            handle.clear()
            for record in items:
                handle.put(record)

        await self._execute(collection, TransactionMode.READWRITE, _replace)

    async def replace_by_index(
        self,
        collection: str,
        index: str,
        value: Any,
        records: Iterable[Record],
    ) -> None:
        spec = self._spec(collection)
        items = list(records)

        def _replace(handle: CollectionHandle) -> None:
            for existing in handle.index(index).get_all(value):
                handle.delete(record_key(spec, existing))
            for record in items:
                handle.put(record)

        await self._execute(collection, TransactionMode.READWRITE, _replace)

    async def delete_range(self, collection: str, index: str, upper: Any) -> int:
        spec = self._spec(collection)

        def _delete(handle: CollectionHandle) -> int:
            keys = [record_key(spec, record) for record in handle.index(index).iter_upto(upper)]
            for key in keys:
                handle.delete(key)
            return len(keys)

        return await self._execute(collection, TransactionMode.READWRITE, _delete)

    async def count(self, collection: str) -> int:
        return await self._execute(collection, TransactionMode.READONLY, _count)

    async def get_metadata(self) -> StorageMetadata:
        raw = await self.get_by_id(METADATA, METADATA_ID)
        if raw is None:
            return StorageMetadata()
        return StorageMetadata.model_validate(raw)

    async def put_metadata(self, metadata: StorageMetadata) -> None:
        await self.put(METADATA, metadata.model_dump(mode="json"))

    async def migrate_legacy(self) -> bool:
        await self.initialize()
        return await self._migrate_legacy()

    async def clear_legacy(self) -> int:
        """Remove migrated legacy keys. Returns the number of keys removed."""
        await self.initialize()
        if self.legacy is None:
            return 0
        if self.using_fallback and isinstance(self.fallback, FlatBackend):
            if self.legacy is self.fallback.store:
                logger.warning("skip legacy cleanup: legacy keys are the live fallback data")
                return 0
        metadata = await self.get_metadata()
        if not metadata.migrated:
            logger.warning("skip legacy cleanup: migration has not completed")
            return 0
        return await self._run(self._remove_legacy_keys, self.legacy)

    async def stats(self) -> StorageStats:
        await self.initialize()
        counts: dict[str, int] = {}
        cache_count = 0
        for spec in self.collections.values():
            if spec.name == METADATA:
                continue
            count = await self.count(spec.name)
            if spec.is_cache:
                cache_count += count
            else:
                counts[spec.name] = count

        backend = self.fallback if self.using_fallback else self.primary
        size = await self._run(backend.estimated_size)
        return StorageStats(
            collection_counts=counts,
            cache_entry_count=cache_count,
            estimated_size=format_bytes(size) if size is not None else "Unknown",
            using_fallback=self.using_fallback,
        )

    async def is_healthy(self) -> bool:
        try:
            await self.initialize()
            await self.count(METADATA)
        except StorageError:
            logger.exception("storage health check failed")
            return False
        return True

    async def _initialize(self) -> None:
        try:
            await self._run(self.primary.open)
            self._state = BackendState.PRIMARY
            logger.info("storage initialized backend=%s", self.primary.name)
        except BackendUnavailable as exc:
            logger.warning("primary backend unavailable, using fallback: %s", exc)
            await self._fail_over(exc)

        if self.legacy is not None:
            await self._migrate_legacy()
        self._ready = True

    async def _fail_over(self, error: BaseException) -> None:
        new_state = next_state(self._state, error)
        if new_state == BackendState.FALLBACK and not self._fallback_open:
            try:
                await self._run(self.fallback.open)
            except BackendUnavailable as exc:
                raise StorageUnavailableError(
                    f"primary and fallback backends are both unavailable: {error}; {exc}"
                ) from exc
            self._fallback_open = True
        if new_state != self._state:
            logger.warning(
                "storage state transition %s -> %s error=%s",
                self._state,
                new_state,
                type(error).__name__,
            )
            self._state = new_state

    async def _execute(
        self,
        collection: str,
        mode: TransactionMode,
        operation: Callable[[CollectionHandle], T],
    ) -> T:
        self._spec(collection)
        if self._closed:
            raise StorageError("storage facade is closed")
        if self._state == BackendState.UNINITIALIZED:
            await self.initialize()

        primary_error: TransactionFailure | None = None
        if self._state == BackendState.PRIMARY:
            try:
                return await self._run(self._transact, self.primary, collection, mode, operation)
            except TransactionFailure as exc:
                primary_error = exc
                logger.warning(
                    "primary %s on %s failed, retrying on fallback: %s",
                    mode,
                    collection,
                    exc,
                )
                await self._fail_over(exc)

        try:
            return await self._run(self._transact, self.fallback, collection, mode, operation)
        except (TransactionFailure, BackendUnavailable) as exc:
            raise StorageUnavailableError(
                f"{mode} on {collection} failed on every backend: {primary_error or exc}"
            ) from exc

    async def _migrate_legacy(self) -> bool:
        legacy = self.legacy
        if legacy is None:
            return False
        if self.using_fallback:
            logger.info("skip legacy migration while using fallback storage")
            return False

        try:
            metadata = await self.get_metadata()
            if metadata.migrated:
                logger.info("legacy data already migrated at=%s", metadata.migrated_at)
                return True
            migrated = await self._copy_legacy_records(legacy)
            if migrated is None:
                logger.info("no legacy data found path=%s", legacy.path)
                return False
            metadata.migrated = True
            metadata.migrated_at = now_ms()
            await self.put_metadata(metadata)
        except StorageError:
            logger.exception("legacy migration failed, will retry on next start")
            return False

        logger.info("legacy migration completed records=%s", migrated)
        return True

    async def _copy_legacy_records(self, legacy: FlatKeyValueStore) -> int | None:
        """Copy legacy records into the active backend.

        Returns ``None`` when the legacy store holds none of the known keys.
        """
        try:
            await self._run(legacy.load)
            if not self._has_legacy_data(legacy):
                return None
            migrated = 0
            for spec in self.collections.values():
                if spec.legacy_key is None:
                    continue
                parents = _read_legacy_list(legacy, spec.legacy_key)
                logger.info("migrating %s %s records from legacy storage", len(parents), spec.name)
                for record in parents:
                    await self.put(spec.name, record)
                    migrated += 1
                    migrated += await self._migrate_children(legacy, spec, record)
        except (StorageError, OSError, ValueError) as exc:
            raise MigrationFailure(f"legacy migration from {legacy.path} failed: {exc}") from exc
        return migrated

    def _has_legacy_data(self, legacy: FlatKeyValueStore) -> bool:
        for spec in self.collections.values():
            if spec.legacy_key is not None and legacy.get_item(spec.legacy_key) is not None:
                return True
            if spec.legacy_group_prefix is not None and legacy.keys(spec.legacy_group_prefix):
                return True
        return False

    async def _migrate_children(
        self,
        legacy: FlatKeyValueStore,
        parent_spec: CollectionSpec,
        parent: Record,
    ) -> int:
        migrated = 0
        parent_id = parent.get(parent_spec.key_path)
        for spec in self.collections.values():
            if spec.parent != parent_spec.name or spec.legacy_group_prefix is None:
                continue
            children = _read_legacy_list(legacy, f"{spec.legacy_group_prefix}{parent_id}")
            for child in children:
                await self.put(spec.name, child)
                migrated += 1
        return migrated

    def _remove_legacy_keys(self, legacy: FlatKeyValueStore) -> int:
        removed = 0
        with legacy.batch():
            for spec in self.collections.values():
                keys: list[str] = []
                if spec.legacy_key is not None and legacy.get_item(spec.legacy_key) is not None:
                    keys.append(spec.legacy_key)
                if spec.legacy_group_prefix is not None:
                    keys.extend(legacy.keys(spec.legacy_group_prefix))
                for key in keys:
                    legacy.remove_item(key)
                    removed += 1
        logger.info("legacy keys removed count=%s", removed)
        return removed

    @staticmethod
    def _transact(
        backend: StorageBackend,
        collection: str,
        mode: TransactionMode,
        operation: Callable[[CollectionHandle], T],
    ) -> T:
        with backend.transaction(collection, mode) as handle:
            return operation(handle)

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args))

    def _spec(self, collection: str) -> CollectionSpec:
        try:
            return self.collections[collection]
        except KeyError as exc:
            raise ValueError(f"unknown collection: {collection}") from exc

    def _sorted(self, collection: str, records: list[Record]) -> list[Record]:
        sort_field = self._spec(collection).sort_field
        if sort_field is None:
            return records
        # sorted() is stable with reverse=True, so ties keep insertion order.
        return sorted(records, key=lambda record: _sort_value(record.get(sort_field)), reverse=True)


def _get_all(handle: CollectionHandle) -> list[Record]:
    return handle.get_all()


def _count(handle: CollectionHandle) -> int:
    return handle.count()


def _sort_value(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return 0.0


def _read_legacy_list(legacy: FlatKeyValueStore, key: str) -> list[Record]:
    raw = legacy.get_item(key)
    if not raw:
        return []
    loaded = json.loads(raw)
    if not isinstance(loaded, list):
        raise ValueError(f"legacy key {key} does not hold a list")
    return [_snake_case_keys(item) for item in loaded if isinstance(item, dict)]


def _snake_case_keys(record: Record) -> Record:
    # Legacy records use camelCase field names (projectId, createdAt).
    converted: Record = {}
    for key, value in record.items():
        name = _CAMEL_BOUNDARY.sub("_", key).lower()
        if name == key or name not in record:
            converted[name] = value
    return converted
