from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from nyaya_core.errors import (
    BackendUnavailable,
    FlatStoreQuotaExceeded,
    SerializationFailure,
    TransactionFailure,
)
from nyaya_core.schemas import Record

from .backend import TransactionMode, dump_record, load_record, record_key
from .collections import CollectionSpec, FlatLayout, collection_map

logger = logging.getLogger(__name__)

_WRITE_CHECK_KEY = "_storage_test_"


class FlatKeyValueStore:
    """String key/value pairs persisted as one JSON object on disk.

    Writes are buffered while a batch is open and flushed with an atomic
    rename when the outermost batch closes.
    """

    def __init__(self, path: str | Path, *, quota_bytes: int | None = None) -> None:
        if quota_bytes is not None and quota_bytes <= 0:
            raise ValueError("quota_bytes must be > 0")
        self.path = Path(path)
        self.quota_bytes = quota_bytes
        self._items: dict[str, str] = {}
        self._loaded = False
        self._batch_depth = 0
        self._dirty = False

    def load(self) -> None:
        if self.path.exists():
            raw = self.path.read_text(encoding="utf-8")
            parsed = json.loads(raw) if raw.strip() else {}
            if not isinstance(parsed, dict):
                raise ValueError(f"flat store root must be an object: {self.path}")
            self._items = {str(key): str(value) for key, value in parsed.items()}
        else:
            self._items = {}
        self._loaded = True

    def get_item(self, key: str) -> str | None:
        self._ensure_loaded()
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._ensure_loaded()
        if self.quota_bytes is not None:
            current = self._items.get(key)
            delta = _entry_size(key, value) - (_entry_size(key, current) if current else 0)
            if self.size_bytes() + delta > self.quota_bytes:
                raise FlatStoreQuotaExceeded(
                    f"flat store quota of {self.quota_bytes} bytes exceeded writing {key}"
                )
        self._items[key] = value
        self._mark_dirty()

    def remove_item(self, key: str) -> None:
        self._ensure_loaded()
        if self._items.pop(key, None) is not None:
            self._mark_dirty()

    def keys(self, prefix: str = "") -> list[str]:
        self._ensure_loaded()
        return [key for key in self._items if key.startswith(prefix)]

    def size_bytes(self) -> int:
        self._ensure_loaded()
        return sum(_entry_size(key, value) for key, value in self._items.items())

    @contextmanager
    def batch(self) -> Iterator[FlatKeyValueStore]:
        self._batch_depth += 1
        try:
            yield self
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0 and self._dirty:
                self.flush()

    def flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(json.dumps(self._items, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp_path, self.path)
        self._dirty = False

    def _mark_dirty(self) -> None:
        self._dirty = True
        if self._batch_depth == 0:
            self.flush()

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()


class FlatBackend:
    """Fallback backend: logical collections serialized under deterministic keys."""

    name = "flat"

    def __init__(
        self,
        path: str | Path,
        collections: tuple[CollectionSpec, ...],
        *,
        quota_bytes: int | None = None,
    ) -> None:
        self.store = FlatKeyValueStore(path, quota_bytes=quota_bytes)
        self.collections = collection_map(collections)
        self._opened = False

    @property
    def path(self) -> Path:
        return self.store.path

    def open(self) -> None:
        try:
            self.store.load()
            self.store.set_item(_WRITE_CHECK_KEY, "test")
            self.store.remove_item(_WRITE_CHECK_KEY)
        except (OSError, ValueError, TransactionFailure) as exc:
            raise BackendUnavailable(f"cannot open flat store {self.path}: {exc}") from exc
        self._opened = True
        logger.info("flat backend opened path=%s", self.path)

    def close(self) -> None:
        self._opened = False

    @contextmanager
    def transaction(
        self,
        collection: str,
        mode: TransactionMode = TransactionMode.READONLY,
    ) -> Iterator[FlatCollection]:
        if not self._opened:
            raise TransactionFailure("flat backend is not open")
        try:
            spec = self.collections[collection]
        except KeyError as exc:
            raise ValueError(f"unknown collection: {collection}") from exc

        # No rollback: partial writes of a failed transaction stay persisted.
        try:
            with self.store.batch():
                yield FlatCollection(self.store, spec, writable=mode == TransactionMode.READWRITE)
        except OSError as exc:
            raise TransactionFailure(f"flat store write failed: {exc}") from exc

    def estimated_size(self) -> int | None:
        return self.store.size_bytes()


class FlatCollection:
    def __init__(self, store: FlatKeyValueStore, spec: CollectionSpec, *, writable: bool) -> None:
        self.store = store
        self.spec = spec
        self.writable = writable

    def get(self, key: str) -> Record | None:
        if self.spec.layout == FlatLayout.KEYED:
            storage_key = self.spec.flat_prefix() + key
            if self.store.get_item(storage_key) is None:
                return None
            record = self._read_entry(storage_key)
            if record is None:
                logger.warning("skip unreadable flat entry key=%s", storage_key)
            return record
        for record in self.get_all():
            if str(record.get(self.spec.key_path)) == key:
                return record
        return None

    def get_all(self) -> list[Record]:
        if self.spec.layout == FlatLayout.LIST:
            return self._read_list(self.spec.list_key())
        records: list[Record] = []
        for storage_key in self.store.keys(self.spec.flat_prefix()):
            if self.spec.layout == FlatLayout.GROUPED:
                records.extend(self._read_list(storage_key))
                continue
            record = self._read_entry(storage_key)
            if record is None:
                logger.warning("skip unreadable flat entry key=%s", storage_key)
                continue
            records.append(record)
        return records

    def unreadable_keys(self) -> list[str]:
        """Record keys of KEYED entries whose payload no longer parses."""
        if self.spec.layout != FlatLayout.KEYED:
            return []
        prefix = self.spec.flat_prefix()
        return [
            storage_key[len(prefix):]
            for storage_key in self.store.keys(prefix)
            if self._read_entry(storage_key) is None
        ]

    def put(self, record: Record) -> None:
        self._check_writable()
        key = record_key(self.spec, record)
        payload = dump_record(record)
        if self.spec.layout == FlatLayout.KEYED:
            self.store.set_item(self.spec.flat_prefix() + key, payload)
            return

        if self.spec.layout == FlatLayout.GROUPED:
            group_key = self._group_key(record)
        else:
            group_key = self.spec.list_key()

        records = self._read_list(group_key)
        stored = json.loads(payload)
        for index, existing in enumerate(records):
            if str(existing.get(self.spec.key_path)) == key:
                records[index] = stored
                break
        else:
            records.append(stored)
        # Target group first: a failed write must not drop the only copy.
        self._write_list(group_key, records)
        if self.spec.layout == FlatLayout.GROUPED:
            for storage_key in self.store.keys(self.spec.flat_prefix()):
                if storage_key != group_key:
                    self._remove_from_list(storage_key, key)

    def delete(self, key: str) -> None:
        self._check_writable()
        if self.spec.layout == FlatLayout.KEYED:
            self.store.remove_item(self.spec.flat_prefix() + key)
            return
        if self.spec.layout == FlatLayout.GROUPED:
            for storage_key in self.store.keys(self.spec.flat_prefix()):
                self._remove_from_list(storage_key, key)
            return
        self._remove_from_list(self.spec.list_key(), key)

    def clear(self) -> None:
        self._check_writable()
        if self.spec.layout == FlatLayout.LIST:
            self._write_list(self.spec.list_key(), [])
            return
        for storage_key in self.store.keys(self.spec.flat_prefix()):
            self.store.remove_item(storage_key)

    def count(self) -> int:
        return len(self.get_all())

    def index(self, name: str) -> FlatIndex:
        if name not in self.spec.indexes:
            raise ValueError(f"{self.spec.name} has no index {name!r}")
        return FlatIndex(self, name)

    def _group_key(self, record: Record) -> str:
        field = self.spec.group_field or ""
        value = record.get(field)
        if value is None:
            raise ValueError(f"{self.spec.name} record is missing group field {field!r}")
        return f"{self.spec.flat_prefix()}{value}"

    def _read_entry(self, storage_key: str) -> Record | None:
        raw = self.store.get_item(storage_key)
        try:
            return load_record(raw or "")
        except (ValueError, SerializationFailure):
            return None

    def _read_list(self, storage_key: str) -> list[Record]:
        raw = self.store.get_item(storage_key)
        if not raw:
            return []
        try:
            loaded = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("skip unreadable flat list key=%s", storage_key)
            return []
        if not isinstance(loaded, list):
            return []
        return [item for item in loaded if isinstance(item, dict)]

    def _write_list(self, storage_key: str, records: list[Record]) -> None:
        self.store.set_item(storage_key, json.dumps(records, ensure_ascii=False))

    def _remove_from_list(self, storage_key: str, key: str) -> None:
        records = self._read_list(storage_key)
        kept = [record for record in records if str(record.get(self.spec.key_path)) != key]
        if len(kept) != len(records):
            self._write_list(storage_key, kept)

    def _check_writable(self) -> None:
        if not self.writable:
            raise TransactionFailure(f"{self.spec.name} transaction is readonly")


class FlatIndex:
    def __init__(self, collection: FlatCollection, name: str) -> None:
        self.collection = collection
        self.name = name

    def get(self, value: Any) -> Record | None:
        for record in self.get_all(value):
            return record
        return None

    def get_all(self, value: Any) -> list[Record]:
        spec = self.collection.spec
        if spec.layout == FlatLayout.GROUPED and self.name == spec.group_field:
            return self.collection._read_list(f"{spec.flat_prefix()}{value}")
        return [record for record in self.collection.get_all() if record.get(self.name) == value]

    def iter_upto(self, upper: Any) -> Iterator[Record]:
        spec = self.collection.spec
        if spec.is_cache:
            # Unreadable cache entries have no expiry and are always in range.
            for key in self.collection.unreadable_keys():
                yield {spec.key_path: key}
        matches = [
            record
            for record in self.collection.get_all()
            if _comparable(record.get(self.name), upper) and record[self.name] <= upper
        ]
        matches.sort(key=lambda record: record[self.name])
        yield from matches


def _comparable(value: Any, upper: Any) -> bool:
    if value is None:
        return False
    if isinstance(upper, (int, float)) and not isinstance(upper, bool):
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    return type(value) is type(upper)


def _entry_size(key: str, value: str | None) -> int:
    # UTF-16 code units, the way browser key/value stores account for quota.
    return (len(key) + len(value or "")) * 2
