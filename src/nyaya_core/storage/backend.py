from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import AbstractContextManager
from enum import StrEnum
from typing import Any, Protocol

from nyaya_core.errors import SerializationFailure
from nyaya_core.schemas import Record

from .collections import CollectionSpec


class TransactionMode(StrEnum):
    READONLY = "readonly"
    READWRITE = "readwrite"


class IndexHandle(Protocol):
    def get(self, value: Any) -> Record | None:
        """Return the first record whose indexed field equals ``value``."""

    def get_all(self, value: Any) -> list[Record]:
        """Return every record whose indexed field equals ``value``."""

    def iter_upto(self, upper: Any) -> Iterator[Record]:
        """Cursor over records whose indexed field is ``<= upper``."""


class CollectionHandle(Protocol):
    def get(self, key: str) -> Record | None: ...

    def get_all(self) -> list[Record]: ...

    def put(self, record: Record) -> None: ...

    def delete(self, key: str) -> None: ...

    def clear(self) -> None: ...

    def count(self) -> int: ...

    def index(self, name: str) -> IndexHandle: ...


class StorageBackend(Protocol):
    name: str

    def open(self) -> None: ...

    def close(self) -> None: ...

    def transaction(
        self,
        collection: str,
        mode: TransactionMode = TransactionMode.READONLY,
    ) -> AbstractContextManager[CollectionHandle]: ...

    def estimated_size(self) -> int | None: ...


def dump_record(record: Record) -> str:
    try:
        serialized = json.dumps(record, ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise SerializationFailure(f"record is not JSON serializable: {exc}") from exc
    return serialized


def load_record(raw: str) -> Record:
    loaded = json.loads(raw)
    if not isinstance(loaded, dict):
        raise SerializationFailure("stored payload root must be a JSON object")
    return loaded


def record_key(spec: CollectionSpec, record: Record) -> str:
    value = record.get(spec.key_path)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValueError(f"{spec.name} record is missing key field {spec.key_path!r}")
    return str(value)
