from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from nyaya_core.errors import BackendUnavailable, TransactionFailure
from nyaya_core.schemas import Record

from .backend import TransactionMode, dump_record, load_record, record_key
from .collections import CollectionSpec, collection_map

logger = logging.getLogger(__name__)


class SQLiteBackend:
    """Primary backend: one table per collection, one SQL index per declared index."""

    name = "sqlite"

    def __init__(
        self,
        db_path: str | Path,
        collections: tuple[CollectionSpec, ...],
        *,
        enabled: bool = True,
    ) -> None:
        self.db_path = Path(db_path)
        self.collections = collection_map(collections)
        self.enabled = enabled
        self._opened = False

    def open(self) -> None:
        if not self.enabled:
            raise BackendUnavailable("sqlite backend is disabled")
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._connect() as conn:
                conn.executescript(self._schema_script())
        except (sqlite3.Error, OSError) as exc:
            raise BackendUnavailable(f"cannot open sqlite db {self.db_path}: {exc}") from exc
        self._opened = True
        logger.info("sqlite backend opened path=%s", self.db_path)

    def close(self) -> None:
        self._opened = False

    @contextmanager
    def transaction(
        self,
        collection: str,
        mode: TransactionMode = TransactionMode.READONLY,
    ) -> Iterator[SQLiteCollection]:
        if not self._opened:
            raise TransactionFailure("sqlite backend is not open")
        spec = self._spec(collection)
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise TransactionFailure(f"cannot connect to {self.db_path}: {exc}") from exc

        try:
            if mode == TransactionMode.READONLY:
                conn.execute("PRAGMA query_only = ON")
            yield SQLiteCollection(conn, spec)
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise TransactionFailure(
                f"sqlite {mode} transaction on {collection} failed: {exc}"
            ) from exc
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def estimated_size(self) -> int | None:
        if not self.db_path.exists():
            return None
        return self.db_path.stat().st_size

    def _spec(self, collection: str) -> CollectionSpec:
        try:
            return self.collections[collection]
        except KeyError as exc:
            raise ValueError(f"unknown collection: {collection}") from exc

    def _schema_script(self) -> str:
        statements: list[str] = []
        for spec in self.collections.values():
            index_columns = "".join(f", {_column(name)}" for name in spec.indexes)
            statements.append(
                f"CREATE TABLE IF NOT EXISTS {_quote(spec.name)} ("
                "seq INTEGER PRIMARY KEY AUTOINCREMENT, "
                "pk TEXT NOT NULL UNIQUE, "
                f"payload TEXT NOT NULL{index_columns});"
            )
            for name in spec.indexes:
                statements.append(
                    f"CREATE INDEX IF NOT EXISTS {_quote(f'ix_{spec.name}_{name}')} "
                    f"ON {_quote(spec.name)} ({_column(name)});"
                )
        return "\n".join(statements)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn


class SQLiteCollection:
    def __init__(self, conn: sqlite3.Connection, spec: CollectionSpec) -> None:
        self.conn = conn
        self.spec = spec
        self.table = _quote(spec.name)

    def get(self, key: str) -> Record | None:
        row = self.conn.execute(
            f"SELECT payload FROM {self.table} WHERE pk = ?", (key,)
        ).fetchone()
        if row is None:
            return None
        return load_record(row["payload"])

    def get_all(self) -> list[Record]:
        rows = self.conn.execute(f"SELECT payload FROM {self.table} ORDER BY seq ASC").fetchall()
        return [load_record(row["payload"]) for row in rows]

    def put(self, record: Record) -> None:
        key = record_key(self.spec, record)
        payload = dump_record(record)
        columns = ["pk", "payload", *(_column(name) for name in self.spec.indexes)]
        values: list[Any] = [
            key,
            payload,
            *(_index_value(record.get(name)) for name in self.spec.indexes),
        ]
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f"{column}=excluded.{column}" for column in columns[1:])
        self.conn.execute(
            f"INSERT INTO {self.table} ({', '.join(columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT(pk) DO UPDATE SET {updates}",
            values,
        )

    def delete(self, key: str) -> None:
        self.conn.execute(f"DELETE FROM {self.table} WHERE pk = ?", (key,))

    def clear(self) -> None:
        self.conn.execute(f"DELETE FROM {self.table}")

    def count(self) -> int:
        row = self.conn.execute(f"SELECT COUNT(*) AS n FROM {self.table}").fetchone()
        return int(row["n"])

    def index(self, name: str) -> SQLiteIndex:
        if name not in self.spec.indexes:
            raise ValueError(f"{self.spec.name} has no index {name!r}")
        return SQLiteIndex(self, name)


class SQLiteIndex:
    def __init__(self, collection: SQLiteCollection, name: str) -> None:
        self.collection = collection
        self.column = _column(name)

    def get(self, value: Any) -> Record | None:
        row = self.collection.conn.execute(
            f"SELECT payload FROM {self.collection.table} WHERE {self.column} = ? "
            "ORDER BY seq ASC LIMIT 1",
            (value,),
        ).fetchone()
        if row is None:
            return None
        return load_record(row["payload"])

    def get_all(self, value: Any) -> list[Record]:
        rows = self.collection.conn.execute(
            f"SELECT payload FROM {self.collection.table} WHERE {self.column} = ? "
            "ORDER BY seq ASC",
            (value,),
        ).fetchall()
        return [load_record(row["payload"]) for row in rows]

    def iter_upto(self, upper: Any) -> Iterator[Record]:
        rows = self.collection.conn.execute(
            f"SELECT payload FROM {self.collection.table} WHERE {self.column} <= ? "
            f"ORDER BY {self.column} ASC",
            (upper,),
        ).fetchall()
        for row in rows:
            yield load_record(row["payload"])


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def _column(index_name: str) -> str:
    return _quote(f"idx_{index_name}")


def _index_value(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float)):
        return value
    return dump_record({"v": value})
