"""Dual-backend storage: SQLite primary, flat JSON key/value fallback."""

from .backend import CollectionHandle, IndexHandle, StorageBackend, TransactionMode
from .collections import (
    API_RESPONSE_CACHE,
    CACHE_COLLECTIONS,
    DEFAULT_COLLECTIONS,
    DOCUMENT_CACHE,
    METADATA,
    PROJECTS,
    SESSIONS,
    CollectionSpec,
    FlatLayout,
)
from .facade import BackendState, StorageFacade, next_state
from .flat_backend import FlatBackend, FlatKeyValueStore
from .sqlite_backend import SQLiteBackend

__all__ = [
    "API_RESPONSE_CACHE",
    "CACHE_COLLECTIONS",
    "DEFAULT_COLLECTIONS",
    "DOCUMENT_CACHE",
    "METADATA",
    "PROJECTS",
    "SESSIONS",
    "BackendState",
    "CollectionHandle",
    "CollectionSpec",
    "FlatBackend",
    "FlatKeyValueStore",
    "FlatLayout",
    "IndexHandle",
    "SQLiteBackend",
    "StorageBackend",
    "StorageFacade",
    "TransactionMode",
    "next_state",
]
