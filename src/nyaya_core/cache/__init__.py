"""Content-addressable TTL cache layered on the storage facade."""

from .documents import (
    CachedDocumentAnalysis,
    CachedDocumentMetadata,
    CachedPerspective,
    DocumentCache,
)
from .layer import DEFAULT_TTL_MS, CacheLayer

__all__ = [
    "DEFAULT_TTL_MS",
    "CacheLayer",
    "CachedDocumentAnalysis",
    "CachedDocumentMetadata",
    "CachedPerspective",
    "DocumentCache",
]
