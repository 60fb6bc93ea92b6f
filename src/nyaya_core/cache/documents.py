from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import ValidationError

from nyaya_core.config import CacheConfig, CacheTTLConfig
from nyaya_core.hashing import content_hash, files_hash
from nyaya_core.schemas import DTOBase
from nyaya_core.storage import API_RESPONSE_CACHE, DOCUMENT_CACHE

from .layer import CacheLayer

logger = logging.getLogger(__name__)

DOCUMENT_METADATA_PREFIX = "doc_meta_"
DOCUMENT_ANALYSIS_PREFIX = "doc_analysis_"
PERSPECTIVE_PREFIX = "perspective_"
TURN_PREFIX = "turn_"


class CachedDocumentMetadata(DTOBase):
    metadata: dict[str, Any]
    file_name: str
    content_hash: str
    cached_at: int


class CachedDocumentAnalysis(DTOBase):
    analysis: dict[str, Any]
    document_id: str
    role: str
    content_hash: str
    cached_at: int


class CachedPerspective(DTOBase):
    perspective: dict[str, Any]
    case_title: str
    role: str
    files_hash: str
    cached_at: int


class DocumentCache:
    """Typed caches for document metadata, per-role analysis and case perspectives."""

    def __init__(self, cache: CacheLayer, ttl: CacheTTLConfig | None = None) -> None:
        self.cache = cache
        self.ttl = ttl or CacheTTLConfig()

    @classmethod
    def from_config(cls, cache: CacheLayer, config: CacheConfig) -> DocumentCache:
        return cls(cache, config.ttl)

    async def get_document_metadata(self, content: str) -> CachedDocumentMetadata | None:
        digest = content_hash(content)
        raw = await self.cache.get_by_hash(DOCUMENT_CACHE, digest)
        cached = _validate(CachedDocumentMetadata, raw)
        if cached is not None:
            logger.info("document metadata cache hit hash=%s", digest[:8])
        return cached

    async def cache_document_metadata(
        self,
        *,
        file_name: str,
        content: str,
        metadata: Mapping[str, Any],
    ) -> str:
        digest = content_hash(content)
        key = CacheLayer.key(DOCUMENT_METADATA_PREFIX, digest)
        cached = CachedDocumentMetadata(
            metadata=dict(metadata),
            file_name=file_name,
            content_hash=digest,
            cached_at=self.cache.clock(),
        )
        await self.cache.set(
            DOCUMENT_CACHE,
            key,
            cached.model_dump(),
            ttl_ms=self.ttl.document_metadata,
            content_hash=digest,
        )
        logger.info("document metadata cached file=%s hash=%s", file_name, digest[:8])
        return digest

    async def has_document_metadata(self, content: str) -> bool:
        return await self.get_document_metadata(content) is not None

    async def get_document_analysis(
        self,
        *,
        document_id: str,
        role: str,
        content: str,
    ) -> CachedDocumentAnalysis | None:
        key = CacheLayer.key(DOCUMENT_ANALYSIS_PREFIX, document_id, role, content_hash(content))
        cached = _validate(CachedDocumentAnalysis, await self.cache.get(API_RESPONSE_CACHE, key))
        if cached is not None:
            logger.info("document analysis cache hit document_id=%s role=%s", document_id, role)
        return cached

    async def cache_document_analysis(
        self,
        *,
        document_id: str,
        role: str,
        content: str,
        analysis: Mapping[str, Any],
    ) -> None:
        digest = content_hash(content)
        key = CacheLayer.key(DOCUMENT_ANALYSIS_PREFIX, document_id, role, digest)
        cached = CachedDocumentAnalysis(
            analysis=dict(analysis),
            document_id=document_id,
            role=role,
            content_hash=digest,
            cached_at=self.cache.clock(),
        )
        await self.cache.set(
            API_RESPONSE_CACHE,
            key,
            cached.model_dump(),
            ttl_ms=self.ttl.document_analysis,
            content_hash=digest,
        )

    async def get_perspective(
        self,
        *,
        case_title: str,
        role: str,
        file_contents: Iterable[str],
    ) -> dict[str, Any] | None:
        key = CacheLayer.key(PERSPECTIVE_PREFIX, case_title, role, files_hash(file_contents))
        cached = _validate(CachedPerspective, await self.cache.get(API_RESPONSE_CACHE, key))
        if cached is None:
            return None
        logger.info("perspective cache hit role=%s case=%s", role, case_title[:20])
        return cached.perspective

    async def cache_perspective(
        self,
        *,
        case_title: str,
        role: str,
        file_contents: Iterable[str],
        perspective: Mapping[str, Any],
    ) -> None:
        digest = files_hash(file_contents)
        key = CacheLayer.key(PERSPECTIVE_PREFIX, case_title, role, digest)
        cached = CachedPerspective(
            perspective=dict(perspective),
            case_title=case_title,
            role=role,
            files_hash=digest,
            cached_at=self.cache.clock(),
        )
        await self.cache.set(
            API_RESPONSE_CACHE,
            key,
            cached.model_dump(),
            ttl_ms=self.ttl.perspective,
            content_hash=digest,
        )

    async def is_stale(self, content: str, max_age_ms: int | None = None) -> bool:
        if max_age_ms is None:
            max_age_ms = self.cache.default_ttl_ms
        cached = await self.get_document_metadata(content)
        if cached is None:
            return True
        return self.cache.clock() - cached.cached_at > max_age_ms

    def invalidate(self, content: str) -> str:
        # Entries are keyed by content hash, so changed content never hits the old entry.
        digest = content_hash(content)
        logger.info("document cache invalidated hash=%s", digest[:8])
        return digest

    @staticmethod
    def warm_up(documents: Iterable[tuple[str, str]]) -> dict[str, str]:
        """Map each document name to its content hash."""
        return {name: content_hash(content) for name, content in documents}


def _validate(model: type[Any], raw: Any) -> Any:
    if raw is None:
        return None
    try:
        return model.model_validate(raw)
    except ValidationError:
        logger.warning("ignore malformed %s cache payload", model.__name__)
        return None

