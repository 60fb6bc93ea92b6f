"""Cache-first execution of expensive LLM calls.

Every call follows the same path: look the result up in the cache, on a miss
run the call through the request coordinator so concurrent identical calls
share one request, then write the result back before releasing the callers.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol

from nyaya_core.cache import CacheLayer, DocumentCache
from nyaya_core.cache.documents import TURN_PREFIX
from nyaya_core.config import AppConfig
from nyaya_core.coordination import RequestCoordinator
from nyaya_core.hashing import content_hash, request_fingerprint
from nyaya_core.llm import GeminiClient
from nyaya_core.storage import API_RESPONSE_CACHE, StorageFacade

logger = logging.getLogger(__name__)


class TextGenerationClient(Protocol):
    def generate(
        self,
        prompt: str,
        *,
        system_instruction: str | None = None,
        json_output: bool = True,
    ) -> str:
        """Generate response text from a prompt."""


class CachedGenerationService:
    def __init__(
        self,
        *,
        cache: CacheLayer,
        coordinator: RequestCoordinator,
        client: TextGenerationClient,
        documents: DocumentCache | None = None,
    ) -> None:
        self.cache = cache
        self.coordinator = coordinator
        self.client = client
        self.documents = documents or DocumentCache(cache)

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        facade: StorageFacade,
        coordinator: RequestCoordinator | None = None,
        client: TextGenerationClient | None = None,
    ) -> CachedGenerationService:
        cache = CacheLayer.from_config(facade, config.cache)
        return cls(
            cache=cache,
            coordinator=coordinator or RequestCoordinator.from_config(config.coordinator),
            client=client or GeminiClient.from_config(config.llm),
            documents=DocumentCache.from_config(cache, config.cache),
        )

    async def generate(
        self,
        prompt: str,
        *,
        system_instruction: str | None = None,
        json_output: bool = True,
        ttl_ms: int | None = None,
    ) -> str:
        key = CacheLayer.key(TURN_PREFIX, system_instruction or "", prompt, str(json_output))
        cached = await self.cache.get(API_RESPONSE_CACHE, key)
        if isinstance(cached, str):
            logger.info("generation cache hit key=%s", key)
            return cached

        async def _generate() -> str:
            text = await asyncio.to_thread(
                self.client.generate,
                prompt,
                system_instruction=system_instruction,
                json_output=json_output,
            )
            await self.cache.set(API_RESPONSE_CACHE, key, text, ttl_ms=ttl_ms)
            return text

        return await self.coordinator.execute(key, _generate)

    async def analyze_document(
        self,
        *,
        document_id: str,
        role: str,
        content: str,
        prompt: str,
    ) -> dict[str, Any]:
        cached = await self.documents.get_document_analysis(
            document_id=document_id,
            role=role,
            content=content,
        )
        if cached is not None:
            return cached.analysis

        async def _analyze() -> dict[str, Any]:
            text = await asyncio.to_thread(self.client.generate, prompt)
            analysis = load_json_object(text)
            await self.documents.cache_document_analysis(
                document_id=document_id,
                role=role,
                content=content,
                analysis=analysis,
            )
            return analysis

        key = request_fingerprint(
            {
                "op": "analysis",
                "document_id": document_id,
                "role": role,
                "hash": content_hash(content),
            }
        )
        return await self.coordinator.execute(key, _analyze)

    async def extract_metadata(
        self,
        *,
        file_name: str,
        content: str,
        prompt: str,
    ) -> dict[str, Any]:
        cached = await self.documents.get_document_metadata(content)
        if cached is not None:
            return cached.metadata

        async def _extract() -> dict[str, Any]:
            text = await asyncio.to_thread(self.client.generate, prompt)
            metadata = load_json_object(text)
            await self.documents.cache_document_metadata(
                file_name=file_name,
                content=content,
                metadata=metadata,
            )
            return metadata

        key = request_fingerprint({"op": "metadata", "hash": content_hash(content)})
        return await self.coordinator.execute(key, _extract)


def load_json_object(response_text: str) -> dict[str, Any]:
    candidate = _strip_code_fence(response_text.strip())
    try:
        loaded = json.loads(candidate)
    except json.JSONDecodeError:
        loaded = json.loads(_extract_json_block(candidate))

    if not isinstance(loaded, dict):
        raise ValueError("LLM response root must be a JSON object.")
    return loaded


def _strip_code_fence(text: str) -> str:
    lines = text.splitlines()
    if len(lines) >= 3 and lines[0].startswith("```") and lines[-1].startswith("```"):
        return "\n".join(lines[1:-1]).strip()
    return text


def _extract_json_block(text: str) -> str:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        raise ValueError("LLM response does not contain a JSON object.")
    return text[start : end + 1]
