"""NyayaSutra storage, cache and request coordination substrate."""

from .cache import CacheLayer, DocumentCache
from .config import AppConfig, load_config
from .coordination import (
    AdaptiveBatchProcessor,
    RequestBatcher,
    RequestCoordinator,
    debounce_async,
    with_deduplication,
)
from .llm import ApiKeyPool
from .service import CachedGenerationService
from .storage import StorageFacade

__all__ = [
    "AdaptiveBatchProcessor",
    "ApiKeyPool",
    "AppConfig",
    "CacheLayer",
    "CachedGenerationService",
    "DocumentCache",
    "RequestBatcher",
    "RequestCoordinator",
    "StorageFacade",
    "debounce_async",
    "load_config",
    "with_deduplication",
]
