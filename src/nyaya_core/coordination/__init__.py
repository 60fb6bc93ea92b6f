"""In-process request coordination: dedup, debounce and batching."""

from .adaptive import (
    AdaptiveBatchProcessor,
    BatchFailure,
    BatchResult,
    process_with_adaptive_batching,
)
from .batcher import RequestBatcher
from .debounce import DebouncedFunction, debounce_async
from .deduplicator import PendingRequest, RequestCoordinator, with_deduplication

__all__ = [
    "AdaptiveBatchProcessor",
    "BatchFailure",
    "BatchResult",
    "DebouncedFunction",
    "PendingRequest",
    "RequestBatcher",
    "RequestCoordinator",
    "debounce_async",
    "process_with_adaptive_batching",
    "with_deduplication",
]
