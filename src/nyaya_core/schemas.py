from __future__ import annotations

import time
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

Record = dict[str, Any]

METADATA_ID = "main"
SCHEMA_VERSION = 1


def now_ms() -> int:
    return int(time.time() * 1000)


class DTOBase(BaseModel):
    model_config = ConfigDict(extra="forbid")


class CacheEntry(DTOBase):
    key: str
    value: Any
    created_at: int
    expires_at: int
    content_hash: str | None = None

    @model_validator(mode="after")
    def validate_expiry(self) -> CacheEntry:
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be greater than created_at")
        return self

    def is_expired(self, now: int) -> bool:
        return now >= self.expires_at


class StorageMetadata(DTOBase):
    id: str = METADATA_ID
    migrated: bool = False
    migrated_at: int | None = None
    last_cleanup: int | None = None
    schema_version: int = SCHEMA_VERSION


class StorageStats(DTOBase):
    collection_counts: dict[str, int] = Field(default_factory=dict)
    cache_entry_count: int = 0
    estimated_size: str = "Unknown"
    using_fallback: bool = False


class CoordinatorStats(DTOBase):
    pending_count: int = 0
    total_subscribers: int = 0
    oldest_request_age_ms: int = 0


class BatchMetrics(DTOBase):
    total_items: int
    success_count: int
    failure_count: int
    total_time_ms: float
    avg_time_per_item_ms: float
    final_batch_size: int
    retries_used: int


class ProcessingStatus(DTOBase):
    current_item: int
    total_items: int
    current_batch_size: int
    estimated_time_remaining_ms: float
    failed_count: int
    success_count: int


class AdaptiveBatchState(DTOBase):
    current_batch_size: int
    consecutive_successes: int
    consecutive_failures: int
    avg_response_time_ms: float


def format_bytes(size: int) -> str:
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, 2):g} {units[index]}"
