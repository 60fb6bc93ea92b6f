from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    db_path: Path = Path("data/storage/nyaya.db")
    fallback_path: Path = Path("data/storage/nyaya_fallback.json")
    legacy_path: Path | None = None
    primary_enabled: bool = True
    fallback_quota_bytes: int | None = Field(default=5 * 1024 * 1024, gt=0)

    @model_validator(mode="after")
    def validate_distinct_paths(self) -> StorageConfig:
        if self.db_path == self.fallback_path:
            raise ValueError("storage.db_path and storage.fallback_path must differ")
        return self


class CacheTTLConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    document_metadata: int = Field(default=7 * DAY_MS, gt=0)
    document_analysis: int = Field(default=7 * DAY_MS, gt=0)
    perspective: int = Field(default=DAY_MS, gt=0)


class CacheConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    default_ttl_ms: int = Field(default=DAY_MS, gt=0)
    ttl: CacheTTLConfig = Field(default_factory=CacheTTLConfig)
    sweep_on_init: bool = True


class CoordinatorConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_pending_age_ms: int = Field(default=30_000, gt=0)
    debounce_interval_ms: int = Field(default=100, ge=0)
    enable_logging: bool = False


class BatcherConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    window_ms: int = Field(default=50, gt=0)
    max_batch_size: int = Field(default=10, ge=1)


class AdaptiveBatchConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    initial_batch_size: int = Field(default=3, ge=1)
    min_batch_size: int = Field(default=1, ge=1)
    max_batch_size: int = Field(default=5, ge=1)
    target_response_ms: float = Field(default=5_000.0, gt=0)
    max_retries: int = Field(default=2, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    retry_base_delay_ms: int = Field(default=1_000, ge=0)
    inter_batch_delay_ms: int = Field(default=100, ge=0)
    success_threshold: int = Field(default=3, ge=1)

    @model_validator(mode="after")
    def validate_batch_bounds(self) -> AdaptiveBatchConfig:
        if not self.min_batch_size <= self.initial_batch_size <= self.max_batch_size:
            raise ValueError("adaptive batch sizes must satisfy min <= initial <= max")
        return self


class LLMConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    provider: str = "gemini"
    model: str = "gemini-2.5-flash"
    fallback_model: str = "gemini-2.5-flash-lite"
    api_key_env: str = "GEMINI_API_KEY"
    temperature: float = Field(default=0.0, ge=0.0, le=2.0)
    key_cooldown_ms: int = Field(default=60_000, ge=0)

    @field_validator("provider")
    @classmethod
    def normalize_provider(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("api_key_env")
    @classmethod
    def validate_api_key_env(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("llm.api_key_env must not be empty")
        return normalized

    @field_validator("model", "fallback_model")
    @classmethod
    def validate_model_fields(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("llm model fields must not be empty")
        return normalized


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    storage: StorageConfig = Field(default_factory=StorageConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    coordinator: CoordinatorConfig = Field(default_factory=CoordinatorConfig)
    batcher: BatcherConfig = Field(default_factory=BatcherConfig)
    adaptive_batch: AdaptiveBatchConfig = Field(default_factory=AdaptiveBatchConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)


def load_config(path: str | Path) -> AppConfig:
    raw = Path(path).read_text(encoding="utf-8")
    payload = _parse_yaml_or_json(raw)
    try:
        return AppConfig.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc


def _parse_yaml_or_json(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        parsed = _parse_yaml(raw)
    if not isinstance(parsed, dict):
        raise ValueError("Configuration root must be an object.")
    return parsed


def _parse_yaml(raw: str) -> dict[str, Any]:
    try:
        import yaml  # type: ignore[import-untyped]
    except ModuleNotFoundError as exc:
        raise ValueError(
            "YAML parsing requires PyYAML. Use JSON-compatible YAML or install pyyaml."
        ) from exc

    parsed = yaml.safe_load(raw)
    if not isinstance(parsed, dict):
        raise ValueError("Configuration root must be an object.")
    return parsed
