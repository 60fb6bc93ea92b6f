from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from nyaya_core.config import (
    AdaptiveBatchConfig,
    AppConfig,
    LLMConfig,
    StorageConfig,
    load_config,
)
from nyaya_core.schemas import CacheEntry, StorageMetadata, format_bytes

ROOT = Path(__file__).resolve().parents[1]


def test_config_example_load_and_validate() -> None:
    cfg_path = ROOT / "config" / "config.example.yaml"
    config = load_config(cfg_path)

    assert isinstance(config, AppConfig)
    assert config.storage.db_path == Path("data/storage/nyaya.db")
    assert config.storage.legacy_path == Path("data/storage/legacy.json")
    assert config.cache.ttl.perspective == 86_400_000
    assert config.coordinator.max_pending_age_ms == 30_000
    assert config.batcher.max_batch_size == 10
    assert config.llm.provider == "gemini"
    assert config.llm.key_cooldown_ms == 60_000
    assert config.adaptive_batch.initial_batch_size == 3
    assert config.adaptive_batch.max_retries == 2


def test_json_config_with_defaults(tmp_path) -> None:
    cfg_path = tmp_path / "config.json"
    cfg_path.write_text(json.dumps({"coordinator": {"debounce_interval_ms": 0}}), encoding="utf-8")

    config = load_config(cfg_path)

    assert config.coordinator.debounce_interval_ms == 0
    assert config.cache.default_ttl_ms == 86_400_000
    assert config.storage.fallback_quota_bytes == 5 * 1024 * 1024


def test_config_rejects_unknown_keys_and_shared_paths(tmp_path) -> None:
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text("cache:\n  ttl_days: 3\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Invalid configuration"):
        load_config(cfg_path)

    with pytest.raises(ValidationError):
        StorageConfig(db_path=Path("same.db"), fallback_path=Path("same.db"))

    with pytest.raises(ValidationError):
        LLMConfig(api_key_env="  ")

    with pytest.raises(ValidationError):
        AdaptiveBatchConfig(initial_batch_size=6, max_batch_size=5)
    assert LLMConfig(provider=" Gemini ").provider == "gemini"


def test_cache_entry_requires_positive_lifetime() -> None:
    entry = CacheEntry(key="k", value=[1, 2], created_at=10, expires_at=20)

    assert entry.is_expired(19) is False
    assert entry.is_expired(20) is True
    with pytest.raises(ValidationError):
        CacheEntry(key="k", value=None, created_at=10, expires_at=10)


def test_storage_metadata_defaults() -> None:
    metadata = StorageMetadata()

    assert metadata.id == "main"
    assert metadata.migrated is False
    assert metadata.schema_version == 1


def test_format_bytes() -> None:
    assert format_bytes(0) == "0 Bytes"
    assert format_bytes(512) == "512 Bytes"
    assert format_bytes(1536) == "1.5 KB"
    assert format_bytes(5 * 1024 * 1024) == "5 MB"
