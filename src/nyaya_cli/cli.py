from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import typer
from pydantic import ValidationError

from nyaya_core import AppConfig, load_config
from nyaya_core.cache import CacheLayer
from nyaya_core.config import StorageConfig
from nyaya_core.errors import StorageError
from nyaya_core.schemas import now_ms
from nyaya_core.storage import API_RESPONSE_CACHE, PROJECTS, StorageFacade

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

app = typer.Typer(help="NyayaSutra storage CLI")
debug_app = typer.Typer(help="Debug commands")
app.add_typer(debug_app, name="debug")


@debug_app.command("storage")
def debug_storage(
    config_path: Path | None = typer.Option(
        None,
        "--config",
        help="Config file path (YAML or JSON). Defaults are used when omitted.",
        exists=True,
        dir_okay=False,
        readable=True,
    ),
    db_path: Path | None = typer.Option(
        None,
        "--db-path",
        help="SQLite DB file path.",
    ),
    fallback_path: Path | None = typer.Option(
        None,
        "--fallback-path",
        help="Fallback JSON store path.",
    ),
) -> None:
    """Run storage smoke test."""
    config = _load_app_config(config_path)
    storage_config = _storage_config(config, db_path=db_path, fallback_path=fallback_path)

    async def _smoke() -> tuple[str, bool]:
        async with StorageFacade.from_config(storage_config) as facade:
            cache = CacheLayer(facade, default_ttl_ms=config.cache.default_ttl_ms)
            await cache.set(API_RESPONSE_CACHE, "debug:storage", "smoke_ok", ttl_ms=60_000)
            cached_value = await cache.get(API_RESPONSE_CACHE, "debug:storage")

            sample = {"id": "debug-project", "name": "storage smoke test", "created_at": now_ms()}
            await facade.put(PROJECTS, sample)
            stored = await facade.get_by_id(PROJECTS, sample["id"])
            await facade.delete(PROJECTS, sample["id"])
            return facade.state, cached_value == "smoke_ok" and stored is not None

    state, ok = _run(_smoke())
    if not ok:
        typer.echo("storage smoke test failed", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"storage ok state={state}")


@app.command("stats")
def storage_stats(
    config_path: Path | None = typer.Option(
        None,
        "--config",
        help="Config file path (YAML or JSON). Defaults are used when omitted.",
        exists=True,
        dir_okay=False,
        readable=True,
    ),
    db_path: Path | None = typer.Option(
        None,
        "--db-path",
        help="SQLite DB file path.",
    ),
    fallback_path: Path | None = typer.Option(
        None,
        "--fallback-path",
        help="Fallback JSON store path.",
    ),
) -> None:
    """Print record counts and estimated storage size."""
    config = _load_app_config(config_path)
    storage_config = _storage_config(config, db_path=db_path, fallback_path=fallback_path)

    async def _stats() -> Any:
        async with StorageFacade.from_config(storage_config) as facade:
            return await facade.stats()

    stats = _run(_stats())
    for name, count in sorted(stats.collection_counts.items()):
        typer.echo(f"{name}={count}")
    typer.echo(f"cache_entries={stats.cache_entry_count}")
    typer.echo(f"estimated_size={stats.estimated_size}")
    typer.echo(f"using_fallback={stats.using_fallback}")


@app.command("migrate")
def migrate_legacy(
    legacy_path: Path = typer.Option(
        ...,
        "--legacy-path",
        help="Legacy JSON key/value store to migrate from.",
        exists=True,
        dir_okay=False,
        readable=True,
    ),
    config_path: Path | None = typer.Option(
        None,
        "--config",
        help="Config file path (YAML or JSON). Defaults are used when omitted.",
        exists=True,
        dir_okay=False,
        readable=True,
    ),
    db_path: Path | None = typer.Option(
        None,
        "--db-path",
        help="SQLite DB file path.",
    ),
    fallback_path: Path | None = typer.Option(
        None,
        "--fallback-path",
        help="Fallback JSON store path.",
    ),
) -> None:
    """Copy legacy records into the primary store once."""
    config = _load_app_config(config_path)
    storage_config = _storage_config(
        config,
        db_path=db_path,
        fallback_path=fallback_path,
        legacy_path=legacy_path,
    )

    async def _migrate() -> tuple[bool, str]:
        async with StorageFacade.from_config(storage_config) as facade:
            return await facade.migrate_legacy(), facade.state

    migrated, state = _run(_migrate())
    if not migrated:
        typer.echo(f"legacy migration not completed state={state}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"legacy migration complete state={state}")


@app.command("sweep")
def sweep_cache(
    config_path: Path | None = typer.Option(
        None,
        "--config",
        help="Config file path (YAML or JSON). Defaults are used when omitted.",
        exists=True,
        dir_okay=False,
        readable=True,
    ),
    db_path: Path | None = typer.Option(
        None,
        "--db-path",
        help="SQLite DB file path.",
    ),
    fallback_path: Path | None = typer.Option(
        None,
        "--fallback-path",
        help="Fallback JSON store path.",
    ),
) -> None:
    """Remove expired cache entries."""
    config = _load_app_config(config_path)
    storage_config = _storage_config(config, db_path=db_path, fallback_path=fallback_path)

    async def _sweep() -> int:
        async with StorageFacade.from_config(storage_config) as facade:
            cache = CacheLayer.from_config(facade, config.cache)
            return await cache.sweep()

    removed = _run(_sweep())
    typer.echo(f"removed={removed}")


@app.command("clear-legacy")
def clear_legacy(
    legacy_path: Path = typer.Option(
        ...,
        "--legacy-path",
        help="Legacy JSON key/value store to clean up.",
        exists=True,
        dir_okay=False,
        readable=True,
    ),
    config_path: Path | None = typer.Option(
        None,
        "--config",
        help="Config file path (YAML or JSON). Defaults are used when omitted.",
        exists=True,
        dir_okay=False,
        readable=True,
    ),
    db_path: Path | None = typer.Option(
        None,
        "--db-path",
        help="SQLite DB file path.",
    ),
    fallback_path: Path | None = typer.Option(
        None,
        "--fallback-path",
        help="Fallback JSON store path.",
    ),
) -> None:
    """Delete legacy keys that have already been migrated."""
    config = _load_app_config(config_path)
    storage_config = _storage_config(
        config,
        db_path=db_path,
        fallback_path=fallback_path,
        legacy_path=legacy_path,
    )

    async def _clear() -> int:
        async with StorageFacade.from_config(storage_config) as facade:
            return await facade.clear_legacy()

    removed = _run(_clear())
    typer.echo(f"legacy_keys_removed={removed}")


def _load_app_config(config_path: Path | None) -> AppConfig:
    if config_path is None:
        return AppConfig()
    try:
        return load_config(config_path)
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc


def _storage_config(
    config: AppConfig,
    *,
    db_path: Path | None = None,
    fallback_path: Path | None = None,
    legacy_path: Path | None = None,
) -> StorageConfig:
    overrides = {
        "db_path": db_path,
        "fallback_path": fallback_path,
        "legacy_path": legacy_path,
    }
    payload = config.storage.model_dump()
    payload.update({key: value for key, value in overrides.items() if value is not None})
    try:
        return StorageConfig.model_validate(payload)
    except ValidationError as exc:
        typer.echo(f"invalid storage options: {exc}", err=True)
        raise typer.Exit(code=1) from exc


def _run(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except StorageError as exc:
        logging.exception("storage command failed")
        typer.echo(f"storage error: {exc}", err=True)
        raise typer.Exit(code=1) from exc


def main() -> None:
    app()


if __name__ == "__main__":
    main()
