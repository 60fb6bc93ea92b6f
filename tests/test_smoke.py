from __future__ import annotations

import json

from typer.testing import CliRunner

from nyaya_cli.cli import app


def _storage_args(tmp_path) -> list[str]:
    return [
        "--db-path",
        str(tmp_path / "nyaya.db"),
        "--fallback-path",
        str(tmp_path / "fallback.json"),
    ]


def test_cli_help() -> None:
    runner = CliRunner()
    result = runner.invoke(app, ["--help"])

    assert result.exit_code == 0
    assert "Usage:" in result.output
    assert "--help" in result.output


def test_cli_debug_storage_smoke(tmp_path) -> None:
    runner = CliRunner()

    result = runner.invoke(app, ["debug", "storage", *_storage_args(tmp_path)])

    assert result.exit_code == 0
    assert "storage ok state=primary" in result.output
    assert (tmp_path / "nyaya.db").exists()


def test_cli_stats_and_sweep(tmp_path) -> None:
    runner = CliRunner()

    stats = runner.invoke(app, ["stats", *_storage_args(tmp_path)])
    sweep = runner.invoke(app, ["sweep", *_storage_args(tmp_path)])

    assert stats.exit_code == 0
    assert "projects=0" in stats.output
    assert "using_fallback=False" in stats.output
    assert sweep.exit_code == 0
    assert "removed=0" in sweep.output


def test_cli_migrate_then_clear_legacy(tmp_path) -> None:
    legacy_path = tmp_path / "legacy.json"
    legacy_path.write_text(
        json.dumps(
            {
                "nyayasutra_data": json.dumps(
                    [{"id": "p1", "name": "Writ petition", "createdAt": 1}]
                )
            }
        ),
        encoding="utf-8",
    )
    runner = CliRunner()

    migrate = runner.invoke(
        app,
        ["migrate", "--legacy-path", str(legacy_path), *_storage_args(tmp_path)],
    )
    stats = runner.invoke(app, ["stats", *_storage_args(tmp_path)])
    clear = runner.invoke(
        app,
        ["clear-legacy", "--legacy-path", str(legacy_path), *_storage_args(tmp_path)],
    )

    assert migrate.exit_code == 0
    assert "legacy migration complete state=primary" in migrate.output
    assert "projects=1" in stats.output
    assert clear.exit_code == 0
    assert "legacy_keys_removed=1" in clear.output
    assert json.loads(legacy_path.read_text(encoding="utf-8")) == {}
