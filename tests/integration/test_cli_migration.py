#!/usr/bin/env python3
"""
End-to-end tests: command line runner and programmatic entry point against
the SQLite fixture databases.
"""

import logging

import pytest

from config.secure_config import MigratorConfig
from core.descriptors import MigrationContext
from core.errors import MigrationAbortedError
from legacy_migrator import LegacyMigrator
from sample_definitions import build_tables
from target_models import Employee, OriginCountry, Subdivision
from tools.db_migrator import build_parser, load_tables, main


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    for name in ("MIGRATOR_SOURCE_URL", "MIGRATOR_TARGET_URL", "MIGRATOR_SOURCE_USER",
                 "MIGRATOR_SOURCE_PASSWORD", "MIGRATOR_SOURCE_DRIVER", "MIGRATOR_LOG_LEVEL", "MIGRATOR_LOG_DIR",
                 "MIGRATOR_PROFILE", "MIGRATOR_INSERT_BATCH_SIZE", "MIGRATOR_BACKFILL_BATCH_SIZE"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("MIGRATOR_HOME", str(tmp_path))
    root = logging.getLogger()
    level = root.level
    yield
    root.setLevel(level)


def test_parser_requires_definitions():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["--source", "sqlite://"])


def test_load_tables_accepts_list_or_builder():
    context = MigrationContext()
    tables = load_tables("sample_definitions:build_tables", context)
    assert len(tables) == 3
    with pytest.raises(ValueError):
        load_tables("sample_definitions", context)
    with pytest.raises(ValueError):
        load_tables("sample_definitions:NOT_THERE", context)


def test_cli_migrates_all_tables(source_config, target_db, target_rows, tmp_path, capsys):
    log_dir = tmp_path / "run-logs"
    exit_code = main(["--source", source_config.url, "--target", target_db.url,
                      "--definitions", "sample_definitions:build_tables", "--log-dir", str(log_dir)])

    assert exit_code == 0
    assert sorted(target_rows(OriginCountry)) == [1, 2]
    assert {k: r["parent_subdivision_id"] for k, r in target_rows(Subdivision).items()} == {
        2: 7, 7: None, 9: 2, 11: None}
    assert sorted(target_rows(Employee)) == [100, 101, 102]

    assert "MIGRATION SUMMARY" in capsys.readouterr().out
    log_files = list(log_dir.glob("migration_*.log"))
    assert len(log_files) == 1
    assert "Table 3/3: FUNCIONARIO" in log_files[0].read_text()


def test_cli_log_dir_from_environment(monkeypatch, source_config, target_db, tmp_path):
    log_dir = tmp_path / "env-logs"
    monkeypatch.setenv("MIGRATOR_LOG_DIR", str(log_dir))
    assert main(["--source", source_config.url, "--target", target_db.url,
                 "--definitions", "sample_definitions:build_tables"]) == 0

    log_files = list(log_dir.glob("migration_*.log"))
    assert len(log_files) == 1
    assert "Table 1/3: PAIS_ORIGEN" in log_files[0].read_text()


def test_cli_without_log_dir_writes_no_file(source_config, target_db, tmp_path):
    assert main(["--source", source_config.url, "--target", target_db.url,
                 "--definitions", "sample_definitions:build_tables"]) == 0
    assert not (tmp_path / "logs").exists()


def test_cli_reads_urls_from_environment(monkeypatch, source_config, target_db, target_rows):
    monkeypatch.setenv("MIGRATOR_SOURCE_URL", source_config.url)
    monkeypatch.setenv("MIGRATOR_TARGET_URL", target_db.url)
    assert main(["--definitions", "sample_definitions:build_tables"]) == 0
    assert len(target_rows(Employee)) == 3


def test_cli_failed_table_exits_with_error(source_config, target_db, target_rows):
    exit_code = main(["--source", source_config.url, "--target", target_db.url,
                      "--definitions", "sample_definitions:broken_tables"])
    assert exit_code == 1
    assert len(target_rows(OriginCountry)) == 3
    assert target_rows(Subdivision) == {}


def test_cli_unknown_definitions_exits_with_error(source_config, target_db):
    assert main(["--source", source_config.url, "--target", target_db.url,
                 "--definitions", "no_such_package.tables:TABLES"]) == 1


def test_cli_without_target_is_a_usage_error(source_config, capsys):
    assert main(["--source", source_config.url, "--definitions", "sample_definitions:build_tables"]) == 2
    assert "MIGRATOR_TARGET_URL" in capsys.readouterr().err


def test_programmatic_entry_point(source_config, target_db, target_rows):
    context = MigrationContext()
    progress = []
    with LegacyMigrator(source_url=source_config.url, target_url=target_db.url,
                        config=MigratorConfig()) as migrator:
        summaries = migrator.migrate(build_tables(context), context=context,
                                     progress_callback=lambda d, e: progress.append(d.source_table))

    assert [s.rows_failed for s in summaries] == [0, 0, 0]
    assert progress == ["PAIS_ORIGEN", "main.SUBDIRECCION", "FUNCIONARIO"]
    assert context.ids("employee") == {100, 101, 102}
    assert len(target_rows(Employee)) == 3


def test_programmatic_entry_point_halts(source_config, target_db):
    from sample_definitions import broken_tables

    with LegacyMigrator(source_url=source_config.url, target_url=target_db.url,
                        config=MigratorConfig()) as migrator:
        with pytest.raises(MigrationAbortedError, match="PAIS_DESTINO"):
            migrator.migrate(broken_tables(MigrationContext()))


def test_programmatic_entry_point_needs_a_target(source_config):
    with pytest.raises(ValueError):
        LegacyMigrator(source_url=source_config.url, config=MigratorConfig())
