#!/usr/bin/env python3
"""
Legacy Database Migrator
========================

Command line runner: assembles the table list from a definitions module and
migrates it from a legacy database into the target store.

The definitions module exposes either a list of table definitions /
descriptors, or a callable taking the MigrationContext and returning one.

Usage:
    legacy-migrator --source "postgresql+psycopg2://legacy@db-old/erp" \\
        --target "postgresql+psycopg2://app@db-new/app" \\
        --definitions myapp.migration.tables:TABLES

    # Source password is read from MIGRATOR_SOURCE_PASSWORD
    MIGRATOR_SOURCE_PASSWORD=secret legacy-migrator --source-user legacy ...
"""

import argparse
import importlib
import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

# Add parent directory to path to import the engine when run as a script
sys.path.insert(0, str(Path(__file__).parent.parent.resolve()))

from sqlalchemy.exc import SQLAlchemyError

from config.secure_config import MigratorConfig
from core.database_manager import DatabaseManager
from core.descriptors import MigrationContext, MigrationRunSummary, SourceDbConfig
from core.errors import MigrationError
from core.migration import MigrationRunner
from core.orchestrator import TableMigrationOrchestrator

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
logger = logging.getLogger(__name__)


def load_tables(spec: str, context: MigrationContext) -> List[Any]:
    """Resolve 'package.module:ATTR' into the ordered table list"""
    module_name, _, attr = spec.partition(':')
    if not module_name or not attr:
        raise ValueError(f"--definitions must look like 'package.module:attribute', got {spec!r}")
    module = importlib.import_module(module_name)
    try:
        tables = getattr(module, attr)
    except AttributeError:
        raise ValueError(f"Module '{module_name}' has no attribute '{attr}'")
    if callable(tables):
        tables = tables(context)
    return list(tables)


def resolve_log_dir(args: argparse.Namespace, config: MigratorConfig) -> Optional[Path]:
    """--log-dir, else MIGRATOR_LOG_DIR; without either only the console is logged to"""
    if args.log_dir:
        return Path(args.log_dir)
    if os.environ.get('MIGRATOR_LOG_DIR'):
        return Path(config.log_dir)
    return None


def configure_logging(level: str, log_dir: Optional[Path]) -> Optional[logging.Handler]:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
    logging.getLogger().setLevel(getattr(logging, level, logging.INFO))
    if log_dir is None:
        return None
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"migration_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(file_handler)
    logger.info(f"Logging to {log_file}")
    return file_handler


def print_report(summaries: List[MigrationRunSummary]):
    print("\n" + "=" * 70)
    print("MIGRATION SUMMARY")
    print("=" * 70)
    for s in summaries:
        print(f"  {s.table} -> {s.target}")
        print(f"      Processed: {s.rows_processed:,}  Failed: {s.rows_failed:,}  "
              f"Inserted: {s.rows_inserted:,}  Existing: {s.rows_existing:,}")
        if s.fk_rows_updated or s.failed_backfill_batches:
            print(f"      Parent refs updated: {s.fk_rows_updated:,}  "
                  f"Failed batches: {s.failed_backfill_batches}")
        if s.active_rows_updated or s.failed_activeness_batches:
            print(f"      Activeness updated: {s.active_rows_updated:,}  "
                  f"Failed batches: {s.failed_activeness_batches}")
        print(f"      Time: {s.elapsed_seconds:.2f}s")
    print("=" * 70 + "\n")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Migrate a legacy database into the target store")
    parser.add_argument("--source", help="Source database URL (default: MIGRATOR_SOURCE_URL)")
    parser.add_argument("--source-driver", help="SQLAlchemy driver name, e.g. mssql+pyodbc (default: MIGRATOR_SOURCE_DRIVER)")
    parser.add_argument("--source-user", help="Source user name (default: MIGRATOR_SOURCE_USER)")
    parser.add_argument("--target", help="Target database URL (default: MIGRATOR_TARGET_URL)")
    parser.add_argument("--definitions", required=True, help="Table list as 'package.module:attribute'")
    parser.add_argument("--cleanup", action="store_true", help="Delete target rows (reverse order) before migrating")
    parser.add_argument("--log-dir", help="Directory for the per-run log file (default: MIGRATOR_LOG_DIR)")
    parser.add_argument("--log-level", help="Logging level (default: MIGRATOR_LOG_LEVEL or INFO)")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = MigratorConfig()

    source_url = args.source or config.source_url
    target_url = args.target or config.target_url
    if not source_url or not target_url:
        print("Both a source (--source / MIGRATOR_SOURCE_URL) and a target "
              "(--target / MIGRATOR_TARGET_URL) are required", file=sys.stderr)
        return 2

    handler = configure_logging((args.log_level or config.log_level).upper(),
                                resolve_log_dir(args, config))
    source = SourceDbConfig(url=source_url, driver=args.source_driver or config.source_driver,
                            username=args.source_user or config.source_user,
                            password=config.source_password)
    context = MigrationContext()

    try:
        tables = load_tables(args.definitions, context)
        db_manager = DatabaseManager(target_url)
        orchestrator = TableMigrationOrchestrator(db_manager,
                                                  insert_batch_size=config.insert_batch_size,
                                                  backfill_batch_size=config.backfill_batch_size)
        with MigrationRunner(db_manager, orchestrator) as runner:
            try:
                runner.run(source, tables, context=context, cleanup=args.cleanup)
            finally:
                print_report(runner.summaries)
        logger.info("Migration completed successfully")
        return 0
    except MigrationError as e:
        logger.error(f"Fatal error: {e}")
        return 1
    except (ImportError, ValueError, SQLAlchemyError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 1
    finally:
        if handler is not None:
            logging.getLogger().removeHandler(handler)
            handler.close()


if __name__ == "__main__":
    sys.exit(main())
