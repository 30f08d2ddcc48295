"""
Migration Runner
================

Runs an ordered list of table migrations against one legacy source.

Tables are migrated strictly in the order given, which must respect the
target schema's foreign keys (referenced tables first). The first table that
fails with an uncontained error stops the run: later tables may reference
rows it never delivered.
"""

import logging
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import table

from core.database_manager import DatabaseManager
from core.definitions import TableSpec, build_descriptors
from core.descriptors import MigrationContext, MigrationRunSummary, SourceDbConfig, TableMigrationDescriptor
from core.errors import MigrationAbortedError
from core.orchestrator import TableMigrationOrchestrator

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[TableMigrationDescriptor, Optional[Exception]], None]

# Driver-level statement errors are already reported per row by the processors
QUIET_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool")


@contextmanager
def quieted(logger_names: Sequence[str]) -> Iterator[None]:
    previous = {}
    for name in logger_names:
        log = logging.getLogger(name)
        previous[name] = log.level
        log.setLevel(logging.CRITICAL)
    try:
        yield
    finally:
        for name, level in previous.items():
            logging.getLogger(name).setLevel(level)


class MigrationRunner:
    def __init__(self, db_manager: DatabaseManager, orchestrator: Optional[TableMigrationOrchestrator] = None,
                 quiet_loggers: Sequence[str] = QUIET_LOGGERS):
        self.db_manager = db_manager
        self.orchestrator = orchestrator or TableMigrationOrchestrator(db_manager)
        self.quiet_loggers = quiet_loggers
        self.summaries: List[MigrationRunSummary] = []

    def close(self):
        """Close database connections and release resources."""
        if self.db_manager:
            self.db_manager.close_all()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def run(self, source_config: SourceDbConfig, tables: Iterable[TableSpec],
            context: Optional[MigrationContext] = None, progress_callback: Optional[ProgressCallback] = None,
            cleanup: bool = False) -> List[MigrationRunSummary]:
        """Migrate every table in order.

        Args:
            source_config: connection descriptor for the legacy store
            tables: descriptors, TableDefinitions or builder callables, in dependency order
            context: bookkeeping shared by the tables' hooks (a fresh one if omitted)
            progress_callback: called after each table with (descriptor, error or None)
            cleanup: delete all rows from the target tables (in reverse order) first

        Returns:
            One summary per migrated table.

        Raises:
            MigrationAbortedError: a table failed; no later table was attempted.
        """
        context = context if context is not None else MigrationContext()
        descriptors = build_descriptors(tables, context)
        self.summaries = []
        started = time.monotonic()
        logger.info(f"Starting migration of {len(descriptors)} tables from {source_config.safe_url()}")

        with quieted(self.quiet_loggers):
            if cleanup:
                self.cleanup_targets(descriptors, progress_callback)

            for index, descriptor in enumerate(descriptors, start=1):
                logger.info(f"Table {index}/{len(descriptors)}: {descriptor.source_table}")
                error = None
                try:
                    descriptor = self._before_migration(descriptor)
                    summary = self.orchestrator.migrate_table(descriptor, source_config)
                except Exception as e:
                    error = e
                    logger.error(f"Migration failed for table {descriptor.source_table}: {e}")
                else:
                    self.summaries.append(summary)
                    self._post_migration(descriptor)

                self._notify(progress_callback, descriptor, error)
                if error is not None:
                    raise MigrationAbortedError(descriptor.source_table, error) from error

        logger.info(f"Migration completed: {len(self.summaries)} tables in {time.monotonic() - started:.2f}s")
        return self.summaries

    def cleanup_targets(self, descriptors: Sequence[TableMigrationDescriptor],
                        progress_callback: Optional[ProgressCallback] = None):
        """Empty the target tables, dependents first.

        Every target type is resolved before anything is deleted. A table
        that cannot be resolved or emptied aborts the run like a failed
        migration.
        """
        owners: Dict[Tuple[Optional[str], str], TableMigrationDescriptor] = {}
        for descriptor in descriptors:
            try:
                metadata = self.orchestrator.resolver.resolve(descriptor.target_type)
            except Exception as e:
                self._abort_cleanup(descriptor, e, progress_callback)
            owners.setdefault((metadata.schema, metadata.table_name), descriptor)

        for (schema, name), descriptor in reversed(list(owners.items())):
            try:
                deleted = self.db_manager.delete_all(table(name, schema=schema))
            except Exception as e:
                self._abort_cleanup(descriptor, e, progress_callback)
            logger.info(f"Cleaned target table {name}: {deleted} rows deleted")

    def _abort_cleanup(self, descriptor: TableMigrationDescriptor, error: Exception,
                       progress_callback: Optional[ProgressCallback]):
        logger.error(f"Cleanup failed for table {descriptor.source_table}: {error}")
        self._notify(progress_callback, descriptor, error)
        raise MigrationAbortedError(descriptor.source_table, error) from error

    @staticmethod
    def _before_migration(descriptor: TableMigrationDescriptor) -> TableMigrationDescriptor:
        if descriptor.before_migration is None:
            return descriptor
        replacement = descriptor.before_migration(descriptor)
        if replacement is None:
            return descriptor
        if not isinstance(replacement, TableMigrationDescriptor):
            raise TypeError(f"before_migration for {descriptor.source_table} returned {type(replacement).__name__}")
        return replacement

    @staticmethod
    def _post_migration(descriptor: TableMigrationDescriptor):
        if descriptor.post_migration_success is None:
            return
        try:
            descriptor.post_migration_success()
        except Exception as e:
            logger.error(f"Post-migration action for {descriptor.source_table} failed: {e}")

    @staticmethod
    def _notify(progress_callback: Optional[ProgressCallback], descriptor: TableMigrationDescriptor,
                error: Optional[Exception]):
        if progress_callback is None:
            return
        try:
            progress_callback(descriptor, error)
        except Exception as e:
            logger.error(f"Progress callback failed for {descriptor.source_table}: {e}")
