#!/usr/bin/env python3
"""
legacy-migrator - Programmatic Entry Point
This is the canonical way to run a legacy migration from application code.
"""

import logging
from typing import Iterable, List, Optional

from config.secure_config import MigratorConfig, get_config
from core.database_manager import DatabaseManager
from core.definitions import TableSpec
from core.descriptors import MigrationContext, MigrationRunSummary, SourceDbConfig
from core.migration import MigrationRunner, ProgressCallback
from core.orchestrator import TableMigrationOrchestrator

logger = logging.getLogger(__name__)

__version__ = "1.0.0"


class LegacyMigrator:
    """
    Blessed API for legacy-migrator

    Example:
        >>> from legacy_migrator import LegacyMigrator
        >>>
        >>> with LegacyMigrator(source_url="mssql+pyodbc://legacy-dsn",
        ...                     target_url="postgresql+psycopg2://app@localhost/app") as migrator:
        ...     summaries = migrator.migrate(TABLES)
    """

    def __init__(self, source_url: Optional[str] = None, target_url: Optional[str] = None,
                 config: Optional[MigratorConfig] = None):
        self.config = config or get_config()
        if source_url:
            self.source = SourceDbConfig(url=source_url, driver=self.config.source_driver,
                                         username=self.config.source_user,
                                         password=self.config.source_password)
        else:
            self.source = self.config.source_config()

        target_url = target_url or self.config.target_url
        if not target_url:
            raise ValueError("No target URL configured (MIGRATOR_TARGET_URL)")
        self.db_manager = DatabaseManager(target_url)
        self.runner = MigrationRunner(self.db_manager, TableMigrationOrchestrator(
            self.db_manager,
            insert_batch_size=self.config.insert_batch_size,
            backfill_batch_size=self.config.backfill_batch_size))

    def migrate(self, tables: Iterable[TableSpec], context: Optional[MigrationContext] = None,
                progress_callback: Optional[ProgressCallback] = None,
                cleanup: bool = False) -> List[MigrationRunSummary]:
        """Migrate the tables in order; raises MigrationAbortedError on the first failed table"""
        return self.runner.run(self.source, tables, context=context,
                               progress_callback=progress_callback, cleanup=cleanup)

    def close(self):
        self.runner.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
