#!/usr/bin/env python3
"""
Table Migration Orchestrator
============================

Drives one table through its phases:

    FETCHING -> INSERTING -> BACKFILLING (self-referencing tables)
             -> ACTIVATING (historical tables) -> DONE

Metadata and fetch failures propagate to the caller. Row failures and
backfill batch failures are counted and the table carries on.
"""

import logging
import time
from typing import Any, Iterator, List, Optional, Sequence

from core.activeness import ActivenessProcessor
from core.backfill import DEFAULT_BATCH_SIZE, ForeignKeyBackfillProcessor, parent_source_column
from core.database_manager import DatabaseManager
from core.descriptors import (MigrationPhase, MigrationRunSummary, SourceDbConfig, SourceRow,
                              TableMigrationDescriptor)
from core.errors import ConfigurationError
from core.metadata import MetadataResolver, TypeMetadata
from core.row_processor import RowInsertProcessor, self_reference_field
from core.source_fetcher import SourceDataFetcher

logger = logging.getLogger(__name__)

DEFAULT_INSERT_BATCH_SIZE = 2000


def batches(rows: Sequence[Any], size: int) -> Iterator[List[Any]]:
    for start in range(0, len(rows), size):
        yield list(rows[start:start + size])


class TableMigrationOrchestrator:
    def __init__(self, db_manager: DatabaseManager, fetcher: Optional[SourceDataFetcher] = None,
                 resolver: Optional[MetadataResolver] = None,
                 insert_batch_size: int = DEFAULT_INSERT_BATCH_SIZE,
                 backfill_batch_size: int = DEFAULT_BATCH_SIZE,
                 activeness_batch_size: int = DEFAULT_BATCH_SIZE):
        if insert_batch_size < 1 or backfill_batch_size < 1 or activeness_batch_size < 1:
            raise ValueError("batch sizes must be positive")
        self.db_manager = db_manager
        self.fetcher = fetcher or SourceDataFetcher()
        self.resolver = resolver or MetadataResolver()
        self.row_processor = RowInsertProcessor(db_manager)
        self.backfill_processor = ForeignKeyBackfillProcessor(db_manager)
        self.activeness_processor = ActivenessProcessor(db_manager)
        self.insert_batch_size = insert_batch_size
        self.backfill_batch_size = backfill_batch_size
        self.activeness_batch_size = activeness_batch_size

    def migrate_table(self, descriptor: TableMigrationDescriptor,
                      source_config: SourceDbConfig) -> MigrationRunSummary:
        started = time.monotonic()
        metadata = self.resolver.resolve(descriptor.target_type)
        self_referencing = self._validate(descriptor, metadata)

        summary = MigrationRunSummary(table=descriptor.source_table, target=metadata.qualified_table)
        logger.info(f"Migrating {descriptor.source_table} -> {metadata.qualified_table}"
                    f"{' (self-referencing)' if self_referencing else ''}")

        summary.phase = MigrationPhase.FETCHING
        rows = self.fetcher.fetch(source_config, descriptor.source_table, descriptor.requested_columns(),
                                  descriptor.source_id_column, where_clause=descriptor.where_clause,
                                  order_by=descriptor.order_by, limit=descriptor.max_rows)
        summary.rows_fetched = len(rows)
        rows = self._prepare_rows(rows, descriptor)
        summary.rows_filtered = summary.rows_fetched - len(rows)

        summary.phase = MigrationPhase.INSERTING
        self._insert_pass(rows, descriptor, metadata, summary)

        if self_referencing:
            summary.phase = MigrationPhase.BACKFILLING
            self._backfill_pass(rows, descriptor, metadata, summary)

        if descriptor.process_historical_activeness:
            summary.phase = MigrationPhase.ACTIVATING
            self._activeness_pass(rows, descriptor, metadata, summary)

        summary.phase = MigrationPhase.DONE
        summary.elapsed_seconds = time.monotonic() - started
        logger.info(f"Finished {descriptor.source_table}: processed={summary.rows_processed}, "
                    f"failed={summary.rows_failed}, inserted={summary.rows_inserted}, "
                    f"existing={summary.rows_existing}, fk_updated={summary.fk_rows_updated}, "
                    f"failed_batches={summary.failed_backfill_batches}, "
                    f"elapsed={summary.elapsed_seconds:.2f}s")
        return summary

    def _validate(self, descriptor: TableMigrationDescriptor, metadata: TypeMetadata) -> bool:
        """Check the descriptor against the target type; returns whether a backfill pass is needed"""
        mapper = metadata.field_mapper
        if descriptor.target_id_field != metadata.id_field:
            raise ConfigurationError(
                f"{descriptor.source_table}: target id field '{descriptor.target_id_field}' is not the "
                f"identity of {metadata.target_class.__name__} ('{metadata.id_field}')")

        unknown = [f for f in descriptor.column_mapping.values() if not mapper.has_field(f)]
        if unknown:
            raise ConfigurationError(f"{descriptor.source_table}: {metadata.target_class.__name__} "
                                     f"has no field(s) {', '.join(unknown)}")

        if descriptor.process_historical_activeness:
            self.activeness_processor.validate(descriptor, metadata)

        field_name = self_reference_field(descriptor, metadata)
        if descriptor.self_referencing and field_name is None:
            raise ConfigurationError(f"{descriptor.source_table}: marked self-referencing but "
                                     f"{metadata.target_class.__name__} has no self-reference")
        if field_name is None:
            return False
        fk = metadata.foreign_keys.get(field_name)
        if fk is None or not fk.is_self_reference:
            raise ConfigurationError(f"{descriptor.source_table}: '{field_name}' is not a self-referencing "
                                     f"foreign key on {metadata.target_class.__name__}")
        if parent_source_column(descriptor, metadata) is None:
            logger.warning(f"{descriptor.source_table}: no source column feeds '{field_name}'; "
                           f"parent references will stay empty")
            return False
        return True

    @staticmethod
    def _prepare_rows(rows: List[SourceRow], descriptor: TableMigrationDescriptor) -> List[SourceRow]:
        if descriptor.source_id_filter is not None:
            allowed = descriptor.source_id_filter
            rows = [r for r in rows if r.get(descriptor.source_id_column) in allowed]
        if descriptor.row_filter is not None:
            rows = [r for r in rows if descriptor.row_filter(r)]
        if descriptor.row_mutator is not None:
            for row in rows:
                descriptor.row_mutator(row)
        return rows

    def _insert_pass(self, rows: List[SourceRow], descriptor: TableMigrationDescriptor,
                     metadata: TypeMetadata, summary: MigrationRunSummary):
        self.row_processor.reset_stats()
        for chunk in batches(rows, self.insert_batch_size):
            succeeded = []
            for row in chunk:
                summary.rows_processed += 1
                if self.row_processor.insert_row(row, descriptor, metadata):
                    succeeded.append(row)
                else:
                    summary.rows_failed += 1
            logger.info(f"{descriptor.source_table}: {summary.rows_processed}/{len(rows)} rows processed")

            if descriptor.on_batch_success is not None and succeeded:
                try:
                    descriptor.on_batch_success(succeeded)
                except Exception as e:
                    logger.error(f"{descriptor.source_table}: batch success callback failed: {e}")

        stats = self.row_processor.stats
        summary.rows_inserted = stats['inserted']
        summary.rows_existing = stats['existing']
        summary.rows_null_id = stats['null_id']

    def _backfill_pass(self, rows: List[SourceRow], descriptor: TableMigrationDescriptor,
                       metadata: TypeMetadata, summary: MigrationRunSummary):
        for number, batch in enumerate(batches(rows, self.backfill_batch_size), start=1):
            try:
                summary.fk_rows_updated += self.backfill_processor.backfill_batch(batch, descriptor, metadata)
            except ConfigurationError:
                raise
            except Exception as e:
                summary.failed_backfill_batches += 1
                logger.error(f"{descriptor.source_table}: backfill batch {number} rolled back: {e}")

    def _activeness_pass(self, rows: List[SourceRow], descriptor: TableMigrationDescriptor,
                         metadata: TypeMetadata, summary: MigrationRunSummary):
        pairs = self.activeness_processor.plan(rows, descriptor, metadata)
        for number, batch in enumerate(batches(pairs, self.activeness_batch_size), start=1):
            try:
                summary.active_rows_updated += self.activeness_processor.apply_batch(batch, descriptor, metadata)
            except Exception as e:
                summary.failed_activeness_batches += 1
                logger.error(f"{descriptor.source_table}: activeness batch {number} rolled back: {e}")
