#!/usr/bin/env python3
"""
Row Insert Processor
====================

Pass 1 of a table migration: turns one legacy row into one target record.

Each call runs in its own transaction. A failing row is rolled back, logged
with its source id and reported as False; it never affects other rows.

Identity handling:
- the target id is always the legacy id (coerced to the id field type)
- rows whose id already exists in the target are skipped, so re-runs are
  idempotent
- store-generated ids are forced with a raw INSERT; caller-assigned ids go
  through Session.merge
- the self-reference field is always written as NULL here and filled in by
  the backfill pass
"""

import logging
from collections import Counter
from numbers import Number
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

from core.database_manager import DatabaseManager
from core.descriptors import SourceRow, TableMigrationDescriptor
from core.errors import PersistenceError
from core.metadata import TypeMetadata
from core.raw_writer import RawWriter

logger = logging.getLogger(__name__)


def is_zero_id(value: Any) -> bool:
    """Legacy 'no reference' sentinel: a numeric zero (booleans excluded)"""
    return isinstance(value, Number) and not isinstance(value, bool) and value == 0


class RowInsertProcessor:
    def __init__(self, db_manager: DatabaseManager, raw_writer: Optional[RawWriter] = None):
        self.db_manager = db_manager
        self.raw_writer = raw_writer or RawWriter()
        self.stats = Counter()

    def reset_stats(self):
        self.stats = Counter()

    def insert_row(self, source_row: SourceRow, descriptor: TableMigrationDescriptor,
                   metadata: TypeMetadata) -> bool:
        """Insert one legacy row. True means inserted or already present."""
        source_id = source_row.get(descriptor.source_id_column)
        if source_id is None:
            logger.debug(f"{descriptor.source_table}: skipping row with null id")
            self.stats['null_id'] += 1
            return True

        try:
            with self.db_manager.transaction() as session:
                target_id = metadata.field_mapper.coerce(metadata.id_field, source_id)
                if self.raw_writer.exists(session, metadata.table_name, metadata.id_column, target_id,
                                          schema=metadata.schema,
                                          key_type=metadata.field_mapper.column(metadata.id_field).type):
                    logger.debug(f"{descriptor.source_table}: id {source_id} already migrated, skipping")
                    self.stats['existing'] += 1
                    return True

                record = self._build_record(source_row, descriptor, metadata, target_id)
                self._persist(session, record, descriptor, metadata)
        except Exception as e:
            logger.error(f"{descriptor.source_table}: failed to migrate row with source id {source_id}: {e}")
            self.stats['failed'] += 1
            return False

        self.stats['inserted'] += 1
        return True

    def _build_record(self, source_row: SourceRow, descriptor: TableMigrationDescriptor,
                      metadata: TypeMetadata, target_id: Any) -> Any:
        mapper = metadata.field_mapper
        record = mapper.new_instance()
        mapper.set_field(record, metadata.id_field, target_id)

        self_ref_field = self_reference_field(descriptor, metadata)
        for source_column, field_name in descriptor.column_mapping.items():
            if field_name in (metadata.id_field, self_ref_field):
                continue
            if source_column not in source_row:
                continue
            raw = source_row[source_column]

            if descriptor.treat_zero_as_null and metadata.is_foreign_key(field_name) and is_zero_id(raw):
                continue

            try:
                transformer = descriptor.value_transformers.get(field_name)
                value = transformer(raw) if transformer else mapper.coerce(field_name, raw)
                replacements = descriptor.value_replacements.get(field_name)
                if replacements and value in replacements:
                    value = replacements[value]
                mapper.set_field(record, field_name, value)
            except Exception as e:
                logger.warning(f"{descriptor.source_table}: id {target_id}: could not set "
                               f"'{field_name}' from {source_column}={raw!r}: {e}")
        return record

    def _persist(self, session, record: Any, descriptor: TableMigrationDescriptor, metadata: TypeMetadata):
        mapper = metadata.field_mapper
        self_ref_field = self_reference_field(descriptor, metadata)
        if self_ref_field:
            mapper.set_field(record, self_ref_field, None)

        try:
            if metadata.id_generated:
                values = mapper.persistable_values(record)
                if self_ref_field:
                    values[mapper.column(self_ref_field).name] = None
                values = self._omit_defaulted(values, metadata, self_ref_field)
                self.raw_writer.insert(session, metadata.table, values)
            else:
                session.merge(record)
                session.flush()
        except SQLAlchemyError as e:
            reason = getattr(e, 'orig', None) or e
            raise PersistenceError(f"Cannot write to {metadata.qualified_table}: {reason}",
                                   {'table': metadata.qualified_table}) from e

    @staticmethod
    def _omit_defaulted(values, metadata: TypeMetadata, self_ref_field: Optional[str]):
        """Drop unset columns that have a default so the INSERT applies it"""
        mapper = metadata.field_mapper
        keep_null = mapper.column(self_ref_field).name if self_ref_field else None
        result = dict(values)
        for name in mapper.list_persistable_fields():
            column = mapper.column(name)
            if column.name in (metadata.id_column, keep_null) or result.get(column.name) is not None:
                continue
            if column.default is not None or column.server_default is not None:
                result.pop(column.name, None)
        return result


def self_reference_field(descriptor: TableMigrationDescriptor, metadata: TypeMetadata) -> Optional[str]:
    """The field written as NULL in pass 1, or None for non-hierarchical tables"""
    if descriptor.self_reference_field:
        return descriptor.self_reference_field
    if metadata.self_reference is not None:
        return metadata.self_reference.field_name
    return None
