"""
Foreign-key backfill (pass 2 for self-referencing tables).

Pass 1 inserts every row with its parent reference NULL so that source row
order does not matter. This pass re-reads each row's parent id and sets the
reference with one batched UPDATE per batch. A batch is one transaction:
if any statement in it fails, none of its updates are kept.
"""

import logging
from typing import Any, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from core.database_manager import DatabaseManager
from core.descriptors import SourceRow, TableMigrationDescriptor
from core.errors import BackfillError, ConfigurationError
from core.metadata import ForeignKeyDescriptor, TypeMetadata
from core.raw_writer import RawWriter
from core.row_processor import is_zero_id, self_reference_field
from core.type_registry import TypeRegistry

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100


def parent_source_column(descriptor: TableMigrationDescriptor, metadata: TypeMetadata) -> Optional[str]:
    if descriptor.self_reference_source_column:
        return descriptor.self_reference_source_column
    field_name = self_reference_field(descriptor, metadata)
    return descriptor.source_column_for(field_name) if field_name else None


class ForeignKeyBackfillProcessor:
    def __init__(self, db_manager: DatabaseManager, raw_writer: Optional[RawWriter] = None):
        self.db_manager = db_manager
        self.raw_writer = raw_writer or RawWriter()

    def backfill_batch(self, batch: List[SourceRow], descriptor: TableMigrationDescriptor,
                       metadata: TypeMetadata) -> int:
        """Set the self-reference for every row of batch that has a parent.

        Returns the number of rows updated. Raises if the batch UPDATE fails;
        the batch has then been rolled back as a whole.
        """
        fk = self._self_reference(descriptor, metadata)
        parent_column = parent_source_column(descriptor, metadata)
        if parent_column is None:
            raise ConfigurationError(f"{descriptor.source_table}: no source column is mapped to "
                                     f"self-reference field '{fk.field_name}'")

        pairs = self._collect_pairs(batch, descriptor, metadata, fk, parent_column)
        if not pairs:
            return 0

        mapper = metadata.field_mapper
        column_types = {
            metadata.id_column: mapper.column(metadata.id_field).type,
            fk.column_name: mapper.column(fk.field_name).type,
        }
        try:
            with self.db_manager.transaction() as session:
                updated = self.raw_writer.update_many(session, metadata.table_name, fk.column_name,
                                                      metadata.id_column, pairs, schema=metadata.schema,
                                                      column_types=column_types)
        except SQLAlchemyError as e:
            reason = getattr(e, 'orig', None) or e
            raise BackfillError(f"{metadata.qualified_table}: {len(pairs)} parent updates rolled back: {reason}",
                                {'table': descriptor.source_table, 'rows': len(pairs)}) from e
        logger.debug(f"{descriptor.source_table}: backfilled {updated} parent references")
        return updated

    @staticmethod
    def _self_reference(descriptor: TableMigrationDescriptor, metadata: TypeMetadata) -> ForeignKeyDescriptor:
        field_name = self_reference_field(descriptor, metadata)
        fk = metadata.foreign_keys.get(field_name) if field_name else None
        if fk is None:
            raise ConfigurationError(f"{descriptor.source_table}: '{field_name}' is not a foreign key "
                                     f"on {metadata.target_class.__name__}")
        return fk

    @staticmethod
    def _collect_pairs(batch: List[SourceRow], descriptor: TableMigrationDescriptor, metadata: TypeMetadata,
                       fk: ForeignKeyDescriptor, parent_column: str) -> List[Tuple[Any, Any]]:
        pairs = []
        for row in batch:
            source_id = row.get(descriptor.source_id_column)
            raw_parent = row.get(parent_column)
            if source_id is None or raw_parent is None:
                continue
            if descriptor.treat_zero_as_null and is_zero_id(raw_parent):
                continue
            try:
                child_id = metadata.field_mapper.coerce(metadata.id_field, source_id)
                transformer = descriptor.value_transformers.get(fk.field_name)
                if transformer:
                    parent_id = transformer(raw_parent)
                else:
                    parent_id = TypeRegistry.coerce(raw_parent, fk.referenced_type)
            except Exception as e:
                logger.warning(f"{descriptor.source_table}: cannot resolve parent of source id {source_id} "
                               f"({parent_column}={raw_parent!r}): {e}")
                continue
            if parent_id is not None:
                pairs.append((child_id, parent_id))
        return pairs
