"""
Historical activeness pass.

Some legacy tables keep every version of a record as its own row, linked by a
history-control id and ordered by a valid-from timestamp. Only the current
version of each chain should be active in the target:

- a version is valid until one second before the next version starts; the
  last version is open-ended
- the last version of a chain is active when now falls inside its validity
- earlier versions are inactive
- rows without a history-control id (null or <= 0) stand alone and are active
  once their valid-from has passed
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from core.database_manager import DatabaseManager
from core.descriptors import SourceRow, TableMigrationDescriptor
from core.errors import ConfigurationError, ConversionError
from core.metadata import TypeMetadata
from core.raw_writer import RawWriter
from core.type_registry import IRType, TypeInfo, TypeRegistry

logger = logging.getLogger(__name__)

OPEN_END = datetime(9999, 12, 31, 23, 59, 59)
_TIMESTAMP = TypeInfo(IRType.TIMESTAMP)
_BIGINT = TypeInfo(IRType.BIGINT)


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    try:
        result = TypeRegistry.coerce(value, _TIMESTAMP)
    except ConversionError:
        return None
    return result.replace(tzinfo=None) if result.tzinfo else result


def _history_key(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        key = TypeRegistry.coerce(value, _BIGINT)
    except ConversionError:
        return None
    return key if key > 0 else None


def compute_activeness(rows: List[SourceRow], id_column: str, history_column: str, valid_from_column: str,
                       now: Optional[datetime] = None) -> Dict[Any, bool]:
    """Source id -> active flag for every row with an id"""
    now = now or datetime.now()
    chains: Dict[int, List[Tuple[Optional[datetime], Any]]] = defaultdict(list)
    result: Dict[Any, bool] = {}

    for row in rows:
        source_id = row.get(id_column)
        if source_id is None:
            continue
        valid_from = _as_datetime(row.get(valid_from_column))
        key = _history_key(row.get(history_column))
        if key is None:
            result[source_id] = valid_from is not None and valid_from <= now
        else:
            chains[key].append((valid_from, source_id))

    for chain in chains.values():
        for _, source_id in chain:
            result[source_id] = False
        dated = sorted((item for item in chain if item[0] is not None), key=lambda item: item[0])
        windows = validity_windows([valid_from for valid_from, _ in dated])
        if windows:
            valid_from, valid_to = windows[-1]
            result[dated[-1][1]] = valid_from <= now <= valid_to
    return result


def validity_windows(chain: List[datetime]) -> List[Tuple[datetime, datetime]]:
    """(valid_from, valid_to) per version of an ordered chain"""
    windows = []
    for index, valid_from in enumerate(chain):
        if index + 1 < len(chain):
            valid_to = chain[index + 1] - timedelta(seconds=1)
        else:
            valid_to = OPEN_END
        windows.append((valid_from, valid_to))
    return windows


class ActivenessProcessor:
    def __init__(self, db_manager: DatabaseManager, raw_writer: Optional[RawWriter] = None):
        self.db_manager = db_manager
        self.raw_writer = raw_writer or RawWriter()

    def validate(self, descriptor: TableMigrationDescriptor, metadata: TypeMetadata):
        if not descriptor.history_control_column or not descriptor.valid_from_column:
            raise ConfigurationError(f"{descriptor.source_table}: historical activeness needs "
                                     f"history_control_column and valid_from_column")
        if not metadata.field_mapper.has_field(descriptor.active_field):
            raise ConfigurationError(f"{descriptor.source_table}: {metadata.target_class.__name__} "
                                     f"has no '{descriptor.active_field}' field")

    def plan(self, rows: List[SourceRow], descriptor: TableMigrationDescriptor, metadata: TypeMetadata,
             now: Optional[datetime] = None) -> List[Tuple[Any, bool]]:
        """(target id, active) pairs for the given rows"""
        flags = compute_activeness(rows, descriptor.source_id_column, descriptor.history_control_column,
                                   descriptor.valid_from_column, now=now)
        pairs = []
        for source_id, active in flags.items():
            try:
                pairs.append((metadata.field_mapper.coerce(metadata.id_field, source_id), active))
            except ConversionError as e:
                logger.warning(f"{descriptor.source_table}: skipping activeness for id {source_id!r}: {e}")
        return pairs

    def apply_batch(self, pairs: List[Tuple[Any, bool]], descriptor: TableMigrationDescriptor,
                    metadata: TypeMetadata) -> int:
        mapper = metadata.field_mapper
        active_column = mapper.column(descriptor.active_field)
        column_types = {
            metadata.id_column: mapper.column(metadata.id_field).type,
            active_column.name: active_column.type,
        }
        with self.db_manager.transaction() as session:
            return self.raw_writer.update_many(session, metadata.table_name, active_column.name,
                                               metadata.id_column, pairs, schema=metadata.schema,
                                               column_types=column_types)
