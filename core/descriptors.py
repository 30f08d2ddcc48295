#!/usr/bin/env python3
"""
Migration Descriptors
=====================

Declarative configuration objects handed to the migration engine:

- SourceDbConfig: how to reach the legacy store
- TableMigrationDescriptor: how one legacy table becomes one target type
- MigrationContext: run-scoped bookkeeping shared between table hooks
- MigrationRunSummary: per-table counters produced by the orchestrator

Usage:
    descriptor = TableMigrationDescriptor(
        source_table="legacy.SUBDIRECCION",
        target_type="app.models:Subdivision",
        source_id_column="SUBDIRECCION_ID",
        target_id_field="id",
        column_mapping={"SUBDIRECCION_PERTENECE": "parent_subdivision_id"},
        self_referencing=True,
        self_reference_field="parent_subdivision_id",
    )
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Collection, Dict, Iterable, List, Mapping, Optional, Set

from sqlalchemy.engine import URL, make_url

SourceRow = Dict[str, Any]


@dataclass(frozen=True)
class SourceDbConfig:
    """Connection descriptor for the legacy store.

    ``driver`` is a SQLAlchemy driver name (``postgresql+psycopg2``,
    ``mysql+pymysql``, ``mssql+pyodbc``...). When given it replaces the
    scheme of ``url``.
    """
    url: str
    driver: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)

    def engine_url(self) -> URL:
        url = make_url(self.url)
        changes = {}
        if self.driver:
            changes['drivername'] = self.driver
        if self.username:
            changes['username'] = self.username
        if self.password:
            changes['password'] = self.password
        return url.set(**changes) if changes else url

    def safe_url(self) -> str:
        """URL with the password masked, for logs"""
        return self.engine_url().render_as_string(hide_password=True)


@dataclass(frozen=True)
class TableMigrationDescriptor:
    """Immutable configuration for migrating one legacy table."""

    source_table: str
    target_type: Any
    source_id_column: str
    target_id_field: str
    column_mapping: Mapping[str, str] = field(default_factory=dict)

    row_filter: Optional[Callable[[SourceRow], bool]] = None
    row_mutator: Optional[Callable[[SourceRow], None]] = None
    value_transformers: Mapping[str, Callable[[Any], Any]] = field(default_factory=dict)
    value_replacements: Mapping[str, Mapping[Any, Any]] = field(default_factory=dict)

    max_rows: Optional[int] = None  # None or 0: no limit
    order_by: Optional[str] = None
    where_clause: Optional[str] = None
    source_id_filter: Optional[Collection[Any]] = None

    treat_zero_as_null: bool = True
    self_referencing: bool = False
    self_reference_field: Optional[str] = None
    self_reference_source_column: Optional[str] = None

    # Historical activeness (chains of versions sharing a history-control id)
    process_historical_activeness: bool = False
    history_control_column: Optional[str] = None
    valid_from_column: Optional[str] = None
    active_field: str = "active"

    on_batch_success: Optional[Callable[[List[SourceRow]], None]] = None
    before_migration: Optional[Callable[['TableMigrationDescriptor'], Optional['TableMigrationDescriptor']]] = None
    post_migration_success: Optional[Callable[[], None]] = None

    def __post_init__(self):
        if not self.source_table:
            raise ValueError("source_table is required")
        if not self.source_id_column:
            raise ValueError("source_id_column is required")
        if not self.target_id_field:
            raise ValueError("target_id_field is required")

        targets = list(self.column_mapping.values())
        duplicates = sorted({t for t in targets if targets.count(t) > 1})
        if duplicates:
            raise ValueError(f"{self.source_table}: target fields mapped more than once: {', '.join(duplicates)}")
        if self.max_rows is not None and self.max_rows < 0:
            raise ValueError("max_rows must be >= 0")

        # Freeze the mappings so hooks cannot mutate a descriptor in flight
        object.__setattr__(self, 'column_mapping', MappingProxyType(dict(self.column_mapping)))
        object.__setattr__(self, 'value_transformers', MappingProxyType(dict(self.value_transformers)))
        object.__setattr__(self, 'value_replacements', MappingProxyType(
            {k: MappingProxyType(dict(v)) for k, v in self.value_replacements.items()}))
        if self.source_id_filter is not None:
            object.__setattr__(self, 'source_id_filter', frozenset(self.source_id_filter))

    @property
    def name(self) -> str:
        return self.source_table

    def requested_columns(self) -> List[str]:
        """Source columns to read: id first, then mapped and auxiliary columns"""
        columns = [self.source_id_column]
        extra = list(self.column_mapping.keys())
        if self.self_reference_source_column:
            extra.append(self.self_reference_source_column)
        if self.process_historical_activeness:
            extra.extend(c for c in (self.history_control_column, self.valid_from_column) if c)
        lowered = {self.source_id_column.lower()}
        for column in extra:
            if column.lower() not in lowered:
                lowered.add(column.lower())
                columns.append(column)
        return columns

    def source_column_for(self, target_field: str) -> Optional[str]:
        for source_column, mapped_field in self.column_mapping.items():
            if mapped_field == target_field:
                return source_column
        return None


class MigrationContext:
    """Run-scoped bookkeeping passed to every table definition.

    Id sets only grow during a run; later tables read them to decide whether
    a reference points at a row that actually made it across.
    """

    def __init__(self, options: Optional[Dict[str, Any]] = None):
        self.options: Dict[str, Any] = dict(options or {})
        self._ids: Dict[str, Set[Any]] = {}

    def record_ids(self, key: str, ids: Iterable[Any]) -> int:
        bucket = self._ids.setdefault(key, set())
        before = len(bucket)
        bucket.update(i for i in ids if i is not None)
        return len(bucket) - before

    def ids(self, key: str) -> Set[Any]:
        return self._ids.setdefault(key, set())

    def has_id(self, key: str, value: Any) -> bool:
        return value in self._ids.get(key, ())

    def keys(self) -> List[str]:
        return sorted(self._ids)

    def __repr__(self):
        sizes = ', '.join(f"{k}={len(v)}" for k, v in sorted(self._ids.items()))
        return f"MigrationContext({sizes})"


class MigrationPhase(Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    INSERTING = "inserting"
    BACKFILLING = "backfilling"
    ACTIVATING = "activating"
    DONE = "done"


@dataclass
class MigrationRunSummary:
    """Per-table counters"""
    table: str
    target: str = ""
    phase: MigrationPhase = MigrationPhase.PENDING
    rows_fetched: int = 0
    rows_filtered: int = 0
    rows_processed: int = 0
    rows_failed: int = 0
    rows_inserted: int = 0
    rows_existing: int = 0
    rows_null_id: int = 0
    fk_rows_updated: int = 0
    failed_backfill_batches: int = 0
    active_rows_updated: int = 0
    failed_activeness_batches: int = 0
    elapsed_seconds: float = 0.0

    @property
    def succeeded(self) -> int:
        return self.rows_processed - self.rows_failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            'table': self.table,
            'target': self.target,
            'phase': self.phase.value,
            'rows_fetched': self.rows_fetched,
            'rows_filtered': self.rows_filtered,
            'rows_processed': self.rows_processed,
            'rows_failed': self.rows_failed,
            'rows_inserted': self.rows_inserted,
            'rows_existing': self.rows_existing,
            'rows_null_id': self.rows_null_id,
            'fk_rows_updated': self.fk_rows_updated,
            'failed_backfill_batches': self.failed_backfill_batches,
            'active_rows_updated': self.active_rows_updated,
            'failed_activeness_batches': self.failed_activeness_batches,
            'elapsed_seconds': round(self.elapsed_seconds, 3),
        }
