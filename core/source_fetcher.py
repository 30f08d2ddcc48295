#!/usr/bin/env python3
"""
Legacy Source Data Fetcher
==========================

Reads one legacy table into memory as a list of column -> value rows.

The requested column set comes from configuration written against one
version of the legacy product; the table being read may belong to another.
Columns are therefore reconciled against the live schema before the query is
built: missing columns are logged and dropped, only a missing id column is
fatal.

Identifier quoting and row limiting (LIMIT, TOP, FETCH FIRST) are left to the
SQLAlchemy dialect of the source URL.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import column, create_engine, inspect, select, table, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

from core.descriptors import SourceDbConfig, SourceRow
from core.errors import ConfigurationError, FetchError
from core.type_registry import TypeInfo, TypeRegistry

logger = logging.getLogger(__name__)

ID_CHUNK_SIZE = 2000


def split_table_name(table_name: str) -> Tuple[Optional[str], str]:
    """'catalog.schema.table' / 'schema.table' / 'table' -> (schema, table)"""
    parts = [p.strip() for p in table_name.split('.') if p.strip()]
    if not parts:
        raise ConfigurationError(f"Invalid source table name: {table_name!r}")
    if len(parts) == 1:
        return None, parts[0]
    return parts[-2], parts[-1]


class SourceDataFetcher:
    def __init__(self, engine_factory: Callable[..., Engine] = create_engine):
        self.engine_factory = engine_factory

    def fetch(self, connection_config: SourceDbConfig, table_name: str, requested_columns: Sequence[str],
              id_column: str, where_clause: Optional[str] = None, order_by: Optional[str] = None,
              limit: Optional[int] = None) -> List[SourceRow]:
        """Materialize every matching row of table_name.

        Returns rows keyed by the requested column names. Raises
        ConfigurationError when id_column is absent and FetchError when the
        store cannot be read.
        """
        return self._run(connection_config, table_name, requested_columns, id_column,
                         where_clause=where_clause, order_by=order_by, limit=limit)

    def fetch_for_ids(self, connection_config: SourceDbConfig, table_name: str,
                      requested_columns: Sequence[str], id_column: str, ids: Sequence[Any],
                      order_by: Optional[str] = None) -> List[SourceRow]:
        """Same as fetch, restricted to the given source ids (queried in chunks)"""
        if not ids:
            return []
        return self._run(connection_config, table_name, requested_columns, id_column,
                         order_by=order_by, ids=list(ids))

    def _run(self, connection_config: SourceDbConfig, table_name: str, requested_columns: Sequence[str],
             id_column: str, where_clause: Optional[str] = None, order_by: Optional[str] = None,
             limit: Optional[int] = None, ids: Optional[List[Any]] = None) -> List[SourceRow]:
        safe_url = connection_config.safe_url()
        try:
            engine = self.engine_factory(connection_config.engine_url())
        except (SQLAlchemyError, ImportError) as e:
            raise FetchError(f"Cannot open source connection {safe_url}: {e}", {'table': table_name})

        try:
            with engine.connect() as conn:
                schema, name, actual = self._actual_columns(conn, table_name)
                if not actual:
                    logger.warning(f"No columns found for source table {table_name}; treating it as empty")
                    return []

                selected = self._reconcile(table_name, requested_columns, actual, id_column)
                return self._select(conn, schema, name, selected, actual, id_column,
                                    where_clause, order_by, limit, ids)
        except (ConfigurationError, FetchError):
            raise
        except SQLAlchemyError as e:
            raise FetchError(f"Failed to read {table_name} from {safe_url}: {e}", {'table': table_name}) from e
        finally:
            engine.dispose()

    def _actual_columns(self, conn: Connection, table_name: str):
        schema, name = split_table_name(table_name)
        name_found, columns = self._reflect(conn, name, schema)
        if not columns and schema is not None:
            logger.debug(f"No columns for {table_name} in schema {schema}, retrying without schema")
            schema = None
            name_found, columns = self._reflect(conn, name, None)
        return schema, name_found, columns

    @staticmethod
    def _reflect(conn: Connection, name: str, schema: Optional[str]) -> Tuple[str, Dict[str, Dict[str, Any]]]:
        """(table name as stored, upper-cased column name -> reflected column info)"""
        inspector = inspect(conn)
        for candidate in dict.fromkeys([name, name.upper(), name.lower()]):
            try:
                reflected = inspector.get_columns(candidate, schema=schema)
            except NoSuchTableError:
                continue
            except SQLAlchemyError as e:
                if schema is None:
                    raise
                # e.g. SQLite rejects an unknown schema instead of reporting no table
                logger.debug(f"Reflecting {schema}.{candidate} failed: {e}")
                return name, {}
            if reflected:
                return candidate, {col['name'].upper(): col for col in reflected}
        return name, {}

    @staticmethod
    def _reconcile(table_name: str, requested_columns: Sequence[str],
                   actual: Dict[str, Dict[str, Any]], id_column: str) -> Dict[str, str]:
        """Requested name -> actual name for the requested columns present in the source"""
        selected: Dict[str, str] = {}
        for requested in requested_columns:
            info = actual.get(requested.upper())
            if info is None:
                logger.warning(f"Column '{requested}' not found in source table {table_name}; skipping it")
                continue
            selected[requested] = info['name']

        if id_column not in selected:
            info = actual.get(id_column.upper())
            if info is None:
                raise ConfigurationError(
                    f"Source id column '{id_column}' not found in table {table_name}",
                    {'table': table_name, 'available': sorted(c['name'] for c in actual.values())})
            selected[id_column] = info['name']
        return selected

    def _select(self, conn: Connection, schema: Optional[str], name: str, selected: Dict[str, str],
                actual: Dict[str, Dict[str, Any]], id_column: str, where_clause: Optional[str],
                order_by: Optional[str], limit: Optional[int], ids: Optional[List[Any]]) -> List[SourceRow]:
        physical = list(dict.fromkeys(selected.values()))
        source = table(name, *[column(c) for c in physical], schema=schema)
        types: Dict[str, TypeInfo] = {c: TypeRegistry.map_to_ir(actual[c.upper()]['type']) for c in physical}
        id_actual = selected[id_column]

        stmt = select(*source.c)
        if where_clause:
            stmt = stmt.where(text(where_clause))
        if order_by:
            stmt = stmt.order_by(text(order_by))
        else:
            stmt = stmt.order_by(source.c[id_actual].asc())
        # A limit of zero (or none) fetches every row
        if limit:
            stmt = stmt.limit(limit)

        if ids is None:
            statements = [stmt]
        else:
            statements = [stmt.where(source.c[id_actual].in_(ids[i:i + ID_CHUNK_SIZE]))
                          for i in range(0, len(ids), ID_CHUNK_SIZE)]

        logger.info(f"Fetching {len(physical)} columns from {name if schema is None else f'{schema}.{name}'}")
        rows: List[SourceRow] = []
        for statement in statements:
            result = conn.execute(statement)
            for record in result.mappings():
                rows.append({requested: TypeRegistry.normalize_temporal(record[physical_name], types[physical_name])
                             for requested, physical_name in selected.items()})
        logger.info(f"Fetched {len(rows)} rows from {name}")
        return rows
