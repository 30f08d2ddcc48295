"""
Raw table writer: parameterized INSERT and UPDATE statements outside the ORM.

Bypasses the ORM identity policy so a store-generated key can be forced to a
legacy value. Only the row processor's generated-id path and the batch
updaters use it; everything else goes through the ORM.
"""

import logging
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from sqlalchemy import Table, bindparam, column, insert, literal, select, table, update
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


def _table(name: str, columns: Iterable[str], schema: Optional[str], column_types: Optional[Mapping[str, Any]]):
    types = column_types or {}
    return table(name, *[column(c, types.get(c)) for c in columns], schema=schema)


class RawWriter:
    def insert(self, session: Session, target: Table, values: Dict[str, Any]) -> int:
        """INSERT INTO target with the given columns.

        Columns left out of ``values`` take their column default (scalar,
        callable or SQL expression) or the server default.
        """
        if not values:
            raise ValueError(f"Refusing to insert an empty row into {target.fullname}")
        result = session.execute(insert(target).values(values))
        return result.rowcount

    def exists(self, session: Session, table_name: str, key_column: str, key_value: Any,
               schema: Optional[str] = None, key_type: Any = None) -> bool:
        """Lightweight existence probe: SELECT 1 ... WHERE key = ? LIMIT 1"""
        target = _table(table_name, [key_column], schema, {key_column: key_type} if key_type is not None else None)
        stmt = select(literal(1)).select_from(target).where(target.c[key_column] == key_value).limit(1)
        return session.execute(stmt).first() is not None

    def update_many(self, session: Session, table_name: str, set_column: str, key_column: str,
                    pairs: Iterable[Tuple[Any, Any]], schema: Optional[str] = None,
                    column_types: Optional[Mapping[str, Any]] = None) -> int:
        """UPDATE table_name SET set_column = ? WHERE key_column = ?, executed as one batch.

        ``pairs`` holds (key, new value) tuples. Returns the number of rows
        reported updated, or the number of statements when the driver does
        not report a count for executemany.
        """
        params = [{'b_key': key, 'b_value': value} for key, value in pairs]
        if not params:
            return 0
        target = _table(table_name, [set_column, key_column], schema, column_types)
        types = column_types or {}
        stmt = (
            update(target)
            .where(target.c[key_column] == bindparam('b_key', type_=types.get(key_column)))
            .values({set_column: bindparam('b_value', type_=types.get(set_column))})
        )
        result = session.connection().execute(stmt, params)
        count = result.rowcount
        return count if count is not None and count >= 0 else len(params)
