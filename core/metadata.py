"""
Target Metadata Resolver
========================

Introspects SQLAlchemy mapped classes (the target record types) to find:

- the identity field and whether the store generates it
- the physical table the type lives in
- every foreign-key field, and the one (if any) that points back at the
  type's own table

Results are cached per type on the resolver instance.
"""

import importlib
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import Sequence, inspect
from sqlalchemy.exc import NoInspectionAvailable, NoReferencedColumnError, NoReferencedTableError
from sqlalchemy.orm import Mapper, RelationshipDirection

from core.errors import ConfigurationError
from core.type_registry import TypeInfo, TypeRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ForeignKeyDescriptor:
    """One foreign-key field on a target type"""
    field_name: str
    column_name: str
    referenced_table: str
    referenced_column: str
    referenced_type: TypeInfo
    is_self_reference: bool = False
    relationship: Optional[str] = None


class FieldMapper:
    """Generic field access for one mapped class.

    Fields are the mapper's column attributes, addressed by attribute key.
    """

    def __init__(self, mapper: Mapper):
        self.mapper = mapper
        self._columns = {prop.key: prop.columns[0] for prop in mapper.column_attrs}
        self._types = {key: TypeRegistry.map_to_ir(col.type) for key, col in self._columns.items()}
        self._many_to_one = [rel for rel in mapper.relationships
                             if rel.direction is RelationshipDirection.MANYTOONE]

    def list_persistable_fields(self) -> List[str]:
        return list(self._columns)

    def has_field(self, name: str) -> bool:
        return name in self._columns

    def column(self, name: str):
        try:
            return self._columns[name]
        except KeyError:
            raise ConfigurationError(f"{self.mapper.class_.__name__} has no persistable field '{name}'")

    def get_field_type(self, name: str) -> TypeInfo:
        self.column(name)
        return self._types[name]

    def new_instance(self) -> Any:
        return self.mapper.class_()

    def get_field(self, instance: Any, name: str) -> Any:
        return getattr(instance, name)

    def set_field(self, instance: Any, name: str, value: Any):
        self.column(name)
        setattr(instance, name, value)

    def coerce(self, name: str, value: Any) -> Any:
        return TypeRegistry.coerce(value, self.get_field_type(name))

    def persistable_values(self, instance: Any) -> Dict[str, Any]:
        """Column name -> value for every persistable field of instance.

        Related objects assigned through a many-to-one relationship are
        reduced to their identity when the FK attribute itself is unset.
        """
        values = {col.name: getattr(instance, key) for key, col in self._columns.items()}
        state = inspect(instance)
        for rel in self._many_to_one:
            related = state.attrs[rel.key].loaded_value
            if related is None or not hasattr(related, '__table__'):
                continue
            related_mapper = inspect(related).mapper
            for local, remote in rel.local_remote_pairs:
                if values.get(local.name) is None:
                    remote_key = related_mapper.get_property_by_column(remote).key
                    values[local.name] = getattr(related, remote_key)
        return values


@dataclass
class TypeMetadata:
    target_class: type
    id_field: str
    id_column: str
    id_type: TypeInfo
    id_generated: bool
    table_name: str
    schema: Optional[str]
    field_mapper: FieldMapper
    foreign_keys: Dict[str, ForeignKeyDescriptor] = field(default_factory=dict)
    self_reference: Optional[ForeignKeyDescriptor] = None

    @property
    def qualified_table(self) -> str:
        return f"{self.schema}.{self.table_name}" if self.schema else self.table_name

    @property
    def table(self):
        """The mapped Table, carrying column defaults"""
        return self.field_mapper.mapper.local_table

    def is_foreign_key(self, field_name: str) -> bool:
        return field_name in self.foreign_keys


def load_target_type(identifier: Any) -> type:
    """Accept a class, or an import path like 'pkg.models:Subdivision' / 'pkg.models.Subdivision'"""
    if isinstance(identifier, type):
        return identifier
    if not isinstance(identifier, str) or not identifier:
        raise ConfigurationError(f"Invalid target type identifier: {identifier!r}")

    if ':' in identifier:
        module_name, _, attr = identifier.partition(':')
    else:
        module_name, _, attr = identifier.rpartition('.')
    if not module_name or not attr:
        raise ConfigurationError(f"Target type '{identifier}' must be 'module:Class' or 'module.Class'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import module '{module_name}' for target type '{identifier}': {e}")
    target = getattr(module, attr, None)
    if not isinstance(target, type):
        raise ConfigurationError(f"Target type '{identifier}' does not name a class")
    return target


class MetadataResolver:
    def __init__(self):
        self._cache: Dict[type, TypeMetadata] = {}

    def clear(self):
        self._cache.clear()

    def resolve(self, target_type: Any) -> TypeMetadata:
        target_class = load_target_type(target_type)
        cached = self._cache.get(target_class)
        if cached is not None:
            return cached

        metadata = self._build(target_class)
        self._cache[target_class] = metadata
        logger.debug(f"Resolved metadata for {target_class.__name__}: table={metadata.qualified_table}, "
                     f"id={metadata.id_field} (generated={metadata.id_generated}), "
                     f"fks={list(metadata.foreign_keys)}, self_ref={getattr(metadata.self_reference, 'field_name', None)}")
        return metadata

    def _build(self, target_class: type) -> TypeMetadata:
        try:
            mapper = inspect(target_class)
        except NoInspectionAvailable:
            raise ConfigurationError(f"{target_class.__name__} is not a mapped target type")
        if not isinstance(mapper, Mapper):
            raise ConfigurationError(f"{target_class.__name__} is not a mapped target type")

        table = mapper.local_table
        primary_key = list(mapper.primary_key)
        if not primary_key:
            raise ConfigurationError(f"No identity field found on {target_class.__name__}")
        if len(primary_key) > 1:
            raise ConfigurationError(
                f"{target_class.__name__} has a composite identity ({', '.join(c.name for c in primary_key)}); "
                f"a single identity column is required")

        id_column = primary_key[0]
        id_prop = mapper.get_property_by_column(id_column)
        field_mapper = FieldMapper(mapper)

        foreign_keys = self._foreign_keys(mapper, table)
        self_refs = [fk for fk in foreign_keys.values() if fk.is_self_reference]
        if len(self_refs) > 1:
            logger.warning(f"{target_class.__name__} has {len(self_refs)} self-references "
                           f"({', '.join(fk.field_name for fk in self_refs)}); using '{self_refs[0].field_name}'")

        return TypeMetadata(
            target_class=target_class,
            id_field=id_prop.key,
            id_column=id_column.name,
            id_type=TypeRegistry.map_to_ir(id_column.type),
            id_generated=self._is_generated(id_column),
            table_name=table.name,
            schema=table.schema,
            field_mapper=field_mapper,
            foreign_keys=foreign_keys,
            self_reference=self_refs[0] if self_refs else None,
        )

    @staticmethod
    def _is_generated(column) -> bool:
        if getattr(column, 'identity', None) is not None:
            return True
        if isinstance(column.default, Sequence) or column.server_default is not None:
            return True
        return column.table.autoincrement_column is column

    @staticmethod
    def _foreign_keys(mapper: Mapper, table) -> Dict[str, ForeignKeyDescriptor]:
        relationship_by_column = {}
        for rel in mapper.relationships:
            if rel.direction is RelationshipDirection.MANYTOONE:
                for local in rel.local_columns:
                    relationship_by_column.setdefault(local.name, rel.key)

        result: Dict[str, ForeignKeyDescriptor] = {}
        for prop in mapper.column_attrs:
            column = prop.columns[0]
            if not column.foreign_keys:
                continue
            fk = next(iter(column.foreign_keys))
            try:
                referenced = fk.column
                ref_table, ref_column = referenced.table, referenced.name
                ref_type = TypeRegistry.map_to_ir(referenced.type)
                is_self = ref_table is table
                ref_table_name = ref_table.name
            except (NoReferencedTableError, NoReferencedColumnError):
                # Referenced table not in this MetaData; fall back to the target string
                ref_table_name, _, ref_column = fk.target_fullname.rpartition('.')
                ref_type = TypeRegistry.map_to_ir(column.type)
                is_self = ref_table_name in (table.name, table.fullname)

            result[prop.key] = ForeignKeyDescriptor(
                field_name=prop.key,
                column_name=column.name,
                referenced_table=ref_table_name,
                referenced_column=ref_column,
                referenced_type=ref_type,
                is_self_reference=is_self,
                relationship=relationship_by_column.get(column.name),
            )
        return result
