"""
Table definitions: builders that turn a shared MigrationContext into a
TableMigrationDescriptor.

Definitions are the canonical way to supply tables to the runner. Hooks on
the built descriptor close over the context, so a definition can record the
ids it migrated and a later definition can read them.

    class EmployeeDefinition(TableDefinition):
        def build(self, context):
            return TableMigrationDescriptor(
                ...,
                on_batch_success=lambda rows: context.record_ids(
                    'employee', (r['FUNCIONARIO_ID'] for r in rows)),
            )
"""

from abc import ABC, abstractmethod
from typing import Callable, Iterable, List, Union

from core.descriptors import MigrationContext, TableMigrationDescriptor
from core.errors import ConfigurationError


class TableDefinition(ABC):
    @abstractmethod
    def build(self, context: MigrationContext) -> TableMigrationDescriptor:
        raise NotImplementedError


TableSpec = Union[TableMigrationDescriptor, TableDefinition, Callable[[MigrationContext], TableMigrationDescriptor]]


def build_descriptors(tables: Iterable[TableSpec], context: MigrationContext) -> List[TableMigrationDescriptor]:
    """Resolve descriptors, definitions and builder callables, keeping order"""
    descriptors = []
    for position, spec in enumerate(tables, start=1):
        if isinstance(spec, TableMigrationDescriptor):
            descriptor = spec
        elif isinstance(spec, TableDefinition):
            descriptor = spec.build(context)
        elif callable(spec):
            descriptor = spec(context)
        else:
            raise ConfigurationError(f"Table #{position} is not a descriptor or definition: {spec!r}")
        if not isinstance(descriptor, TableMigrationDescriptor):
            raise ConfigurationError(f"Table #{position} did not build a TableMigrationDescriptor")
        descriptors.append(descriptor)
    return descriptors
