#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Legacy migration engine core package
Exports the main components for clean imports
"""

from core.errors import (BackfillError, ConfigurationError, ConversionError, ErrorCode, FetchError,
                         MigrationAbortedError, MigrationError, PersistenceError)
from core.descriptors import (MigrationContext, MigrationPhase, MigrationRunSummary, SourceDbConfig,
                              SourceRow, TableMigrationDescriptor)
from core.metadata import FieldMapper, ForeignKeyDescriptor, MetadataResolver, TypeMetadata
from core.database_manager import DatabaseManager
from core.source_fetcher import SourceDataFetcher
from core.row_processor import RowInsertProcessor
from core.backfill import ForeignKeyBackfillProcessor
from core.orchestrator import TableMigrationOrchestrator
from core.definitions import TableDefinition, build_descriptors
from core.migration import MigrationRunner

__all__ = [
    'BackfillError', 'ConfigurationError', 'ConversionError', 'ErrorCode', 'FetchError',
    'MigrationAbortedError', 'MigrationError', 'PersistenceError',
    'MigrationContext', 'MigrationPhase', 'MigrationRunSummary', 'SourceDbConfig', 'SourceRow',
    'TableMigrationDescriptor',
    'FieldMapper', 'ForeignKeyDescriptor', 'MetadataResolver', 'TypeMetadata',
    'DatabaseManager', 'SourceDataFetcher', 'RowInsertProcessor', 'ForeignKeyBackfillProcessor',
    'TableMigrationOrchestrator', 'TableDefinition', 'build_descriptors', 'MigrationRunner',
]
