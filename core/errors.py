#!/usr/bin/env python3
"""
Migration Error Hierarchy
Canonical exception classes for the legacy migration engine.

Configuration and fetch errors are fatal for the table they occur in and
halt the run. Conversion and persistence errors are contained at row level,
backfill errors at batch level.
"""

from enum import Enum


class ErrorCode(Enum):
    UNKNOWN = "UNKNOWN_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    FETCH_ERROR = "FETCH_ERROR"
    CONVERSION_ERROR = "CONVERSION_ERROR"
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"
    BACKFILL_ERROR = "BACKFILL_ERROR"
    MIGRATION_ABORTED = "MIGRATION_ABORTED"


class MigrationError(Exception):
    """Base class for all migration exceptions"""
    def __init__(self, message: str, code: ErrorCode = ErrorCode.UNKNOWN, details: dict = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}


class ConfigurationError(MigrationError):
    """Raised when a table descriptor or target type cannot be used as configured"""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, ErrorCode.CONFIGURATION_ERROR, details)


class FetchError(MigrationError):
    """Raised when reading from the legacy store fails"""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, ErrorCode.FETCH_ERROR, details)


class ConversionError(MigrationError, ValueError):
    """Raised when a source value cannot be coerced to a target field type"""
    def __init__(self, message: str, value=None, target: str = None):
        details = {'value': repr(value), 'target': target}
        super().__init__(message, ErrorCode.CONVERSION_ERROR, details)
        self.value = value


class PersistenceError(MigrationError):
    """Raised when writing to the target store fails"""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, ErrorCode.PERSISTENCE_ERROR, details)


class BackfillError(MigrationError):
    """Raised when a foreign-key backfill batch cannot be applied"""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, ErrorCode.BACKFILL_ERROR, details)


class MigrationAbortedError(MigrationError):
    """Raised by the runner when a table fails and the run must stop"""
    def __init__(self, table: str, cause: Exception = None):
        message = f"Migration failed for table {table}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message, ErrorCode.MIGRATION_ABORTED, {'table': table})
        self.table = table
        self.cause = cause
