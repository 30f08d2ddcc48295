"""
Type Registry
=============

Maps SQLAlchemy column types (declared on target models or reflected from the
legacy store) onto a small intermediate type vocabulary, and coerces loosely
typed legacy values into the Python values those types expect.
"""

import enum
import json
import uuid
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from enum import Enum
from numbers import Number
from typing import Any, Callable, Dict, Optional, Type

from sqlalchemy import types as sqltypes

from core.errors import ConversionError


class IRType(Enum):
    # Numeric
    SMALLINT = "SMALLINT"
    INTEGER = "INTEGER"
    BIGINT = "BIGINT"
    DECIMAL = "DECIMAL"  # With precision/scale
    REAL = "REAL"
    DOUBLE = "DOUBLE PRECISION"

    # String
    CHAR = "CHAR"
    VARCHAR = "VARCHAR"
    TEXT = "TEXT"
    ENUM = "ENUM"

    # Binary
    BYTEA = "BYTEA"

    # Date/Time
    DATE = "DATE"
    TIME = "TIME"
    TIMESTAMP = "TIMESTAMP"
    TIMESTAMP_TZ = "TIMESTAMP WITH TIME ZONE"

    # Boolean
    BOOLEAN = "BOOLEAN"

    # Special
    UUID = "UUID"
    JSON = "JSON"

    # Fallback
    UNKNOWN = "UNKNOWN"


INTEGER_TYPES = (IRType.SMALLINT, IRType.INTEGER, IRType.BIGINT)
TEMPORAL_TYPES = (IRType.DATE, IRType.TIME, IRType.TIMESTAMP, IRType.TIMESTAMP_TZ)

# Legacy flag spellings seen in boolean-ish CHAR(1) columns
TRUE_STRINGS = {'1', 'true', 't', 'y', 'yes', 's', 'si', 'on'}
FALSE_STRINGS = {'0', 'false', 'f', 'n', 'no', 'off'}


class TypeInfo:
    def __init__(self, ir_type: IRType, precision: Optional[int] = None,
                 scale: Optional[int] = None, length: Optional[int] = None,
                 enum_class: Optional[Type[enum.Enum]] = None, enum_values: Optional[tuple] = None):
        self.ir_type = ir_type
        self.precision = precision
        self.scale = scale
        self.length = length
        self.enum_class = enum_class
        self.enum_values = enum_values

    @property
    def is_temporal(self) -> bool:
        return self.ir_type in TEMPORAL_TYPES

    @property
    def is_integer(self) -> bool:
        return self.ir_type in INTEGER_TYPES

    def __eq__(self, other):
        if not isinstance(other, TypeInfo):
            return NotImplemented
        return (self.ir_type, self.precision, self.scale, self.length) == \
            (other.ir_type, other.precision, other.scale, other.length)

    def __hash__(self):
        return hash((self.ir_type, self.precision, self.scale, self.length))

    def __repr__(self):
        return f"TypeInfo({self.ir_type.value}, p={self.precision}, s={self.scale}, l={self.length})"


class TypeRegistry:
    # Checked in order: subclasses before their bases (Enum is a String,
    # BigInteger is an Integer, Float is a Numeric, Text is a String).
    SQLALCHEMY_TO_IR = (
        (sqltypes.Boolean, IRType.BOOLEAN),
        (sqltypes.Enum, IRType.ENUM),
        (sqltypes.SmallInteger, IRType.SMALLINT),
        (sqltypes.BigInteger, IRType.BIGINT),
        (sqltypes.Integer, IRType.INTEGER),
        (sqltypes.Float, IRType.DOUBLE),
        (sqltypes.Numeric, IRType.DECIMAL),
        (sqltypes.DateTime, IRType.TIMESTAMP),
        (sqltypes.Date, IRType.DATE),
        (sqltypes.Time, IRType.TIME),
        (sqltypes.Uuid, IRType.UUID),
        (sqltypes.JSON, IRType.JSON),
        (sqltypes.LargeBinary, IRType.BYTEA),
        (sqltypes.BINARY, IRType.BYTEA),
        (sqltypes.VARBINARY, IRType.BYTEA),
        (sqltypes.Text, IRType.TEXT),
        (sqltypes.CHAR, IRType.CHAR),
        (sqltypes.String, IRType.VARCHAR),
    )

    @staticmethod
    def map_to_ir(column_type: Any) -> TypeInfo:
        """Map a SQLAlchemy type (instance or class) to IR type"""
        if isinstance(column_type, type):
            column_type = column_type()
        if isinstance(column_type, sqltypes.TypeDecorator):
            column_type = column_type.impl

        for sql_type, ir_type in TypeRegistry.SQLALCHEMY_TO_IR:
            if not isinstance(column_type, sql_type):
                continue
            if ir_type == IRType.TIMESTAMP and getattr(column_type, 'timezone', False):
                return TypeInfo(IRType.TIMESTAMP_TZ)
            if ir_type == IRType.DECIMAL:
                if not getattr(column_type, 'asdecimal', True):
                    return TypeInfo(IRType.DOUBLE)
                return TypeInfo(IRType.DECIMAL, column_type.precision, column_type.scale)
            if ir_type == IRType.ENUM:
                return TypeInfo(IRType.ENUM, length=column_type.length,
                                enum_class=column_type.enum_class,
                                enum_values=tuple(column_type.enums))
            if ir_type in (IRType.CHAR, IRType.VARCHAR, IRType.TEXT):
                return TypeInfo(ir_type, length=getattr(column_type, 'length', None))
            return TypeInfo(ir_type)

        return TypeInfo(IRType.UNKNOWN)

    @staticmethod
    def coerce(value: Any, type_info: TypeInfo) -> Any:
        """Convert a legacy value to the Python value expected by type_info.

        None passes through unchanged. Raises ConversionError when the value
        cannot be represented in the target type.
        """
        if value is None:
            return None
        converter = _CONVERTERS.get(type_info.ir_type)
        if converter is None:
            return value
        try:
            return converter(value, type_info)
        except ConversionError:
            raise
        except (ValueError, TypeError, ArithmeticError, InvalidOperation) as e:
            raise ConversionError(f"Cannot convert {value!r} to {type_info.ir_type.value}: {e}",
                                  value=value, target=type_info.ir_type.value) from e

    @staticmethod
    def normalize_temporal(value: Any, type_info: Optional[TypeInfo] = None) -> Any:
        """Bring driver temporal values into the stdlib datetime family.

        Text read from a temporally typed column is parsed when it is ISO
        formatted and returned untouched otherwise.
        """
        if value is None:
            return None
        if hasattr(value, 'to_pydatetime'):
            return value.to_pydatetime()
        if isinstance(value, datetime):
            if type(value) is not datetime:
                return datetime(value.year, value.month, value.day, value.hour, value.minute,
                                value.second, value.microsecond, value.tzinfo)
            return value
        if isinstance(value, date) and type(value) is not date:
            return date(value.year, value.month, value.day)
        if isinstance(value, str) and type_info is not None and type_info.is_temporal:
            try:
                return TypeRegistry.coerce(value, type_info)
            except ConversionError:
                return value
        return value


def _reject_bool(value: Any, target: str):
    if isinstance(value, bool):
        raise ConversionError(f"Refusing to convert boolean {value!r} to {target}", value=value, target=target)


def _to_int(value: Any, type_info: TypeInfo) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            value = Decimal(text)
    if isinstance(value, (float, Decimal)):
        if value != int(value):
            raise ConversionError(f"Non-integral value {value!r}", value=value, target=type_info.ir_type.value)
        return int(value)
    if isinstance(value, Number):
        return int(value)
    raise TypeError(f"unsupported source type {type(value).__name__}")


def _to_decimal(value: Any, type_info: TypeInfo) -> Decimal:
    _reject_bool(value, 'DECIMAL')
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    if isinstance(value, (int, str)):
        return Decimal(str(value).strip())
    raise TypeError(f"unsupported source type {type(value).__name__}")


def _to_float(value: Any, type_info: TypeInfo) -> float:
    _reject_bool(value, type_info.ir_type.value)
    if isinstance(value, str):
        return float(value.strip())
    if isinstance(value, Number):
        return float(value)
    raise TypeError(f"unsupported source type {type(value).__name__}")


def _to_str(value: Any, type_info: TypeInfo) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode('utf-8')
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    return str(value)


def _to_bool(value: Any, type_info: TypeInfo) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, Number):
        return value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if text in TRUE_STRINGS:
            return True
        if text in FALSE_STRINGS:
            return False
    raise ValueError(f"unrecognised boolean value {value!r}")


def _to_datetime(value: Any, type_info: TypeInfo) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        return datetime.fromisoformat(value.strip())
    raise TypeError(f"unsupported source type {type(value).__name__}")


def _to_date(value: Any, type_info: TypeInfo) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return date.fromisoformat(text)
        except ValueError:
            return datetime.fromisoformat(text).date()
    raise TypeError(f"unsupported source type {type(value).__name__}")


def _to_time(value: Any, type_info: TypeInfo) -> time:
    if isinstance(value, datetime):
        return value.time()
    if isinstance(value, time):
        return value
    if isinstance(value, str):
        return time.fromisoformat(value.strip())
    raise TypeError(f"unsupported source type {type(value).__name__}")


def _to_bytes(value: Any, type_info: TypeInfo) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode('utf-8')
    raise TypeError(f"unsupported source type {type(value).__name__}")


def _to_uuid(value: Any, type_info: TypeInfo) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    if isinstance(value, (bytes, bytearray)) and len(value) == 16:
        return uuid.UUID(bytes=bytes(value))
    return uuid.UUID(str(value).strip())


def _to_json(value: Any, type_info: TypeInfo) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


def _to_enum(value: Any, type_info: TypeInfo) -> Any:
    enum_class = type_info.enum_class
    if enum_class is not None:
        if isinstance(value, enum_class):
            return value
        text = str(value).strip()
        if text in enum_class.__members__:
            return enum_class[text]
        return enum_class(value)
    text = str(value).strip()
    if type_info.enum_values and text not in type_info.enum_values:
        raise ValueError(f"{text!r} is not one of {', '.join(type_info.enum_values)}")
    return text


_CONVERTERS: Dict[IRType, Callable[[Any, TypeInfo], Any]] = {
    IRType.SMALLINT: _to_int,
    IRType.INTEGER: _to_int,
    IRType.BIGINT: _to_int,
    IRType.DECIMAL: _to_decimal,
    IRType.REAL: _to_float,
    IRType.DOUBLE: _to_float,
    IRType.CHAR: _to_str,
    IRType.VARCHAR: _to_str,
    IRType.TEXT: _to_str,
    IRType.ENUM: _to_enum,
    IRType.BYTEA: _to_bytes,
    IRType.DATE: _to_date,
    IRType.TIME: _to_time,
    IRType.TIMESTAMP: _to_datetime,
    IRType.TIMESTAMP_TZ: _to_datetime,
    IRType.BOOLEAN: _to_bool,
    IRType.UUID: _to_uuid,
    IRType.JSON: _to_json,
}
