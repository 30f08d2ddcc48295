import unittest
import uuid
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum

from sqlalchemy import (JSON, BigInteger, Boolean, Date, DateTime, Float, Integer, LargeBinary, Numeric,
                        SmallInteger, String, Text, Time, TypeDecorator, Uuid)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects import sqlite
from sqlalchemy.types import NullType

from core.errors import ConversionError
from core.type_registry import IRType, TypeInfo, TypeRegistry


class Colour(Enum):
    RED = "r"
    GREEN = "g"


class TrimmedString(TypeDecorator):
    impl = String(10)
    cache_ok = True


class TestTypeRegistryMatrix(unittest.TestCase):

    def assertMapping(self, column_type, expected_ir):
        info = TypeRegistry.map_to_ir(column_type)
        self.assertEqual(info.ir_type, expected_ir, f"{column_type!r} -> {info.ir_type} (Expected {expected_ir})")
        return info

    def test_numeric_types(self):
        self.assertMapping(Integer(), IRType.INTEGER)
        self.assertMapping(BigInteger(), IRType.BIGINT)
        self.assertMapping(SmallInteger(), IRType.SMALLINT)
        self.assertMapping(Float(), IRType.DOUBLE)
        info = self.assertMapping(Numeric(10, 2), IRType.DECIMAL)
        self.assertEqual((info.precision, info.scale), (10, 2))
        self.assertMapping(Numeric(10, 2, asdecimal=False), IRType.DOUBLE)

    def test_string_types(self):
        info = self.assertMapping(String(20), IRType.VARCHAR)
        self.assertEqual(info.length, 20)
        self.assertMapping(Text(), IRType.TEXT)
        self.assertMapping(TrimmedString(), IRType.VARCHAR)
        info = self.assertMapping(SAEnum("a", "b", name="ab"), IRType.ENUM)
        self.assertEqual(info.enum_values, ("a", "b"))

    def test_temporal_types(self):
        self.assertMapping(DateTime(), IRType.TIMESTAMP)
        self.assertMapping(DateTime(timezone=True), IRType.TIMESTAMP_TZ)
        self.assertMapping(Date(), IRType.DATE)
        self.assertMapping(Time(), IRType.TIME)
        self.assertTrue(TypeRegistry.map_to_ir(Date()).is_temporal)

    def test_special_types(self):
        self.assertMapping(Boolean(), IRType.BOOLEAN)
        self.assertMapping(Uuid(), IRType.UUID)
        self.assertMapping(JSON(), IRType.JSON)
        self.assertMapping(LargeBinary(), IRType.BYTEA)
        self.assertMapping(NullType(), IRType.UNKNOWN)

    def test_reflected_sqlite_types(self):
        self.assertMapping(sqlite.DATETIME(), IRType.TIMESTAMP)
        self.assertMapping(sqlite.DATE(), IRType.DATE)
        self.assertMapping(sqlite.INTEGER(), IRType.INTEGER)
        self.assertMapping(sqlite.REAL(), IRType.DOUBLE)

    def test_type_classes_are_accepted(self):
        self.assertMapping(Integer, IRType.INTEGER)


class TestCoercion(unittest.TestCase):

    def coerce(self, value, ir_type, **kwargs):
        return TypeRegistry.coerce(value, TypeInfo(ir_type, **kwargs))

    def test_none_passes_through(self):
        for ir_type in IRType:
            self.assertIsNone(self.coerce(None, ir_type))

    def test_integers(self):
        self.assertEqual(self.coerce("42", IRType.INTEGER), 42)
        self.assertEqual(self.coerce(" 7 ", IRType.BIGINT), 7)
        self.assertEqual(self.coerce(5.0, IRType.INTEGER), 5)
        self.assertEqual(self.coerce(Decimal("3"), IRType.INTEGER), 3)
        self.assertEqual(self.coerce("12.0", IRType.INTEGER), 12)
        self.assertEqual(self.coerce(True, IRType.SMALLINT), 1)

    def test_integer_failures(self):
        for bad in ("abc", 2.5, "1.5", Decimal("0.1"), object()):
            with self.assertRaises(ConversionError, msg=repr(bad)):
                self.coerce(bad, IRType.INTEGER)

    def test_conversion_error_is_a_value_error(self):
        with self.assertRaises(ValueError):
            self.coerce("abc", IRType.INTEGER)

    def test_decimals_and_floats(self):
        self.assertEqual(self.coerce(1.1, IRType.DECIMAL), Decimal("1.1"))
        self.assertEqual(self.coerce("10.50", IRType.DECIMAL), Decimal("10.50"))
        self.assertEqual(self.coerce("2.5", IRType.DOUBLE), 2.5)
        self.assertEqual(self.coerce(Decimal("2.5"), IRType.REAL), 2.5)
        with self.assertRaises(ConversionError):
            self.coerce(True, IRType.DECIMAL)

    def test_strings(self):
        self.assertEqual(self.coerce(12, IRType.VARCHAR), "12")
        self.assertEqual(self.coerce(b"abc", IRType.TEXT), "abc")
        self.assertEqual(self.coerce(date(2020, 1, 2), IRType.CHAR), "2020-01-02")

    def test_booleans(self):
        for truthy in ("S", "Y", "true", "1", 1, True):
            self.assertIs(self.coerce(truthy, IRType.BOOLEAN), True, repr(truthy))
        for falsy in ("N", "no", "0", 0, False):
            self.assertIs(self.coerce(falsy, IRType.BOOLEAN), False, repr(falsy))
        with self.assertRaises(ConversionError):
            self.coerce("maybe", IRType.BOOLEAN)

    def test_temporal(self):
        self.assertEqual(self.coerce("2020-01-15", IRType.DATE), date(2020, 1, 15))
        self.assertEqual(self.coerce("2020-01-15 08:30:00", IRType.DATE), date(2020, 1, 15))
        self.assertEqual(self.coerce(datetime(2020, 1, 15, 8, 30), IRType.DATE), date(2020, 1, 15))
        self.assertEqual(self.coerce("2020-01-15 08:30:00", IRType.TIMESTAMP), datetime(2020, 1, 15, 8, 30))
        self.assertEqual(self.coerce(date(2020, 1, 15), IRType.TIMESTAMP), datetime(2020, 1, 15))
        self.assertEqual(self.coerce("08:30:00", IRType.TIME), time(8, 30))
        with self.assertRaises(ConversionError):
            self.coerce("15/01/2020", IRType.DATE)

    def test_uuid_bytes_json(self):
        value = uuid.uuid4()
        self.assertEqual(self.coerce(str(value), IRType.UUID), value)
        self.assertEqual(self.coerce(value.bytes, IRType.UUID), value)
        self.assertEqual(self.coerce("abc", IRType.BYTEA), b"abc")
        self.assertEqual(self.coerce('{"a": 1}', IRType.JSON), {"a": 1})
        self.assertEqual(self.coerce("not json", IRType.JSON), "not json")

    def test_enums(self):
        self.assertIs(self.coerce("RED", IRType.ENUM, enum_class=Colour), Colour.RED)
        self.assertIs(self.coerce("g", IRType.ENUM, enum_class=Colour), Colour.GREEN)
        self.assertEqual(self.coerce("a", IRType.ENUM, enum_values=("a", "b")), "a")
        with self.assertRaises(ConversionError):
            self.coerce("z", IRType.ENUM, enum_values=("a", "b"))

    def test_unknown_passes_through(self):
        marker = object()
        self.assertIs(self.coerce(marker, IRType.UNKNOWN), marker)


class TestTemporalNormalization(unittest.TestCase):

    def test_iso_text_in_temporal_column_is_parsed(self):
        self.assertEqual(TypeRegistry.normalize_temporal("2021-03-10", TypeInfo(IRType.DATE)), date(2021, 3, 10))

    def test_unparseable_text_is_left_alone(self):
        self.assertEqual(TypeRegistry.normalize_temporal("10/03/2021", TypeInfo(IRType.DATE)), "10/03/2021")

    def test_text_in_non_temporal_column_is_left_alone(self):
        self.assertEqual(TypeRegistry.normalize_temporal("2021-03-10", TypeInfo(IRType.VARCHAR)), "2021-03-10")

    def test_datetime_subclasses_become_plain_datetimes(self):
        class DriverTimestamp(datetime):
            pass

        value = TypeRegistry.normalize_temporal(DriverTimestamp(2020, 1, 1, 12, 0))
        self.assertIs(type(value), datetime)
        self.assertEqual(value, datetime(2020, 1, 1, 12, 0))


if __name__ == "__main__":
    unittest.main()
