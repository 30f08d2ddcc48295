#!/usr/bin/env python3
"""
Test Configuration - PyTest Configuration and Fixtures

Builds a legacy SQLite database (upper-case, Spanish-named tables as found in
the old product) and an empty target SQLite database created from the
declarative models in target_models.py.
"""

import os
import sqlite3
import sys
from pathlib import Path

import pytest

# Add project root and tests directory to path
TESTS_DIR = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, os.path.dirname(TESTS_DIR))
sys.path.insert(0, TESTS_DIR)

from core.database_manager import DatabaseManager
from core.descriptors import SourceDbConfig
from target_models import Base

LEGACY_SCHEMA = """
CREATE TABLE PAIS_ORIGEN (
    PAIS_ID INTEGER,
    PAIS_NOMBRE TEXT,
    PAIS_ACTIVO INTEGER
);
CREATE TABLE SUBDIRECCION (
    SUBDIRECCION_ID INTEGER,
    SUBDIRECCION_NOMBRE TEXT,
    SUBDIRECCION_PERTENECE INTEGER,
    SUBDIRECCION_ACTIVO TEXT
);
CREATE TABLE FUNCIONARIO (
    FUNCIONARIO_ID INTEGER,
    FUNCIONARIO_NOMBRE TEXT,
    SUBDIRECCION_ID INTEGER,
    PAIS_ID INTEGER,
    FECHA_INGRESO DATE,
    FECHA_CREACION DATETIME,
    SUELDO REAL
);
CREATE TABLE CATEGORIA (
    CAT_ID INTEGER,
    CAT_PADRE INTEGER,
    CAT_NOMBRE TEXT
);
CREATE TABLE TARIFA_HISTORICA (
    TARIFA_ID INTEGER,
    CONTROL_ID INTEGER,
    VIGENTE_DESDE DATETIME,
    MONTO REAL
);
"""

LEGACY_ROWS = {
    "PAIS_ORIGEN": [
        (1, "Chile", 1),
        (2, "Peru", 1),
        (3, "Atlantis", 0),
    ],
    # Child rows come before their parents in id order
    "SUBDIRECCION": [
        (2, "Finanzas", 7, "S"),
        (7, "Gerencia", None, "S"),
        (9, "Contabilidad", 2, "N"),
        (11, "Archivo", 0, "S"),
    ],
    "FUNCIONARIO": [
        (100, "Ana", 2, 1, "2020-01-15", "2020-01-15 08:30:00", 1500.5),
        (101, "Luis", 0, 3, "2019-05-01", "2019-05-01 09:00:00", 1200),
        (102, "Marta", 7, 2, "2021-03-10", None, None),
    ],
    "CATEGORIA": [
        (5, 3, "Hijo"),
        (3, None, "Padre"),
        (8, 5, "Nieto"),
    ],
    "TARIFA_HISTORICA": [
        (1, 10, "2020-01-01 00:00:00", 10.0),
        (2, 10, "2021-01-01 00:00:00", 12.0),
        (3, 0, "2020-06-01 00:00:00", 5.0),
        (4, None, "2999-01-01 00:00:00", 7.0),
        (5, 20, "2999-01-01 00:00:00", 3.0),
    ],
}


def legacy_execute(db_path: Path, sql: str, params=()):
    """Run one statement against the legacy database"""
    conn = sqlite3.connect(str(db_path))
    try:
        conn.execute(sql, params)
        conn.commit()
    finally:
        conn.close()


@pytest.fixture
def legacy_db(tmp_path) -> Path:
    """Legacy source database populated with LEGACY_ROWS"""
    db_path = tmp_path / "legacy.db"
    conn = sqlite3.connect(str(db_path))
    try:
        conn.executescript(LEGACY_SCHEMA)
        for table, rows in LEGACY_ROWS.items():
            placeholders = ", ".join("?" for _ in rows[0])
            conn.executemany(f"INSERT INTO {table} VALUES ({placeholders})", rows)
        conn.commit()
    finally:
        conn.close()
    return db_path


@pytest.fixture
def source_config(legacy_db) -> SourceDbConfig:
    return SourceDbConfig(url=f"sqlite:///{legacy_db}")


@pytest.fixture
def target_db(tmp_path):
    """Empty target store with foreign keys enforced"""
    manager = DatabaseManager(f"sqlite:///{tmp_path / 'target.db'}")
    manager.create_all(Base.metadata)
    yield manager
    manager.close_all()


@pytest.fixture
def target_rows(target_db):
    """Read back a target table as {id: row-mapping}"""
    from sqlalchemy import select

    def _read(model):
        with target_db.transaction() as session:
            result = session.execute(select(model.__table__))
            return {row["id"]: dict(row) for row in result.mappings()}
    return _read
