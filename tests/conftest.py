"""Shared fixtures: an in-memory stand-in for ConnectionService and a temporary config store."""
import re
from contextlib import asynccontextmanager, contextmanager
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import DBAPIError
from sqlalchemy.sql import Select
from sqlalchemy.sql.dml import Insert
from sqlalchemy.sql.elements import TextClause

from postgis_tools.services import metadata_loader as queries
from postgis_tools.services.config_store import ConfigStore

_IDENT = r'"((?:[^"]|"")*)"'
_ADD_COLUMN = re.compile(rf"^ALTER TABLE {_IDENT}\.{_IDENT} ADD COLUMN {_IDENT} (\w+)(?:\((\d+)\))?$")
_DROP_COLUMN = re.compile(rf"^ALTER TABLE {_IDENT}\.{_IDENT} DROP COLUMN {_IDENT}$")
_ALTER_TYPE = re.compile(rf"^ALTER TABLE {_IDENT}\.{_IDENT} ALTER COLUMN {_IDENT} TYPE (geometry|geography)\((\w+), (\d+)\)")
_CREATE_SCHEMA = re.compile(rf"^CREATE SCHEMA {_IDENT}$")


def _unquote(value: str) -> str:
    return value.replace('""', '"')


def db_error(message: str) -> DBAPIError:
    return DBAPIError("fake statement", {}, Exception(message))


class FakeResult:
    def __init__(self, rows: Optional[List[Dict[str, Any]]] = None):
        self.rows = rows or []

    def mappings(self):
        return self

    def all(self):
        return list(self.rows)

    def first(self):
        return self.rows[0] if self.rows else None


class FakeCatalog:
    """Schemas, tables, columns and rows, mutated by the DDL the tests execute"""

    def __init__(self):
        self.schemas: List[str] = ["public"]
        self.columns: Dict[tuple, List[Dict[str, Any]]] = {}
        self.primary_keys: Dict[tuple, List[str]] = {}
        self.spatial: Dict[tuple, Dict[str, Any]] = {}
        self.rows: Dict[tuple, List[Dict[str, Any]]] = {}

    def add_schema(self, schema: str):
        if schema not in self.schemas:
            self.schemas.append(schema)

    def add_table(self, schema: str, table: str, columns=(), primary_key=(), rows=()):
        self.add_schema(schema)
        self.columns[(schema, table)] = []
        for col in columns:
            if isinstance(col, str):
                col = (col, "text")
            self.add_column(schema, table, *col)
        self.primary_keys[(schema, table)] = list(primary_key)
        self.rows[(schema, table)] = [dict(row) for row in rows]

    def add_column(self, schema, table, name, data_type="text", length=None, default=None, udt_name=None):
        self.columns[(schema, table)].append({
            "column_name": name,
            "data_type": data_type,
            "udt_name": udt_name or data_type,
            "column_default": default,
            "character_maximum_length": length,
            "is_nullable": "YES",
        })

    def add_spatial_column(self, schema, table, name, type="POINT", srid=4326, geography=False):
        kind = "geography" if geography else "geometry"
        self.add_column(schema, table, name, "USER-DEFINED", udt_name=kind)
        self.spatial[(schema, table, name)] = {"type": type, "srid": srid, "is_geography": geography}

    def find_column(self, schema, table, name):
        for col in self.columns.get((schema, table), []):
            if col["column_name"].lower() == name.lower():
                return col
        return None

    # Catalog queries

    def query(self, sql: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        schema = params.get("schema")
        table = params.get("table")
        column = params.get("column")

        if sql == queries.SCHEMAS_SQL:
            return [{"schema_name": name} for name in sorted(self.schemas)]
        if sql == queries.ALL_COLUMNS_SQL:
            return [
                dict(col, table_schema=s, table_name=t)
                for (s, t) in sorted(self.columns)
                for col in self.columns[(s, t)]
            ]
        if sql == queries.TABLE_COLUMNS_SQL:
            return [dict(col) for col in self.columns.get((schema, table), [])]
        if sql == queries.PRIMARY_KEY_SQL:
            return [{"column_name": name} for name in self.primary_keys.get((schema, table), [])]
        if sql == queries.BASE_TABLES_SQL:
            return [{"table_name": t} for (s, t) in sorted(self.columns) if s == schema]
        if sql == queries.TABLES_WITH_COLUMN_SQL:
            return [
                {"table_name": t} for (s, t) in sorted(self.columns)
                if s == schema and self.find_column(s, t, column) is not None
            ]
        if sql == queries.COLUMN_EXISTS_SQL:
            return [{"exists": 1}] if self.find_column(schema, table, column) else []
        if sql == queries.SCHEMA_EXISTS_SQL:
            return [{"exists": 1}] if schema in self.schemas else []
        if sql in (queries.GEOMETRY_COLUMNS_SQL, queries.GEOGRAPHY_COLUMNS_SQL):
            geography = sql == queries.GEOGRAPHY_COLUMNS_SQL
            return [
                {"column_name": c, "type": info["type"], "srid": info["srid"]}
                for (s, t, c), info in self.spatial.items()
                if s == schema and t == table and info["is_geography"] == geography
            ]
        raise AssertionError(f"Unexpected query: {sql}")

    # DDL

    def apply_ddl(self, sql: str):
        match = _ADD_COLUMN.match(sql)
        if match:
            schema, table, name = (_unquote(g) for g in match.group(1, 2, 3))
            if (schema, table) not in self.columns:
                raise db_error(f'relation "{schema}.{table}" does not exist')
            if self.find_column(schema, table, name):
                raise db_error(f'column "{name}" of relation "{table}" already exists')
            length = int(match.group(5)) if match.group(5) else None
            self.add_column(schema, table, name, match.group(4), length)
            return

        match = _DROP_COLUMN.match(sql)
        if match:
            schema, table, name = (_unquote(g) for g in match.groups())
            col = self.find_column(schema, table, name)
            if col is None:
                raise db_error(f'column "{name}" of relation "{table}" does not exist')
            self.columns[(schema, table)].remove(col)
            self.spatial.pop((schema, table, name), None)
            return

        match = _ALTER_TYPE.match(sql)
        if match:
            schema, table, name = (_unquote(g) for g in match.group(1, 2, 3))
            info = self.spatial[(schema, table, name)]
            info["type"] = match.group(5)
            info["srid"] = int(match.group(6))
            return

        match = _CREATE_SCHEMA.match(sql)
        if match:
            name = _unquote(match.group(1))
            if name in self.schemas:
                raise db_error(f'schema "{name}" already exists')
            self.schemas.append(name)
            return

        raise AssertionError(f"Unexpected DDL: {sql}")


class FakeConnection:
    def __init__(self, db: "FakeDatabase"):
        self.db = db

    def _check_failure(self, sql: str):
        for fragment in self.db.fail_on:
            if fragment in sql:
                raise db_error(f"forced failure on {fragment}")

    async def execute(self, statement, params=None):
        return self.execute_sync(statement, params)

    def execute_sync(self, statement, params=None):
        params = params or {}
        if isinstance(statement, TextClause):
            sql = statement.text
            self.db.queries.append((sql, params))
            self._check_failure(sql)
            return FakeResult(self.db.catalog.query(sql, params))

        self.db.statements.append(statement)
        self._check_failure(str(statement.compile(dialect=postgresql.dialect())))
        if isinstance(statement, Insert):
            returned = self.db.insert_returning.pop(0) if self.db.insert_returning else {}
            return FakeResult([returned] if returned else [])
        if isinstance(statement, Select):
            source = statement.get_final_froms()[0]
            names = [col.name for col in statement.selected_columns]
            rows = self.db.catalog.rows.get((source.schema, source.name), [])
            return FakeResult([{name: row.get(name) for name in names} for row in rows])
        return FakeResult()

    async def exec_driver_sql(self, sql, params=None):
        self.db.ddl.append(sql)
        self._check_failure(sql)
        self.db.catalog.apply_ddl(sql)
        return FakeResult()


class FakeSyncConnection(FakeConnection):
    def execute(self, statement, params=None):
        return self.execute_sync(statement, params)


class FakeDatabase:
    """Quacks like ConnectionService; records every statement it is given"""

    def __init__(self, url: str = "postgresql+asyncpg://user@localhost/gis"):
        self.current_url = url
        self.catalog = FakeCatalog()
        self.queries: List[tuple] = []
        self.ddl: List[str] = []
        self.statements: List[Any] = []
        self.transactions: List[str] = []
        self.insert_returning: List[Dict[str, Any]] = []
        self.fail_on: List[str] = []
        self.test_result = (True, "Connection successful")
        self.tested_urls: List[str] = []

    @property
    def is_configured(self) -> bool:
        return bool(self.current_url)

    @asynccontextmanager
    async def connect(self):
        yield FakeConnection(self)

    @asynccontextmanager
    async def begin(self):
        try:
            yield FakeConnection(self)
        except Exception:
            self.transactions.append("rollback")
            raise
        self.transactions.append("commit")

    @contextmanager
    def connect_sync(self):
        yield FakeSyncConnection(self)

    async def test_connection(self, url: str):
        self.tested_urls.append(url)
        return self.test_result

    async def dispose(self):
        pass

    def alter_statements(self) -> List[str]:
        return [sql for sql in self.ddl if sql.startswith("ALTER TABLE")]


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def config_store(tmp_path):
    return ConfigStore(tmp_path / "config.json")
