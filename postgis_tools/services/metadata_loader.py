# postgis_tools/services/metadata_loader.py
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Mapping, Optional, Set

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from postgis_tools.core.db import ConnectionService, DATABASE_ERRORS
from postgis_tools.core.errors import MetadataUnavailableError
from postgis_tools.models.schema_models import (
    ColumnNode,
    CoordinateColumn,
    SchemaNode,
    SPATIAL_UDT_NAMES,
    TableNode,
)
from postgis_tools.services import config_overlay
from postgis_tools.services.config_overlay import FieldConfigIndex

logger = logging.getLogger(__name__)

SCHEMAS_SQL = """
    SELECT schema_name
    FROM information_schema.schemata
    WHERE schema_name NOT IN ('information_schema', 'pg_catalog')
    ORDER BY schema_name
"""

ALL_COLUMNS_SQL = """
    SELECT
        table_schema,
        table_name,
        column_name,
        data_type,
        udt_name,
        column_default,
        character_maximum_length,
        is_nullable
    FROM information_schema.columns
    WHERE table_schema NOT IN ('information_schema', 'pg_catalog')
    ORDER BY table_schema, table_name, ordinal_position
"""

TABLE_COLUMNS_SQL = """
    SELECT
        column_name,
        data_type,
        udt_name,
        column_default,
        character_maximum_length,
        is_nullable
    FROM information_schema.columns
    WHERE table_schema = :schema
      AND table_name = :table
    ORDER BY ordinal_position
"""

PRIMARY_KEY_SQL = """
    SELECT kcu.column_name
    FROM information_schema.table_constraints tc
    JOIN information_schema.key_column_usage kcu
      ON tc.constraint_name = kcu.constraint_name
     AND tc.table_schema = kcu.table_schema
    WHERE tc.table_schema = :schema
      AND tc.table_name = :table
      AND tc.constraint_type = 'PRIMARY KEY'
    ORDER BY kcu.ordinal_position
"""

BASE_TABLES_SQL = """
    SELECT table_name
    FROM information_schema.tables
    WHERE table_schema = :schema
      AND table_type = 'BASE TABLE'
    ORDER BY table_name
"""

TABLES_WITH_COLUMN_SQL = """
    SELECT table_name
    FROM information_schema.columns
    WHERE table_schema = :schema
      AND lower(column_name) = lower(:column)
"""

COLUMN_EXISTS_SQL = """
    SELECT 1
    FROM information_schema.columns
    WHERE table_schema = :schema
      AND table_name = :table
      AND lower(column_name) = lower(:column)
"""

SCHEMA_EXISTS_SQL = """
    SELECT 1
    FROM information_schema.schemata
    WHERE schema_name = :schema
"""

GEOMETRY_COLUMNS_SQL = """
    SELECT f_geometry_column AS column_name, type, srid
    FROM public.geometry_columns
    WHERE f_table_schema = :schema
      AND f_table_name = :table
"""

GEOGRAPHY_COLUMNS_SQL = """
    SELECT f_geography_column AS column_name, type, srid
    FROM public.geography_columns
    WHERE f_table_schema = :schema
      AND f_table_name = :table
"""


def _column_from_row(row: Mapping[str, Any]) -> ColumnNode:
    return ColumnNode.from_catalog(
        name=row["column_name"],
        data_type=row["data_type"],
        udt_name=row.get("udt_name"),
        column_default=row["column_default"],
        character_maximum_length=row["character_maximum_length"],
        is_nullable=row["is_nullable"] == "YES",
    )


class MetadataLoader:
    """Catalog reads against information_schema and the PostGIS views.

    Each method opens its own connection unless ``conn`` is given, in which case
    the caller's connection is reused. Any failed query surfaces as
    :class:`MetadataUnavailableError`; nothing is retried.
    """

    def __init__(self, db: ConnectionService):
        self.db = db

    @asynccontextmanager
    async def _connection(self, conn: Optional[AsyncConnection] = None) -> AsyncGenerator[AsyncConnection, None]:
        if conn is not None:
            yield conn
            return
        try:
            async with self.db.connect() as new_conn:
                yield new_conn
        except DATABASE_ERRORS as e:
            logger.error(f"Could not open catalog connection: {str(e)}")
            raise MetadataUnavailableError(f"Metadata unavailable: {str(e)}") from e

    async def _fetch(self, sql: str, params: Optional[Dict[str, Any]] = None,
                     conn: Optional[AsyncConnection] = None) -> List[Mapping[str, Any]]:
        logger.debug(f"Catalog query: {' '.join(sql.split())} {params or {}}")
        async with self._connection(conn) as c:
            try:
                result = await c.execute(text(sql), params or {})
                return list(result.mappings().all())
            except DATABASE_ERRORS as e:
                logger.error(f"Catalog query failed: {str(e)}")
                raise MetadataUnavailableError(f"Metadata unavailable: {str(e)}") from e

    async def load_all(self, index: Optional[FieldConfigIndex] = None,
                       conn: Optional[AsyncConnection] = None) -> List[SchemaNode]:
        """Build the complete schema/table/column tree in one pass"""
        async with self._connection(conn) as c:
            schema_rows = await self._fetch(SCHEMAS_SQL, conn=c)
            column_rows = await self._fetch(ALL_COLUMNS_SQL, conn=c)

        schemas: List[SchemaNode] = []
        schema_dict: Dict[str, SchemaNode] = {}
        for row in schema_rows:
            schema = SchemaNode(name=row["schema_name"])
            schema_dict[schema.name] = schema
            schemas.append(schema)

        table_dict: Dict[str, TableNode] = {}
        for row in column_rows:
            schema_name = row["table_schema"]
            table_name = row["table_name"]

            # Rows may reference schemas the schemata view did not list
            schema = schema_dict.get(schema_name)
            if schema is None:
                schema = SchemaNode(name=schema_name)
                schema_dict[schema_name] = schema
                schemas.append(schema)

            table_key = f"{schema_name}.{table_name}"
            table = table_dict.get(table_key)
            if table is None:
                table = TableNode(schema_name=schema_name, name=table_name)
                table_dict[table_key] = table
                schema.tables.append(table)

            column = _column_from_row(row)
            config_overlay.apply(index, schema_name, table_name, column)
            table.columns.append(column)

        logger.info(f"Loaded {len(schemas)} schemas, {len(table_dict)} tables, {len(column_rows)} columns")
        return schemas

    async def load_table_columns(self, schema: str, table: str, index: Optional[FieldConfigIndex] = None,
                                 conn: Optional[AsyncConnection] = None) -> List[ColumnNode]:
        rows = await self._fetch(TABLE_COLUMNS_SQL, {"schema": schema, "table": table}, conn)
        columns = []
        for row in rows:
            column = _column_from_row(row)
            config_overlay.apply(index, schema, table, column)
            columns.append(column)
        return columns

    async def load_selectable_columns(self, schema: str, table: str,
                                      conn: Optional[AsyncConnection] = None) -> List[ColumnNode]:
        """Columns safe to show in a generic grid (no geometry/geography payloads)"""
        rows = await self._fetch(TABLE_COLUMNS_SQL, {"schema": schema, "table": table}, conn)
        return [
            _column_from_row(row) for row in rows
            if (row.get("udt_name") or "").lower() not in SPATIAL_UDT_NAMES
        ]

    async def load_primary_key_columns(self, schema: str, table: str,
                                       conn: Optional[AsyncConnection] = None) -> List[str]:
        rows = await self._fetch(PRIMARY_KEY_SQL, {"schema": schema, "table": table}, conn)
        return [row["column_name"] for row in rows]

    async def load_schema_names(self, conn: Optional[AsyncConnection] = None) -> List[str]:
        rows = await self._fetch(SCHEMAS_SQL, conn=conn)
        return [row["schema_name"] for row in rows]

    async def load_base_tables(self, schema: str, conn: Optional[AsyncConnection] = None) -> List[str]:
        rows = await self._fetch(BASE_TABLES_SQL, {"schema": schema}, conn)
        return [row["table_name"] for row in rows]

    async def load_coordinate_columns(self, schema: str, table: str,
                                      conn: Optional[AsyncConnection] = None) -> List[CoordinateColumn]:
        params = {"schema": schema, "table": table}
        async with self._connection(conn) as c:
            geometry_rows = await self._fetch(GEOMETRY_COLUMNS_SQL, params, c)
            geography_rows = await self._fetch(GEOGRAPHY_COLUMNS_SQL, params, c)

        columns = [
            CoordinateColumn(name=row["column_name"], type=row["type"], srid=row["srid"], is_geography=False)
            for row in geometry_rows
        ]
        columns.extend(
            CoordinateColumn(name=row["column_name"], type=row["type"], srid=row["srid"], is_geography=True)
            for row in geography_rows
        )
        return columns

    async def column_exists(self, schema: str, table: str, column: str,
                            conn: Optional[AsyncConnection] = None) -> bool:
        rows = await self._fetch(COLUMN_EXISTS_SQL, {"schema": schema, "table": table, "column": column}, conn)
        return len(rows) > 0

    async def schema_exists(self, schema: str, conn: Optional[AsyncConnection] = None) -> bool:
        rows = await self._fetch(SCHEMA_EXISTS_SQL, {"schema": schema}, conn)
        return len(rows) > 0

    async def tables_with_column(self, schema: str, column: str,
                                 conn: Optional[AsyncConnection] = None) -> Set[str]:
        """Names of the tables in ``schema`` that already have ``column``, from a single query"""
        rows = await self._fetch(TABLES_WITH_COLUMN_SQL, {"schema": schema, "column": column}, conn)
        return {row["table_name"] for row in rows}
