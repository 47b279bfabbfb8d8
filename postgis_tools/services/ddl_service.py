# postgis_tools/services/ddl_service.py
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Union

from sqlalchemy.ext.asyncio import AsyncConnection

from postgis_tools.core.db import ConnectionService, DATABASE_ERRORS
from postgis_tools.core.errors import (
    ConflictError,
    MetadataUnavailableError,
    PostGisToolsError,
    ServerError,
    ValidationFailedError,
)
from postgis_tools.core.sql import is_bare_word, qualified_name, quote_identifier
from postgis_tools.models.schema_models import CoordinateColumn, OperationResult, Outcome, TableNode
from postgis_tools.services import config_overlay
from postgis_tools.services.config_overlay import FieldConfigIndex
from postgis_tools.services.config_store import ConfigStore
from postgis_tools.services.metadata_loader import MetadataLoader

logger = logging.getLogger(__name__)

# Logical types offered for new columns
FIELD_TYPES = ["text", "varchar", "int", "bigint", "numeric", "boolean", "date", "timestamp"]
DEFAULT_FIELD_TYPE = FIELD_TYPES[0]

ConfirmCallback = Callable[[str], bool]


class DdlPhase(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    EXECUTING = "executing"
    RELOADING = "reloading"


def parse_length(value: Union[str, int, None]) -> Optional[int]:
    """Blank means no length; anything else must be a positive integer"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        length = int(value)
    except (TypeError, ValueError):
        raise ValidationFailedError(f"Invalid length '{value}': must be a positive integer")
    if length <= 0:
        raise ValidationFailedError(f"Invalid length '{value}': must be a positive integer")
    return length


def parse_srid(value: Union[str, int, None]) -> int:
    try:
        srid = int(value)
    except (TypeError, ValueError):
        raise ValidationFailedError(f"Invalid SRID '{value}'")
    if srid <= 0:
        raise ValidationFailedError(f"Invalid SRID '{value}'")
    return srid


def parse_field_spec(name: Optional[str], field_type: Optional[str],
                     length: Union[str, int, None] = None) -> Tuple[str, str, Optional[int]]:
    """Validate a new-column request and normalise it to (name, type, length)"""
    field_name = (name or "").strip()
    if not field_name:
        raise ValidationFailedError("Field name is required")

    parsed_length = parse_length(length)

    normalized_type = (field_type or "").strip().lower() or DEFAULT_FIELD_TYPE
    if normalized_type not in FIELD_TYPES:
        raise ValidationFailedError(
            f"Invalid field type '{field_type}', expected one of: {', '.join(FIELD_TYPES)}"
        )

    return field_name, normalized_type, parsed_length


def column_type_sql(field_type: str, length: Optional[int] = None) -> str:
    return f"{field_type}({int(length)})" if length is not None else field_type


def add_column_sql(schema: str, table: str, column: str, field_type: str, length: Optional[int] = None) -> str:
    return (f"ALTER TABLE {qualified_name(schema, table)} "
            f"ADD COLUMN {quote_identifier(column)} {column_type_sql(field_type, length)}")


def drop_column_sql(schema: str, table: str, column: str) -> str:
    return f"ALTER TABLE {qualified_name(schema, table)} DROP COLUMN {quote_identifier(column)}"


def create_schema_sql(schema: str) -> str:
    return f"CREATE SCHEMA {quote_identifier(schema)}"


def convert_column_sql(schema: str, table: str, column: CoordinateColumn, target_srid: int) -> str:
    """ALTER ... TYPE ... USING ST_Transform for one spatial column"""
    if not is_bare_word(column.type):
        raise ValidationFailedError(f"Unsupported spatial type '{column.type}' on column {column.name}")

    srid = int(target_srid)
    column_name = quote_identifier(column.name)
    if column.is_geography:
        type_definition = f"geography({column.type}, {srid})"
        using_expression = f"ST_Transform({column_name}::geometry, {srid})::geography"
    else:
        type_definition = f"geometry({column.type}, {srid})"
        using_expression = f"ST_Transform({column_name}, {srid})"

    return (f"ALTER TABLE {qualified_name(schema, table)} "
            f"ALTER COLUMN {column_name} TYPE {type_definition} USING {using_expression}")


class DdlOrchestrator:
    """Schema-changing operations against the live database.

    Every public operation returns an :class:`OperationResult`; errors never
    escape. Statements run on an autocommit connection, so each ALTER stands on
    its own and nothing is rolled back when a later statement fails. Only one
    operation runs at a time; a second request while one is in flight gets a
    ``BUSY`` result.
    """

    def __init__(self, db: ConnectionService, loader: MetadataLoader, config_store: ConfigStore):
        self.db = db
        self.loader = loader
        self.config_store = config_store
        self.phase = DdlPhase.IDLE

    @property
    def busy(self) -> bool:
        return self.phase != DdlPhase.IDLE

    def _field_config_index(self) -> FieldConfigIndex:
        return config_overlay.build_index(self.config_store.load_field_configs())

    async def _run(self, label: str, operation: Callable[..., Awaitable[OperationResult]],
                   *args: Any) -> OperationResult:
        if self.busy:
            return OperationResult(outcome=Outcome.BUSY, message="Another schema operation is still running")
        if not self.db.is_configured:
            return OperationResult(outcome=Outcome.NOT_CONNECTED,
                                   message="No database connection configured")

        start_time = time.time()
        self.phase = DdlPhase.VALIDATING
        try:
            result = await operation(*args)
        except PostGisToolsError as e:
            result = OperationResult.from_error(e)
        except DATABASE_ERRORS as e:
            result = OperationResult(outcome=Outcome.SERVER_ERROR, message=f"Database error: {str(e)}")
        finally:
            self.phase = DdlPhase.IDLE

        elapsed = time.time() - start_time
        if result.ok:
            logger.info(f"{label} finished in {elapsed:.2f}s: {result.message}")
        elif result.outcome in (Outcome.SERVER_ERROR, Outcome.METADATA_UNAVAILABLE):
            logger.error(f"{label} failed after {elapsed:.2f}s: {result.message}")
        else:
            logger.warning(f"{label} not performed: {result.message}")
        return result

    async def _execute(self, conn: AsyncConnection, sql: str) -> None:
        self.phase = DdlPhase.EXECUTING
        logger.info(f"Executing: {sql}")
        try:
            # Fully rendered DDL; nothing to bind
            await conn.exec_driver_sql(sql)
        except DATABASE_ERRORS as e:
            raise ServerError(f"Database error: {str(e)}") from e

    async def _reload_table(self, conn: AsyncConnection, table: TableNode) -> None:
        self.phase = DdlPhase.RELOADING
        table.columns = await self.loader.load_table_columns(
            table.schema_name, table.name, self._field_config_index(), conn=conn
        )

    # Add field

    async def add_field(self, table: TableNode, name: Optional[str], field_type: Optional[str] = None,
                        length: Union[str, int, None] = None) -> OperationResult:
        return await self._run("Add field", self._add_field, table, name, field_type, length)

    async def _add_field(self, table: TableNode, name: Optional[str], field_type: Optional[str],
                         length: Union[str, int, None]) -> OperationResult:
        field_name, field_type, length = parse_field_spec(name, field_type, length)

        if table.find_column(field_name) is not None:
            raise ConflictError(f"Field '{field_name}' already exists")

        async with self.db.connect() as conn:
            # The tree may be stale if someone changed the table since the last load
            if await self.loader.column_exists(table.schema_name, table.name, field_name, conn=conn):
                raise ConflictError(f"Field '{field_name}' already exists")

            await self._execute(conn, add_column_sql(table.schema_name, table.name, field_name, field_type, length))
            await self._reload_table(conn, table)

        selected = table.find_column(field_name)
        return OperationResult(
            outcome=Outcome.OK,
            message=f"Field '{field_name}' added to {table.key}",
            added=1,
            selected_column=selected.name if selected else field_name,
        )

    # Batch add field

    async def batch_add_field(self, schema: Optional[str], name: Optional[str], field_type: Optional[str] = None,
                              length: Union[str, int, None] = None) -> OperationResult:
        return await self._run("Batch add field", self._batch_add_field, schema, name, field_type, length)

    async def _batch_add_field(self, schema: Optional[str], name: Optional[str], field_type: Optional[str],
                               length: Union[str, int, None]) -> OperationResult:
        schema_name = (schema or "").strip()
        if not schema_name:
            raise ValidationFailedError("No schema selected")
        field_name, field_type, length = parse_field_spec(name, field_type, length)

        async with self.db.connect() as conn:
            tables = await self.loader.load_base_tables(schema_name, conn=conn)
            if not tables:
                return OperationResult(outcome=Outcome.NO_TABLES, message=f"Schema '{schema_name}' has no tables")

            existing = await self.loader.tables_with_column(schema_name, field_name, conn=conn)

            added = 0
            skipped = 0
            for table_name in tables:
                if table_name in existing:
                    skipped += 1
                    continue

                try:
                    await self._execute(conn, add_column_sql(schema_name, table_name, field_name, field_type, length))
                except ServerError as e:
                    # Fail fast; columns already added to earlier tables stay in place
                    return OperationResult(
                        outcome=Outcome.SERVER_ERROR,
                        message=(f"Batch add stopped at table '{table_name}' "
                                 f"after adding {added} and skipping {skipped}: {e.message}"),
                        added=added,
                        skipped=skipped,
                    )
                added += 1

            message = f"Field '{field_name}' added to {added} tables, skipped {skipped} that already had it"
            self.phase = DdlPhase.RELOADING
            try:
                schemas = await self.loader.load_all(self._field_config_index(), conn=conn)
            except MetadataUnavailableError as e:
                # The columns are in place; only the refreshed tree is missing
                logger.warning(f"Reload after batch add failed: {e.message}")
                schemas = None
                message = f"{message}; reload failed, load the schema again"

        return OperationResult(
            outcome=Outcome.OK,
            message=message,
            added=added,
            skipped=skipped,
            schemas=schemas,
        )

    # Delete field

    async def delete_field(self, table: TableNode, column: Optional[str],
                           confirm: ConfirmCallback) -> OperationResult:
        return await self._run("Delete field", self._delete_field, table, column, confirm)

    async def _delete_field(self, table: TableNode, column: Optional[str],
                            confirm: ConfirmCallback) -> OperationResult:
        field_name = (column or "").strip()
        if not field_name:
            raise ValidationFailedError("No field selected")

        if not confirm(f"Delete field '{field_name}' from {table.key}? This drops the column and its data."):
            return OperationResult(outcome=Outcome.CANCELLED, message=f"Deleting field '{field_name}' was cancelled")

        async with self.db.connect() as conn:
            await self._execute(conn, drop_column_sql(table.schema_name, table.name, field_name))
            await self._reload_table(conn, table)

        return OperationResult(outcome=Outcome.OK, message=f"Field '{field_name}' deleted from {table.key}")

    # Coordinate system conversion

    async def convert_coordinate_system(self, table: TableNode,
                                        target_srid: Union[str, int, None]) -> OperationResult:
        return await self._run("Convert coordinate system", self._convert_coordinate_system, table, target_srid)

    async def _convert_coordinate_system(self, table: TableNode,
                                         target_srid: Union[str, int, None]) -> OperationResult:
        srid = parse_srid(target_srid)

        async with self.db.connect() as conn:
            columns: List[CoordinateColumn] = await self.loader.load_coordinate_columns(
                table.schema_name, table.name, conn=conn
            )
            if not columns:
                return OperationResult(outcome=Outcome.NO_SPATIAL_COLUMNS,
                                       message=f"Table {table.key} has no spatial columns")

            converted = 0
            skipped = 0
            for column in columns:
                if column.srid == srid:
                    skipped += 1
                    continue
                try:
                    await self._execute(conn, convert_column_sql(table.schema_name, table.name, column, srid))
                except ServerError as e:
                    # Columns converted before this one keep their new SRID
                    return OperationResult(
                        outcome=Outcome.SERVER_ERROR,
                        message=(f"Conversion stopped at column '{column.name}' "
                                 f"after converting {converted} and skipping {skipped}: {e.message}"),
                        converted=converted,
                        skipped=skipped,
                    )
                converted += 1

            await self._reload_table(conn, table)

        return OperationResult(
            outcome=Outcome.OK,
            message=f"Converted {converted} spatial columns to SRID {srid}, skipped {skipped} already in it",
            converted=converted,
            skipped=skipped,
        )

    # Add schema

    async def add_schema(self, name: Optional[str]) -> OperationResult:
        return await self._run("Add schema", self._add_schema, name)

    async def _add_schema(self, name: Optional[str]) -> OperationResult:
        schema_name = (name or "").strip()
        if not schema_name:
            raise ValidationFailedError("Schema name is required")

        async with self.db.connect() as conn:
            if await self.loader.schema_exists(schema_name, conn=conn):
                raise ConflictError(f"Schema '{schema_name}' already exists")
            await self._execute(conn, create_schema_sql(schema_name))

        return OperationResult(outcome=Outcome.OK, message=f"Schema '{schema_name}' created")
