# postgis_tools/services/data_explorer.py
import logging
import time
from typing import Any, Awaitable, Callable, List, Optional

from postgis_tools.core.config import settings
from postgis_tools.core.db import ConnectionService, DATABASE_ERRORS
from postgis_tools.core.errors import PostGisToolsError, ValidationFailedError
from postgis_tools.models.schema_models import OperationResult, Outcome
from postgis_tools.services.edit_session import TableEditSession
from postgis_tools.services.metadata_loader import MetadataLoader

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA = "public"


class DataExplorer:
    """Schema -> table -> rows browsing with an editable session for the current table.

    Selecting a schema loads its tables, picks the first one and loads its
    rows. Picking that first table happens with ``_suppress_auto_load`` set so
    the row load runs exactly once, at the end of the cascade.
    """

    def __init__(self, db: ConnectionService, loader: Optional[MetadataLoader] = None,
                 row_limit: Optional[int] = None, status_sink: Optional[Callable[[str], None]] = None):
        self.db = db
        self.loader = loader or MetadataLoader(db)
        self.row_limit = row_limit or settings.DATA_ROW_LIMIT
        self.status_sink = status_sink

        self.schemas: List[str] = []
        self.tables: List[str] = []
        self.selected_schema: Optional[str] = None
        self.selected_table: Optional[str] = None
        self.session: Optional[TableEditSession] = None
        self.is_loading = False
        self.status_message = ""
        self._suppress_auto_load = False

    def _set_status(self, message: str) -> None:
        self.status_message = message
        if self.status_sink is not None:
            self.status_sink(message)

    async def _run(self, label: str, operation: Callable[..., Awaitable[OperationResult]],
                   *args: Any) -> OperationResult:
        if self.is_loading:
            return OperationResult(outcome=Outcome.BUSY, message="Another operation is still running")
        if not self.db.is_configured:
            result = OperationResult(outcome=Outcome.NOT_CONNECTED, message="No database connection configured")
            self._set_status(result.message)
            return result

        start_time = time.time()
        self.is_loading = True
        try:
            result = await operation(*args)
        except PostGisToolsError as e:
            result = OperationResult.from_error(e)
        except DATABASE_ERRORS as e:
            result = OperationResult(outcome=Outcome.SERVER_ERROR, message=f"Database error: {str(e)}")
        finally:
            self.is_loading = False

        if result.ok:
            logger.info(f"{label} finished in {time.time() - start_time:.2f}s: {result.message}")
        elif result.outcome in (Outcome.SERVER_ERROR, Outcome.METADATA_UNAVAILABLE):
            logger.error(f"{label} failed: {result.message}")
        else:
            logger.warning(f"{label} not performed: {result.message}")
        self._set_status(result.message)
        return result

    def _edit(self, label: str, edit: Callable[[TableEditSession], Any]) -> OperationResult:
        if self.is_loading:
            return OperationResult(outcome=Outcome.BUSY, message="Another operation is still running")
        try:
            if self.session is None:
                raise ValidationFailedError("No table loaded")
            message = edit(self.session)
            result = OperationResult(message=message)
        except PostGisToolsError as e:
            logger.warning(f"{label} rejected: {e.message}")
            result = OperationResult.from_error(e)
        self._set_status(result.message)
        return result

    # Cascade

    async def load_schemas(self) -> OperationResult:
        return await self._run("Load schemas", self._load_schemas)

    async def _load_schemas(self) -> OperationResult:
        self.schemas = await self.loader.load_schema_names()
        self.selected_schema = None
        self.tables = []
        self.selected_table = None
        self.session = None

        if not self.schemas:
            return OperationResult(message="No schemas found")

        default = DEFAULT_SCHEMA if DEFAULT_SCHEMA in self.schemas else self.schemas[0]
        return await self._select_schema(default)

    async def select_schema(self, name: Optional[str]) -> OperationResult:
        return await self._run("Select schema", self._select_schema, name)

    async def _select_schema(self, name: Optional[str]) -> OperationResult:
        name = name or None
        if name == self.selected_schema:
            return OperationResult(message=f"Schema '{name}' already selected" if name else "No schema selected")
        if name is not None and name not in self.schemas:
            raise ValidationFailedError(f"Unknown schema '{name}'")

        self.selected_schema = name
        self.tables = []
        self.selected_table = None
        self.session = None
        if name is None:
            return OperationResult(message="No schema selected")
        return await self._load_tables()

    async def load_tables(self) -> OperationResult:
        return await self._run("Load tables", self._load_tables)

    async def _load_tables(self) -> OperationResult:
        if self.selected_schema is None:
            raise ValidationFailedError("No schema selected")

        self.tables = await self.loader.load_base_tables(self.selected_schema)
        self.selected_table = None
        self.session = None
        if not self.tables:
            return OperationResult(outcome=Outcome.NO_TABLES,
                                   message=f"Schema '{self.selected_schema}' has no tables")

        self._suppress_auto_load = True
        try:
            await self._select_table(self.tables[0])
        finally:
            self._suppress_auto_load = False
        return await self._load_data()

    async def select_table(self, name: Optional[str]) -> OperationResult:
        return await self._run("Select table", self._select_table, name)

    async def _select_table(self, name: Optional[str]) -> OperationResult:
        name = name or None
        if name == self.selected_table:
            return OperationResult(message=f"Table '{name}' already selected" if name else "No table selected")
        if name is not None and name not in self.tables:
            raise ValidationFailedError(f"Unknown table '{self.selected_schema}.{name}'")

        self.selected_table = name
        self.session = None
        if name is None or self._suppress_auto_load:
            return OperationResult(message=f"Table '{name}' selected" if name else "No table selected")
        return await self._load_data()

    async def load_data(self) -> OperationResult:
        return await self._run("Load data", self._load_data)

    async def _load_data(self) -> OperationResult:
        if self.selected_schema is None or self.selected_table is None:
            raise ValidationFailedError("No table selected")

        self.session = await TableEditSession.load(
            self.db, self.loader, self.selected_schema, self.selected_table, self.row_limit
        )
        key = f"{self.selected_schema}.{self.selected_table}"
        if self.session.no_selectable_columns:
            return OperationResult(message=f"Table {key} has no selectable columns")

        message = f"Loaded {len(self.session.rows)} rows from {key}"
        if not self.session.has_primary_key:
            message += " (read-only: no primary key)"
        return OperationResult(message=message)

    # Row edits

    def add_row(self) -> OperationResult:
        return self._edit("Add row", lambda session: f"Row {session.add_row().row_id} added")

    def delete_row(self, row_id: int) -> OperationResult:
        return self._edit("Delete row",
                          lambda session: f"Row {session.delete_row(row_id).row_id} marked for deletion")

    def set_value(self, row_id: int, column: str, value: Any) -> OperationResult:
        return self._edit("Edit value",
                          lambda session: f"Row {session.set_value(row_id, column, value).row_id} changed")

    async def commit(self) -> OperationResult:
        return await self._run("Commit", self._commit)

    async def _commit(self) -> OperationResult:
        if self.session is None:
            raise ValidationFailedError("No table loaded")

        counts = await self.session.commit(self.db)
        if not any(counts.values()):
            return OperationResult(message="Nothing to commit")
        return OperationResult(
            message=(f"Committed {counts['inserted']} inserted, {counts['updated']} updated "
                     f"and {counts['deleted']} deleted rows"),
            added=counts["inserted"],
        )
