# postgis_tools/services/schema_workspace.py
import logging
from contextlib import contextmanager
from typing import Callable, Generator, List, Optional, Union

from postgis_tools.core.db import ConnectionService
from postgis_tools.core.errors import MetadataUnavailableError, ValidationFailedError
from postgis_tools.models.schema_models import (
    COORDINATE_SYSTEMS,
    ColumnNode,
    OperationResult,
    Outcome,
    SchemaNode,
    TableNode,
)
from postgis_tools.services import config_overlay
from postgis_tools.services.config_store import ConfigStore
from postgis_tools.services.ddl_service import ConfirmCallback, DdlOrchestrator, parse_length
from postgis_tools.services.metadata_loader import MetadataLoader

logger = logging.getLogger(__name__)

StatusSink = Callable[[str], None]


def _decline(description: str) -> bool:
    # Without a prompt nothing destructive is confirmed
    return False


class SchemaWorkspace:
    """The schema screen without a screen.

    Owns the loaded schema tree and the current selection, and routes every
    schema-changing command through :class:`DdlOrchestrator`. Selection moves
    through ``select_schema`` / ``select_table`` / ``select_column``; each is a
    no-op when asked for what is already selected. ``is_loading`` is advisory:
    commands issued while it is set come back as ``BUSY``.
    """

    def __init__(
            self,
            db: ConnectionService,
            config_store: ConfigStore,
            loader: Optional[MetadataLoader] = None,
            orchestrator: Optional[DdlOrchestrator] = None,
            confirm: Optional[ConfirmCallback] = None,
            status_sink: Optional[StatusSink] = None
    ):
        self.db = db
        self.config_store = config_store
        self.loader = loader or MetadataLoader(db)
        self.orchestrator = orchestrator or DdlOrchestrator(db, self.loader, config_store)
        self.confirm: ConfirmCallback = confirm or _decline
        self.status_sink = status_sink

        self.schemas: List[SchemaNode] = []
        self.selected_schema: Optional[str] = None
        self.selected_table: Optional[str] = None
        self.selected_column: Optional[str] = None
        self.selected_srid: int = COORDINATE_SYSTEMS[0].srid
        self.is_loading = False
        self.status_message = ""

    # Status

    def _set_status(self, message: str) -> None:
        self.status_message = message
        if self.status_sink is not None:
            self.status_sink(message)

    def _report(self, result: OperationResult) -> OperationResult:
        self._set_status(result.message)
        return result

    @contextmanager
    def _loading(self) -> Generator[None, None, None]:
        self.is_loading = True
        try:
            yield
        finally:
            self.is_loading = False

    def _busy_result(self) -> OperationResult:
        return OperationResult(outcome=Outcome.BUSY, message="Another operation is still running")

    # Tree access

    @property
    def current_schema(self) -> Optional[SchemaNode]:
        return self.find_schema(self.selected_schema)

    @property
    def current_table(self) -> Optional[TableNode]:
        schema = self.current_schema
        return schema.find_table(self.selected_table) if schema else None

    def find_schema(self, name: Optional[str]) -> Optional[SchemaNode]:
        if not name:
            return None
        return next((schema for schema in self.schemas if schema.name == name), None)

    # Loading

    async def load_schema(self) -> OperationResult:
        """Re-read the whole tree, applying the saved field configuration"""
        if self.is_loading:
            return self._busy_result()
        if not self.db.is_configured:
            return self._report(OperationResult(outcome=Outcome.NOT_CONNECTED,
                                                message="No database connection configured"))

        with self._loading():
            self._set_status("Loading schema...")
            try:
                index = config_overlay.build_index(self.config_store.load_field_configs())
                schemas = await self.loader.load_all(index)
            except MetadataUnavailableError as e:
                logger.error(f"Schema load failed: {e.message}")
                return self._report(OperationResult(outcome=Outcome.METADATA_UNAVAILABLE, message=e.message))

            self._replace_tree(schemas)

        table_count = sum(len(schema.tables) for schema in self.schemas)
        return self._report(OperationResult(
            message=f"Loaded {len(self.schemas)} schemas with {table_count} tables"
        ))

    def _replace_tree(self, schemas: List[SchemaNode]) -> None:
        """Swap in a freshly loaded tree, keeping whatever selection still exists in it"""
        self.schemas = schemas
        if self.current_schema is None:
            self.selected_schema = None
            self.selected_table = None
            self.selected_column = None
            return

        table = self.current_table
        if table is None:
            self.selected_table = None
            self.selected_column = None
        elif table.find_column(self.selected_column) is None:
            self.selected_column = None

    # Selection

    def select_schema(self, name: Optional[str]) -> None:
        name = name or None
        if name == self.selected_schema:
            return
        if name is not None and self.find_schema(name) is None:
            raise ValidationFailedError(f"Unknown schema '{name}'")

        self.selected_schema = name
        self.selected_table = None
        self.selected_column = None

    def select_table(self, name: Optional[str]) -> None:
        name = name or None
        if name == self.selected_table:
            return
        if name is not None:
            schema = self.current_schema
            if schema is None:
                raise ValidationFailedError("Select a schema before selecting a table")
            if schema.find_table(name) is None:
                raise ValidationFailedError(f"Unknown table '{schema.name}.{name}'")

        self.selected_table = name
        self.selected_column = None

    def select_column(self, name: Optional[str]) -> None:
        name = name or None
        if name == self.selected_column:
            return
        if name is not None:
            table = self.current_table
            if table is None:
                raise ValidationFailedError("Select a table before selecting a field")
            column = table.find_column(name)
            if column is None:
                raise ValidationFailedError(f"Unknown field '{name}' in {table.key}")
            name = column.name

        self.selected_column = name

    def select(self, schema: Optional[str] = None, table: Optional[str] = None,
               column: Optional[str] = None) -> None:
        self.select_schema(schema)
        self.select_table(table)
        self.select_column(column)

    def select_coordinate_system(self, srid: int) -> None:
        if not any(option.srid == srid for option in COORDINATE_SYSTEMS):
            raise ValidationFailedError(f"Unknown coordinate system SRID {srid}")
        self.selected_srid = srid

    # Display attributes

    def update_column_display(
            self,
            schema: str,
            table: str,
            column: str,
            visible: Optional[bool] = None,
            alias: Optional[str] = None,
            local_type: Optional[str] = None,
            local_length: Union[str, int, None] = None,
            local_default: Optional[str] = None
    ) -> ColumnNode:
        """Edit the local display attributes of one column; nothing reaches the database"""
        schema_node = self.find_schema(schema)
        table_node = schema_node.find_table(table) if schema_node else None
        column_node = table_node.find_column(column) if table_node else None
        if column_node is None:
            raise ValidationFailedError(f"Unknown field '{schema}.{table}.{column}'")

        # Blanks fall back to the database values, as config_overlay.apply does on reload
        if visible is not None:
            column_node.is_visible = visible
        if alias is not None:
            column_node.alias = alias if alias.strip() else column_node.name
        if local_type is not None:
            column_node.local_type = local_type if local_type.strip() else column_node.db_type
        if local_length is not None:
            length = parse_length(local_length)
            column_node.local_length = length if length is not None else column_node.character_maximum_length
        if local_default is not None:
            column_node.local_default = local_default if local_default.strip() else (column_node.db_default or "")
        return column_node

    def save_field_configs(self) -> OperationResult:
        records = config_overlay.project(self.schemas)
        try:
            self.config_store.save_field_configs(records)
        except OSError as e:
            logger.error(f"Saving field configuration failed: {str(e)}")
            return self._report(OperationResult(outcome=Outcome.SERVER_ERROR,
                                                message=f"Could not save configuration: {str(e)}"))
        return self._report(OperationResult(message=f"Saved configuration for {len(records)} fields"))

    # Command availability

    @property
    def can_add_field(self) -> bool:
        return not self.is_loading and self.current_table is not None

    @property
    def can_batch_add_field(self) -> bool:
        # Batch add works on a whole schema, so a selected table disables it
        return not self.is_loading and self.current_schema is not None and self.selected_table is None

    @property
    def can_delete_field(self) -> bool:
        return not self.is_loading and self.current_table is not None and self.selected_column is not None

    @property
    def can_convert(self) -> bool:
        return not self.is_loading and self.current_table is not None

    # Commands

    async def add_field(self, name: Optional[str], field_type: Optional[str] = None,
                        length: Union[str, int, None] = None) -> OperationResult:
        if self.is_loading:
            return self._busy_result()
        table = self.current_table
        if table is None:
            return self._report(OperationResult(outcome=Outcome.VALIDATION_FAILED, message="No table selected"))

        with self._loading():
            result = await self.orchestrator.add_field(table, name, field_type, length)
        if result.ok:
            self.selected_column = result.selected_column
        return self._report(result)

    async def batch_add_field(self, name: Optional[str], field_type: Optional[str] = None,
                              length: Union[str, int, None] = None) -> OperationResult:
        if self.is_loading:
            return self._busy_result()
        if self.current_schema is None:
            return self._report(OperationResult(outcome=Outcome.VALIDATION_FAILED, message="No schema selected"))
        if self.selected_table is not None:
            return self._report(OperationResult(outcome=Outcome.VALIDATION_FAILED,
                                                message="Clear the table selection to add a field to every table"))

        with self._loading():
            result = await self.orchestrator.batch_add_field(self.selected_schema, name, field_type, length)
        if result.schemas is not None:
            self._replace_tree(result.schemas)
        return self._report(result)

    async def delete_field(self, column: Optional[str] = None,
                           confirm: Optional[ConfirmCallback] = None) -> OperationResult:
        if self.is_loading:
            return self._busy_result()
        table = self.current_table
        if table is None:
            return self._report(OperationResult(outcome=Outcome.VALIDATION_FAILED, message="No table selected"))

        column = column or self.selected_column
        with self._loading():
            result = await self.orchestrator.delete_field(table, column, confirm or self.confirm)
        if result.ok and self.selected_column and table.find_column(self.selected_column) is None:
            self.selected_column = None
        return self._report(result)

    async def convert_coordinate_system(self, srid: Union[str, int, None] = None) -> OperationResult:
        if self.is_loading:
            return self._busy_result()
        table = self.current_table
        if table is None:
            return self._report(OperationResult(outcome=Outcome.VALIDATION_FAILED, message="No table selected"))

        target = self.selected_srid if srid is None else srid
        with self._loading():
            result = await self.orchestrator.convert_coordinate_system(table, target)
        return self._report(result)

    async def add_schema(self, name: Optional[str]) -> OperationResult:
        if self.is_loading:
            return self._busy_result()

        with self._loading():
            result = await self.orchestrator.add_schema(name)
        if result.ok:
            schema_name = name.strip()
            if self.find_schema(schema_name) is None:
                self.schemas.append(SchemaNode(name=schema_name))
        return self._report(result)
