# postgis_tools/services/edit_session.py
import asyncio
import itertools
import logging
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional

from pydantic import BaseModel, Field
from sqlalchemy import and_, delete, insert, select, update
from sqlalchemy import column as sql_column, table as sql_table
from sqlalchemy.sql.elements import quoted_name
from sqlalchemy.sql.expression import TableClause

from postgis_tools.core.config import settings
from postgis_tools.core.db import ConnectionService, DATABASE_ERRORS
from postgis_tools.core.errors import EditNotPermittedError, ServerError, ValidationFailedError
from postgis_tools.models.schema_models import ColumnNode
from postgis_tools.services.metadata_loader import MetadataLoader

logger = logging.getLogger(__name__)

_INTEGER_TYPES = {"smallint", "integer", "bigint"}
_FLOAT_TYPES = {"real", "double precision"}
_TRUE_STRINGS = {"true", "t", "yes", "y", "1"}
_FALSE_STRINGS = {"false", "f", "no", "n", "0"}


def coerce_value(data_type: str, value: Any) -> Any:
    """Turn a value typed in as text into what the driver expects for ``data_type``.

    Non-string values are passed through. An empty string is NULL for every
    type except the character types.
    """
    if not isinstance(value, str):
        return value

    data_type = (data_type or "").lower()
    if data_type in ("text", "character varying", "character") or data_type.startswith("char"):
        return value

    stripped = value.strip()
    if not stripped:
        return None

    try:
        if data_type in _INTEGER_TYPES:
            return int(stripped)
        if data_type == "numeric":
            return Decimal(stripped)
        if data_type in _FLOAT_TYPES:
            return float(stripped)
        if data_type == "boolean":
            lowered = stripped.lower()
            if lowered in _TRUE_STRINGS:
                return True
            if lowered in _FALSE_STRINGS:
                return False
            raise ValueError(stripped)
        if data_type == "date":
            return date.fromisoformat(stripped)
        if data_type.startswith("timestamp"):
            return datetime.fromisoformat(stripped)
        if data_type.startswith("time"):
            return time.fromisoformat(stripped)
    except (ValueError, InvalidOperation):
        raise ValidationFailedError(f"'{value}' is not a valid {data_type} value")

    return value


def table_clause(schema: str, table: str, columns: List[str]) -> TableClause:
    """Lightweight table construct whose identifiers are always quoted"""
    return sql_table(
        quoted_name(table, quote=True),
        *[sql_column(quoted_name(name, quote=True)) for name in columns],
        schema=quoted_name(schema, quote=True),
    )


class RowState(str, Enum):
    UNCHANGED = "unchanged"
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


class EditableRow(BaseModel):
    row_id: int
    state: RowState = RowState.UNCHANGED
    values: Dict[str, Any] = Field(default_factory=dict)
    # Values as last read from or written to the server
    original: Dict[str, Any] = Field(default_factory=dict)
    is_new: bool = False


class StatementKind(str, Enum):
    DELETE = "delete"
    UPDATE = "update"
    INSERT = "insert"


class PendingStatement(NamedTuple):
    kind: StatementKind
    row_id: int
    statement: Any


def _fetch_rows(db: ConnectionService, statement) -> List[Dict[str, Any]]:
    with db.connect_sync() as conn:
        result = conn.execute(statement)
        return [dict(row) for row in result.mappings().all()]


class TableEditSession:
    """A bounded, editable snapshot of one table's non-spatial columns.

    Edits accumulate in memory until :meth:`commit`. Without a primary key the
    session is read-only, since there is nothing to key UPDATE and DELETE on.
    """

    def __init__(self, schema: str, table: str, columns: Optional[List[ColumnNode]] = None,
                 primary_key: Optional[List[str]] = None, row_limit: Optional[int] = None):
        self.schema = schema
        self.table = table
        self.columns: List[ColumnNode] = list(columns or [])
        self.primary_key: List[str] = list(primary_key or [])
        self.row_limit = row_limit or settings.DATA_ROW_LIMIT
        self.rows: List[EditableRow] = []
        self._ids = itertools.count(1)

    @classmethod
    async def load(cls, db: ConnectionService, loader: MetadataLoader, schema: str, table: str,
                   row_limit: Optional[int] = None) -> "TableEditSession":
        async with db.connect() as conn:
            columns = await loader.load_selectable_columns(schema, table, conn=conn)
            primary_key = await loader.load_primary_key_columns(schema, table, conn=conn)

        session = cls(schema, table, columns, primary_key, row_limit)
        if session.no_selectable_columns:
            logger.info(f"{schema}.{table} has no selectable columns")
            return session

        statement = select(*session._table.c).limit(session.row_limit)
        loop = asyncio.get_running_loop()
        try:
            records = await loop.run_in_executor(None, _fetch_rows, db, statement)
        except DATABASE_ERRORS as e:
            logger.error(f"Reading rows of {schema}.{table} failed: {str(e)}")
            raise ServerError(f"Could not read rows: {str(e)}") from e

        for record in records:
            session.rows.append(EditableRow(
                row_id=next(session._ids),
                values=dict(record),
                original=dict(record),
            ))
        logger.info(f"Loaded {len(session.rows)} rows from {schema}.{table} "
                    f"(limit {session.row_limit}, primary key: {session.primary_key or 'none'})")
        return session

    @property
    def column_names(self) -> List[str]:
        return [col.name for col in self.columns]

    @property
    def no_selectable_columns(self) -> bool:
        return not self.columns

    @property
    def has_primary_key(self) -> bool:
        return bool(self.primary_key)

    @property
    def is_editable(self) -> bool:
        return self.has_primary_key and not self.no_selectable_columns

    @property
    def _table(self) -> TableClause:
        names = self.column_names
        names.extend(key for key in self.primary_key if key not in names)
        return table_clause(self.schema, self.table, names)

    def _require_editable(self, action: str) -> None:
        if self.no_selectable_columns:
            raise EditNotPermittedError(f"Cannot {action}: {self.schema}.{self.table} has no selectable columns")
        if not self.has_primary_key:
            raise EditNotPermittedError(f"Cannot {action}: {self.schema}.{self.table} has no primary key")

    def get_row(self, row_id: int) -> EditableRow:
        for row in self.rows:
            if row.row_id == row_id:
                return row
        raise ValidationFailedError(f"Unknown row {row_id}")

    # Edits

    def add_row(self) -> EditableRow:
        self._require_editable("add a row")
        row = EditableRow(
            row_id=next(self._ids),
            state=RowState.ADDED,
            values={name: None for name in self.column_names},
            is_new=True,
        )
        self.rows.append(row)
        return row

    def delete_row(self, row_id: int) -> EditableRow:
        self._require_editable("delete a row")
        row = self.get_row(row_id)
        row.state = RowState.DELETED
        return row

    def set_value(self, row_id: int, column: str, value: Any) -> EditableRow:
        self._require_editable("edit a value")
        row = self.get_row(row_id)
        if row.state == RowState.DELETED:
            raise EditNotPermittedError(f"Row {row_id} is marked for deletion")

        column_node = next((col for col in self.columns if col.name == column), None)
        if column_node is None:
            raise ValidationFailedError(f"Unknown column '{column}'")

        row.values[column] = coerce_value(column_node.db_type, value)
        if row.state == RowState.UNCHANGED:
            row.state = RowState.MODIFIED
        return row

    def pending_changes(self) -> Dict[str, int]:
        counts = {"inserted": 0, "updated": 0, "deleted": 0}
        for row in self.rows:
            if row.state == RowState.ADDED:
                counts["inserted"] += 1
            elif row.state == RowState.MODIFIED and self._changed_values(row):
                counts["updated"] += 1
            elif row.state == RowState.DELETED and not row.is_new:
                counts["deleted"] += 1
        return counts

    @property
    def has_pending_changes(self) -> bool:
        return any(self.pending_changes().values())

    # Statements

    @staticmethod
    def _changed_values(row: EditableRow) -> Dict[str, Any]:
        return {
            name: value for name, value in row.values.items()
            if name not in row.original or row.original[name] != value
        }

    def _key_condition(self, table: TableClause, row: EditableRow):
        return and_(*[table.c[key] == row.original.get(key) for key in self.primary_key])

    def build_statements(self) -> List[PendingStatement]:
        """INSERT/UPDATE/DELETE statements for the accumulated edits, deletes first"""
        table = self._table
        deletes: List[PendingStatement] = []
        updates: List[PendingStatement] = []
        inserts: List[PendingStatement] = []

        for row in self.rows:
            if row.state == RowState.DELETED:
                if not row.is_new:
                    deletes.append(PendingStatement(
                        StatementKind.DELETE, row.row_id,
                        delete(table).where(self._key_condition(table, row)),
                    ))
            elif row.state == RowState.MODIFIED:
                changed = self._changed_values(row)
                if changed:
                    updates.append(PendingStatement(
                        StatementKind.UPDATE, row.row_id,
                        update(table).where(self._key_condition(table, row)).values(changed),
                    ))
            elif row.state == RowState.ADDED:
                values = {name: value for name, value in row.values.items() if value is not None}
                statement = insert(table)
                if values:
                    statement = statement.values(values)
                inserts.append(PendingStatement(
                    StatementKind.INSERT, row.row_id,
                    statement.returning(*[table.c[key] for key in self.primary_key]),
                ))

        return deletes + updates + inserts

    async def commit(self, db: ConnectionService) -> Dict[str, int]:
        """Apply every pending edit in one transaction.

        On failure the snapshot is left as it was; reload before trusting it.
        """
        self._require_editable("commit")
        statements = self.build_statements()
        counts = {"inserted": 0, "updated": 0, "deleted": 0}
        if not statements:
            return counts

        generated: Dict[int, Dict[str, Any]] = {}
        try:
            async with db.begin() as conn:
                for pending in statements:
                    result = await conn.execute(pending.statement)
                    if pending.kind == StatementKind.INSERT:
                        returned = result.mappings().first()
                        if returned is not None:
                            generated[pending.row_id] = dict(returned)
                        counts["inserted"] += 1
                    elif pending.kind == StatementKind.UPDATE:
                        counts["updated"] += 1
                    else:
                        counts["deleted"] += 1
        except DATABASE_ERRORS as e:
            logger.error(f"Commit to {self.schema}.{self.table} failed: {str(e)}")
            raise ServerError(f"Commit failed: {str(e)}") from e

        self._accept(generated)
        logger.info(f"Committed to {self.schema}.{self.table}: {counts}")
        return counts

    def _accept(self, generated: Dict[int, Dict[str, Any]]) -> None:
        """Make the current values the new baseline"""
        kept = []
        for row in self.rows:
            if row.state == RowState.DELETED:
                continue
            if row.row_id in generated:
                for key, value in generated[row.row_id].items():
                    if key in row.values or key in self.primary_key:
                        row.values[key] = value
            row.original = dict(row.values)
            row.state = RowState.UNCHANGED
            row.is_new = False
            kept.append(row)
        self.rows = kept
