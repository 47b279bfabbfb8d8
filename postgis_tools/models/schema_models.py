# postgis_tools/models/schema_models.py
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from postgis_tools.core.errors import (
    ConflictError,
    MetadataUnavailableError,
    NotConnectedError,
    PostGisToolsError,
    ServerError,
    ValidationFailedError,
)

SPATIAL_UDT_NAMES = ("geometry", "geography")


class ColumnNode(BaseModel):
    """A live column plus its locally configurable display attributes"""
    name: str

    # Read-only, as observed in information_schema.columns
    db_type: str = ""
    udt_name: str = ""
    is_nullable: bool = True
    character_maximum_length: Optional[int] = None
    db_default: Optional[str] = None

    # Local display metadata, never written back to the database
    is_visible: bool = True
    alias: str = ""
    local_type: str = ""
    local_length: Optional[int] = None
    local_default: str = ""

    @classmethod
    def from_catalog(
            cls,
            name: str,
            data_type: str,
            udt_name: Optional[str],
            column_default: Optional[str],
            character_maximum_length: Optional[int],
            is_nullable: bool
    ) -> "ColumnNode":
        """Create a column whose display attributes mirror the database values"""
        return cls(
            name=name,
            db_type=data_type,
            udt_name=udt_name or "",
            is_nullable=is_nullable,
            character_maximum_length=character_maximum_length,
            db_default=column_default,
            alias=name,
            local_type=data_type,
            local_length=character_maximum_length,
            local_default=column_default or "",
        )

    @property
    def is_spatial(self) -> bool:
        return self.udt_name.lower() in SPATIAL_UDT_NAMES


class TableNode(BaseModel):
    schema_name: str
    name: str
    columns: List[ColumnNode] = Field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.schema_name}.{self.name}"

    def find_column(self, name: Optional[str]) -> Optional[ColumnNode]:
        """Case-insensitive lookup by column name"""
        if not name:
            return None
        wanted = name.lower()
        return next((col for col in self.columns if col.name.lower() == wanted), None)


class SchemaNode(BaseModel):
    name: str
    tables: List[TableNode] = Field(default_factory=list)

    def find_table(self, name: Optional[str]) -> Optional[TableNode]:
        if not name:
            return None
        return next((table for table in self.tables if table.name == name), None)


class CoordinateColumn(BaseModel):
    """A spatial column as listed by geometry_columns / geography_columns"""
    name: str
    type: str
    srid: int
    is_geography: bool = False


class CoordinateSystemOption(BaseModel):
    name: str
    srid: int


COORDINATE_SYSTEMS = [
    CoordinateSystemOption(name="WGS 84", srid=4326),
    CoordinateSystemOption(name="Web Mercator", srid=3857),
    CoordinateSystemOption(name="CGCS2000", srid=4490),
]


class Outcome(str, Enum):
    OK = "ok"
    NOT_CONNECTED = "not_connected"
    VALIDATION_FAILED = "validation_failed"
    CONFLICT = "conflict"
    SERVER_ERROR = "server_error"
    METADATA_UNAVAILABLE = "metadata_unavailable"
    NO_SPATIAL_COLUMNS = "no_spatial_columns"
    NO_TABLES = "no_tables"
    CANCELLED = "cancelled"
    BUSY = "busy"


_ERROR_OUTCOMES = (
    (NotConnectedError, Outcome.NOT_CONNECTED),
    (ValidationFailedError, Outcome.VALIDATION_FAILED),
    (ConflictError, Outcome.CONFLICT),
    (MetadataUnavailableError, Outcome.METADATA_UNAVAILABLE),
    (ServerError, Outcome.SERVER_ERROR),
)


class OperationResult(BaseModel):
    """What a user-triggered operation did, in counts and one status line"""
    outcome: Outcome = Outcome.OK
    message: str = ""
    added: int = 0
    skipped: int = 0
    converted: int = 0
    selected_column: Optional[str] = None

    # Freshly loaded tree after operations that end with a full reload
    schemas: Optional[List[SchemaNode]] = Field(default=None, exclude=True)

    @property
    def ok(self) -> bool:
        return self.outcome == Outcome.OK

    @classmethod
    def from_error(cls, error: PostGisToolsError) -> "OperationResult":
        for error_class, outcome in _ERROR_OUTCOMES:
            if isinstance(error, error_class):
                return cls(outcome=outcome, message=error.message)
        return cls(outcome=Outcome.SERVER_ERROR, message=error.message)
