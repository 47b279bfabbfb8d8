from postgis_tools.models.app_config import AppConfig, ConnectionSettings, FieldConfig
from postgis_tools.models.schema_models import (
    COORDINATE_SYSTEMS,
    ColumnNode,
    CoordinateColumn,
    CoordinateSystemOption,
    OperationResult,
    Outcome,
    SchemaNode,
    TableNode,
)
