# postgis_tools/services/config_overlay.py
"""Mapping between live column metadata and persisted FieldConfig records.

The index built here is a plain dict: build it once per metadata load and pass
it to :func:`apply` explicitly.
"""
from typing import Dict, Iterable, List, Optional

from postgis_tools.models.app_config import FieldConfig
from postgis_tools.models.schema_models import ColumnNode, SchemaNode

FieldConfigIndex = Dict[str, FieldConfig]


def make_field_key(schema: str, table: str, column: str) -> str:
    return f"{schema}.{table}.{column}"


def build_index(records: Iterable[FieldConfig]) -> FieldConfigIndex:
    """Key every record by schema.table.column; a later duplicate replaces an earlier one"""
    index: FieldConfigIndex = {}
    for record in records:
        index[make_field_key(record.schema_name, record.table, record.column)] = record
    return index


def apply(index: Optional[FieldConfigIndex], schema: str, table: str, column: ColumnNode) -> ColumnNode:
    """Overwrite the display attributes of ``column`` with its saved record, if any.

    Blank strings and a missing length in the record fall back to the database
    values, so applying the same record twice gives the same result.
    """
    if not index:
        return column

    cfg = index.get(make_field_key(schema, table, column.name))
    if cfg is None:
        return column

    column.is_visible = cfg.visible
    column.alias = cfg.alias if cfg.alias.strip() else column.name
    column.local_type = cfg.local_type if cfg.local_type.strip() else column.db_type
    column.local_length = cfg.local_length if cfg.local_length is not None else column.character_maximum_length
    column.local_default = cfg.local_default if cfg.local_default.strip() else (column.db_default or "")
    return column


def project(schemas: Iterable[SchemaNode]) -> List[FieldConfig]:
    """Flatten the current display attributes of the whole tree into records to persist"""
    records: List[FieldConfig] = []
    for schema in schemas:
        if not schema.name.strip():
            continue
        for table in schema.tables:
            if not table.name.strip():
                continue
            for col in table.columns:
                if not col.name.strip():
                    continue
                records.append(FieldConfig(
                    schema_name=schema.name,
                    table=table.name,
                    column=col.name,
                    visible=col.is_visible,
                    alias=col.alias or "",
                    local_type=col.local_type or "",
                    local_length=col.local_length,
                    local_default=col.local_default or "",
                ))
    return records
