# postgis_tools/models/app_config.py
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class FieldConfig(BaseModel):
    """Persisted display overrides for one column, keyed by (schema, table, column)"""
    model_config = ConfigDict(populate_by_name=True)

    schema_name: str = Field("", alias="schema")
    table: str = ""
    column: str = ""

    visible: bool = True
    alias: str = ""
    local_type: str = Field("", alias="localType")
    local_length: Optional[int] = Field(None, alias="localLength")
    local_default: str = Field("", alias="localDefault")


class ConnectionSettings(BaseModel):
    # The password is deliberately absent; it only lives in memory
    host: str = "localhost"
    port: int = 5432
    database: str = ""
    username: str = ""


class AppConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    connection: ConnectionSettings = Field(default_factory=ConnectionSettings)
    field_configs: List[FieldConfig] = Field(default_factory=list, alias="fieldConfigs")
