# postgis_tools/api/dependencies.py
from functools import lru_cache

from postgis_tools.core.db import ConnectionService
from postgis_tools.services.config_store import ConfigStore
from postgis_tools.services.data_explorer import DataExplorer
from postgis_tools.services.metadata_loader import MetadataLoader
from postgis_tools.services.schema_workspace import SchemaWorkspace


@lru_cache()
def get_connection_service() -> ConnectionService:
    return ConnectionService()


@lru_cache()
def get_config_store() -> ConfigStore:
    return ConfigStore()


@lru_cache()
def get_metadata_loader() -> MetadataLoader:
    return MetadataLoader(get_connection_service())


@lru_cache()
def get_workspace() -> SchemaWorkspace:
    """The schema screen state shared by every request"""
    return SchemaWorkspace(get_connection_service(), get_config_store(), loader=get_metadata_loader())


@lru_cache()
def get_explorer() -> DataExplorer:
    return DataExplorer(get_connection_service(), loader=get_metadata_loader())
