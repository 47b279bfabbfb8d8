# postgis_tools/api/v1/endpoints/schema.py
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Form, HTTPException, Query, status

from postgis_tools.api.dependencies import get_workspace
from postgis_tools.api.responses import result_payload
from postgis_tools.core.errors import ValidationFailedError
from postgis_tools.models.schema_models import COORDINATE_SYSTEMS
from postgis_tools.services.ddl_service import FIELD_TYPES
from postgis_tools.services.schema_workspace import SchemaWorkspace

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/schema", tags=["schema"])


def _selection(workspace: SchemaWorkspace) -> dict:
    return {
        "schema": workspace.selected_schema,
        "table": workspace.selected_table,
        "column": workspace.selected_column,
        "srid": workspace.selected_srid,
        "canAddField": workspace.can_add_field,
        "canBatchAddField": workspace.can_batch_add_field,
        "canDeleteField": workspace.can_delete_field,
        "canConvert": workspace.can_convert,
    }


def _invalid(e: ValidationFailedError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.message)


@router.get("/coordinate-systems")
async def get_coordinate_systems(workspace: SchemaWorkspace = Depends(get_workspace)):
    return {
        "options": [option.model_dump() for option in COORDINATE_SYSTEMS],
        "selected": workspace.selected_srid,
        "fieldTypes": FIELD_TYPES,
    }


@router.post("/load")
async def load_schema(workspace: SchemaWorkspace = Depends(get_workspace)):
    """Reload the whole tree from the database"""
    result = await workspace.load_schema()
    return result_payload(result, selection=_selection(workspace))


@router.get("/tree")
async def get_tree(workspace: SchemaWorkspace = Depends(get_workspace)):
    return {
        "schemas": [schema.model_dump() for schema in workspace.schemas],
        "selection": _selection(workspace),
        "status": workspace.status_message,
        "loading": workspace.is_loading,
    }


@router.post("/select")
async def select(
        schema: Optional[str] = Form(None),
        table: Optional[str] = Form(None),
        column: Optional[str] = Form(None),
        srid: Optional[int] = Form(None),
        workspace: SchemaWorkspace = Depends(get_workspace)
):
    try:
        workspace.select(schema, table, column)
        if srid is not None:
            workspace.select_coordinate_system(srid)
    except ValidationFailedError as e:
        raise _invalid(e)
    return {"selection": _selection(workspace)}


@router.put("/columns")
async def update_column(
        schema: str = Form(...),
        table: str = Form(...),
        column: str = Form(...),
        visible: Optional[bool] = Form(None),
        alias: Optional[str] = Form(None),
        local_type: Optional[str] = Form(None),
        local_length: Optional[str] = Form(None),
        local_default: Optional[str] = Form(None),
        workspace: SchemaWorkspace = Depends(get_workspace)
):
    """
    Change the local display attributes of one field; nothing is written to the database
    """
    try:
        node = workspace.update_column_display(
            schema, table, column,
            visible=visible,
            alias=alias,
            local_type=local_type,
            local_length=local_length,
            local_default=local_default,
        )
    except ValidationFailedError as e:
        raise _invalid(e)
    return {"column": node.model_dump()}


@router.post("/config/save")
async def save_config(workspace: SchemaWorkspace = Depends(get_workspace)):
    return result_payload(workspace.save_field_configs())


@router.post("/schemas")
async def add_schema(
        name: str = Form(...),
        workspace: SchemaWorkspace = Depends(get_workspace)
):
    result = await workspace.add_schema(name)
    return result_payload(result)


@router.post("/fields")
async def add_field(
        name: str = Form(...),
        field_type: Optional[str] = Form(None),
        length: Optional[str] = Form(None),
        workspace: SchemaWorkspace = Depends(get_workspace)
):
    """Add a column to the selected table"""
    result = await workspace.add_field(name, field_type, length)
    return result_payload(result, selection=_selection(workspace))


@router.post("/batch-fields")
async def batch_add_field(
        name: str = Form(...),
        field_type: Optional[str] = Form(None),
        length: Optional[str] = Form(None),
        workspace: SchemaWorkspace = Depends(get_workspace)
):
    """Add a column to every table of the selected schema"""
    result = await workspace.batch_add_field(name, field_type, length)
    return result_payload(result, selection=_selection(workspace))


@router.delete("/fields")
async def delete_field(
        column: Optional[str] = Query(None),
        confirm: bool = Query(False),
        workspace: SchemaWorkspace = Depends(get_workspace)
):
    """
    Drop a column from the selected table. The request must carry ``confirm=true``.
    """
    result = await workspace.delete_field(column, confirm=lambda description: confirm)
    return result_payload(result, selection=_selection(workspace))


@router.post("/convert")
async def convert_coordinate_system(
        srid: Optional[int] = Form(None),
        workspace: SchemaWorkspace = Depends(get_workspace)
):
    result = await workspace.convert_coordinate_system(srid)
    return result_payload(result)
