# postgis_tools/api/v1/endpoints/data.py
import logging
from typing import Optional

import orjson
from fastapi import APIRouter, Depends, Form, Response

from postgis_tools.api.dependencies import get_explorer
from postgis_tools.api.responses import result_payload
from postgis_tools.services.data_explorer import DataExplorer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/data", tags=["data"])


def _state(explorer: DataExplorer) -> dict:
    session = explorer.session
    return {
        "schemas": explorer.schemas,
        "tables": explorer.tables,
        "schema": explorer.selected_schema,
        "table": explorer.selected_table,
        "hasPrimaryKey": session.has_primary_key if session else False,
        "noSelectableColumns": session.no_selectable_columns if session else False,
        "status": explorer.status_message,
    }


@router.post("/schemas/load")
async def load_schemas(explorer: DataExplorer = Depends(get_explorer)):
    """Load schema names, select the default one and cascade down to its first table"""
    result = await explorer.load_schemas()
    return result_payload(result, state=_state(explorer))


@router.post("/select")
async def select(
        schema: Optional[str] = Form(None),
        table: Optional[str] = Form(None),
        explorer: DataExplorer = Depends(get_explorer)
):
    result = await explorer.select_schema(schema)
    if result.ok and table is not None:
        result = await explorer.select_table(table)
    return result_payload(result, state=_state(explorer))


@router.get("/rows")
async def get_rows(explorer: DataExplorer = Depends(get_explorer)):
    """Current snapshot including rows pending insert or delete"""
    session = explorer.session
    response_data = {
        "state": _state(explorer),
        "columns": [col.model_dump() for col in session.columns] if session else [],
        "primaryKey": session.primary_key if session else [],
        "rows": [row.model_dump() for row in session.rows] if session else [],
        "pending": session.pending_changes() if session else {},
    }
    # Decimal and other driver types fall back to their string form
    return Response(
        content=orjson.dumps(response_data, default=str),
        media_type="application/json"
    )


@router.post("/rows")
async def add_row(explorer: DataExplorer = Depends(get_explorer)):
    return result_payload(explorer.add_row())


@router.patch("/rows/{row_id}")
async def set_value(
        row_id: int,
        column: str = Form(...),
        value: Optional[str] = Form(None),
        explorer: DataExplorer = Depends(get_explorer)
):
    return result_payload(explorer.set_value(row_id, column, value))


@router.delete("/rows/{row_id}")
async def delete_row(row_id: int, explorer: DataExplorer = Depends(get_explorer)):
    return result_payload(explorer.delete_row(row_id))


@router.post("/commit")
async def commit(explorer: DataExplorer = Depends(get_explorer)):
    result = await explorer.commit()
    return result_payload(result, state=_state(explorer))
