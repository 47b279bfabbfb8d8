# postgis_tools/api/v1/endpoints/connection.py
import logging

from fastapi import APIRouter, Depends, Form, HTTPException, status

from postgis_tools.api.dependencies import get_config_store, get_connection_service
from postgis_tools.core.db import ConnectionService
from postgis_tools.models.app_config import ConnectionSettings
from postgis_tools.services.config_store import ConfigStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/connection", tags=["connection"])


@router.get("")
async def get_connection(
        db: ConnectionService = Depends(get_connection_service),
        config_store: ConfigStore = Depends(get_config_store)
):
    """Saved connection settings and whether a connection is configured"""
    return {
        "connected": db.is_configured,
        "settings": config_store.load_connection().model_dump(),
    }


@router.post("/test")
async def test_connection(
        host: str = Form(...),
        port: int = Form(5432),
        database: str = Form(...),
        username: str = Form(...),
        password: str = Form(""),
        db: ConnectionService = Depends(get_connection_service),
        config_store: ConfigStore = Depends(get_config_store)
):
    """
    Probe the connection; on success make it current and remember it (without the password)
    """
    url = ConnectionService.build_url(host, port, database, username, password)
    ok, message = await db.test_connection(url)
    if not ok:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Connection failed: {message}"
        )

    db.current_url = url
    try:
        config_store.save_connection(ConnectionSettings(
            host=host.strip(),
            port=port,
            database=database.strip(),
            username=username.strip(),
        ))
    except OSError as e:
        # The connection itself works; only remembering it failed
        logger.error(f"Could not save connection settings: {str(e)}")
        return {"connected": True, "message": f"{message}; settings not saved: {str(e)}"}

    return {"connected": True, "message": message}
