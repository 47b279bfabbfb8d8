# postgis_tools/main.py

import logging

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from postgis_tools.api.dependencies import get_config_store, get_connection_service
from postgis_tools.api.v1.endpoints import connection, data, schema
from postgis_tools.core.config import settings
from postgis_tools.core.db import ConnectionService

# Set up logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.PROJECT_NAME, version=settings.VERSION, description=settings.DESCRIPTION)

# Set up CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(connection.router, prefix=settings.API_V1_STR)
app.include_router(schema.router, prefix=settings.API_V1_STR)
app.include_router(data.router, prefix=settings.API_V1_STR)


def startup_url() -> str:
    """Connection URL from the environment, if one is configured there"""
    if settings.DATABASE_URL:
        return settings.DATABASE_URL
    if settings.has_startup_connection:
        return ConnectionService.build_url(
            settings.POSTGRES_HOST,
            settings.POSTGRES_PORT,
            settings.POSTGRES_DB,
            settings.POSTGRES_USER or "",
            settings.POSTGRES_PASSWORD,
        )
    return ""


@app.on_event("startup")
async def startup_event():
    url = startup_url()
    if url:
        get_connection_service().current_url = url
        logger.info("Using the database connection from the environment")
    else:
        saved = get_config_store().load_connection()
        logger.info(f"No connection configured; last used {saved.username}@{saved.host}:{saved.port}/"
                    f"{saved.database or '-'} (test it to connect)")


@app.on_event("shutdown")
async def shutdown_event():
    await get_connection_service().dispose()


@app.get("/health")
async def health_check():
    return {"status": "ok", "connected": get_connection_service().is_configured}


def run():
    uvicorn.run("postgis_tools.main:app", host=settings.HOST, port=settings.PORT, reload=False)


if __name__ == "__main__":
    run()
