# postgis_tools/core/db.py
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncConnection
from sqlalchemy import create_engine, text, Engine, Connection
from sqlalchemy.engine import URL, make_url
from sqlalchemy.pool import NullPool
from sqlalchemy.exc import SQLAlchemyError
from contextlib import asynccontextmanager, contextmanager
import asyncio
import logging
import time
from typing import AsyncGenerator, Generator, Optional, Tuple

from postgis_tools.core.config import settings
from postgis_tools.core.errors import NotConnectedError

logger = logging.getLogger(__name__)

APPLICATION_NAME = "postgis_tools"

# Errors that mean "the server or the network failed", as opposed to bugs
DATABASE_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError)


class ConnectionService:
    """Holds the current connection string and hands out short-lived connections.

    Every operation opens its own connection and closes it when done; engines
    use ``NullPool`` so nothing stays connected between user actions.
    """

    def __init__(self, connect_timeout: Optional[int] = None, command_timeout: Optional[int] = None):
        self.connect_timeout = connect_timeout or settings.DB_CONNECT_TIMEOUT
        self.command_timeout = command_timeout or settings.DB_COMMAND_TIMEOUT
        self._current_url = ""
        self._engine: Optional[AsyncEngine] = None
        self._sync_engine: Optional[Engine] = None

    @property
    def current_url(self) -> str:
        return self._current_url

    @current_url.setter
    def current_url(self, value: Optional[str]):
        value = (value or "").strip()
        if value == self._current_url:
            return
        self._drop_engines()
        self._current_url = value
        logger.info("Connection target changed" if value else "Connection target cleared")

    @property
    def is_configured(self) -> bool:
        return bool(self._current_url)

    @staticmethod
    def build_url(host: str, port: int, database: str, username: str, password: Optional[str]) -> str:
        """Build an asyncpg connection URL from the individual connection fields"""
        url = URL.create(
            "postgresql+asyncpg",
            username=(username or "").strip() or None,
            password=password or None,
            host=(host or "").strip() or None,
            port=port,
            database=(database or "").strip() or None,
        )
        return url.render_as_string(hide_password=False)

    @staticmethod
    def to_sync_url(url: str) -> str:
        """Same target, but through psycopg2 for blocking work in worker threads"""
        return make_url(url).set(drivername="postgresql+psycopg2").render_as_string(hide_password=False)

    def _create_async_engine(self, url: str) -> AsyncEngine:
        return create_async_engine(
            url,
            poolclass=NullPool,
            echo=False,
            connect_args={
                "timeout": self.connect_timeout,
                "command_timeout": self.command_timeout,
                "server_settings": {"application_name": APPLICATION_NAME},
            },
        )

    def _get_engine(self) -> AsyncEngine:
        if not self._current_url:
            raise NotConnectedError("No database connection configured")
        if self._engine is None:
            self._engine = self._create_async_engine(self._current_url)
        return self._engine

    def _get_sync_engine(self) -> Engine:
        if not self._current_url:
            raise NotConnectedError("No database connection configured")
        if self._sync_engine is None:
            self._sync_engine = create_engine(
                self.to_sync_url(self._current_url),
                poolclass=NullPool,
                echo=False,
                connect_args={
                    "connect_timeout": self.connect_timeout,
                    "application_name": APPLICATION_NAME,
                    "options": f"-c statement_timeout={self.command_timeout * 1000}",
                },
            )
        return self._sync_engine

    @asynccontextmanager
    async def connect(self) -> AsyncGenerator[AsyncConnection, None]:
        """Autocommit connection: every statement is its own transaction"""
        engine = self._get_engine().execution_options(isolation_level="AUTOCOMMIT")
        async with engine.connect() as conn:
            yield conn

    @asynccontextmanager
    async def begin(self) -> AsyncGenerator[AsyncConnection, None]:
        """Connection inside a transaction, committed on success and rolled back on error"""
        async with self._get_engine().begin() as conn:
            yield conn

    @contextmanager
    def connect_sync(self) -> Generator[Connection, None, None]:
        """Blocking connection for work that runs in an executor thread"""
        with self._get_sync_engine().connect() as conn:
            yield conn

    async def test_connection(self, url: str) -> Tuple[bool, str]:
        """Open a connection to ``url`` and run a trivial query"""
        if not url:
            return False, "Connection string is empty"

        start_time = time.time()
        engine = self._create_async_engine(url)
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            elapsed = time.time() - start_time
            logger.info(f"Connection test succeeded in {elapsed:.2f}s")
            return True, "Connection successful"
        except DATABASE_ERRORS as e:
            logger.warning(f"Connection test failed: {str(e)}")
            return False, str(e) or e.__class__.__name__
        finally:
            await engine.dispose()

    def _drop_engines(self):
        # NullPool keeps no connections, so dropping the engines releases nothing live
        if self._engine is not None:
            self._engine.sync_engine.dispose()
            self._engine = None
        if self._sync_engine is not None:
            self._sync_engine.dispose()
            self._sync_engine = None

    async def dispose(self) -> None:
        """Release cached engines"""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
        if self._sync_engine is not None:
            self._sync_engine.dispose()
            self._sync_engine = None
