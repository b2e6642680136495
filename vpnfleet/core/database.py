"""
Database engine and session management for the fleet controller
"""

from typing import Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .config import config
from .logging import get_logger
from ..models.orm import Base


logger = get_logger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """Owns the async engine and hands out sessions"""

    def __init__(self, url: Optional[str] = None, echo: bool = False):
        self.url = url
        self.echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._sessionmaker: Optional[async_sessionmaker] = None

    def configure(self, url: str, echo: bool = False):
        """Point the database at a new URL; the engine is created lazily"""
        self.url = url
        self.echo = echo
        self._engine = None
        self._sessionmaker = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            url = self.url or config.settings.database_url
            self._engine = create_async_engine(url, echo=self.echo)
            if url.startswith("sqlite"):
                event.listen(self._engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
            self._sessionmaker = async_sessionmaker(
                self._engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )
            logger.info(f"Database engine created for {self._engine.url.render_as_string(hide_password=True)}")
        return self._engine

    def session(self) -> AsyncSession:
        """Create a new session"""
        if self._sessionmaker is None:
            _ = self.engine
        return self._sessionmaker()

    async def create_all(self):
        """Create every table that does not exist yet"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessionmaker = None


# Global database instance
database = Database()
