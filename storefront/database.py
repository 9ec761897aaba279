"""Async SQLAlchemy engine and session factory shared by the services."""
import logging

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)

Base = declarative_base()

# Seconds a SQLite writer waits for the file lock before giving up
SQLITE_BUSY_TIMEOUT = 30


class Database:
    """Owns the engine; sessions never expire loaded rows on commit."""

    def __init__(self, database_url: str, echo: bool = False):
        """
        Args:
            database_url: ``postgresql+asyncpg://...`` in deployments,
                ``sqlite+aiosqlite:///...`` for local runs and tests
            echo: Log every SQL statement
        """
        self.url = database_url
        if database_url.startswith("sqlite"):
            options = {"connect_args": {"timeout": SQLITE_BUSY_TIMEOUT}}
        else:
            options = {"pool_size": 10, "max_overflow": 20, "pool_pre_ping": True}

        self.engine = create_async_engine(database_url, echo=echo, **options)
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Database schema ready ({self.engine.url.get_backend_name()})")

    async def ping(self) -> bool:
        """True when a trivial query succeeds."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Database ping failed: {str(e)}")
            return False

    async def close(self):
        await self.engine.dispose()
        logger.info("Database connections closed")
