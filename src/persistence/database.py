"""
Database Manager
================
Async SQLAlchemy engine and transactional session scope.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .config import PersistenceConfig
from .exceptions import PersistenceError
from .models import Base

logger = logging.getLogger(__name__)


class DatabaseManager:
    """
    Owns the engine and hands out one session per transaction.

    Usage:
        db = DatabaseManager(config)
        await db.connect()
        async with db.transaction() as session:
            ...
        await db.disconnect()
    """

    def __init__(self, config: Optional[PersistenceConfig] = None):
        self.config = config or PersistenceConfig()
        self._engine: Optional[AsyncEngine] = None
        self._sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    async def connect(self) -> None:
        """Create the engine and make sure all tables exist."""
        if self._engine is not None:
            return
        try:
            self._engine = create_async_engine(self.config.database_url, echo=self.config.echo)
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize database {self.config.database_url}: {e}")
            if self._engine is not None:
                await self._engine.dispose()
            self._engine = None
            raise PersistenceError(f"Database initialization failed: {e}") from e

        self._sessionmaker = async_sessionmaker(self._engine, expire_on_commit=False)
        logger.info(f"Connected to database {self.config.database_url}")

    async def disconnect(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessionmaker = None
            logger.info("Database connection closed")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """
        Session scope committed on success and rolled back on error.

        Raises:
            PersistenceError: Not connected, or the database operation failed
        """
        if self._sessionmaker is None:
            raise PersistenceError("Database not initialized. Call connect() first.")

        try:
            async with self._sessionmaker() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.error(f"Database transaction failed: {e}")
            raise PersistenceError(str(e)) from e
