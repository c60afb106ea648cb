"""Cache Snapshot Storage

Key-value backends for persisted candle cache entries:
- InMemoryStorage: process-local dict (tests, memory-only operation)
- SqlKeyValueStorage: SQLAlchemy asyncio engine (SQLite via aiosqlite by default)
"""
from pathlib import Path
from typing import Dict, Optional

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from candle_pipeline.core.exceptions import StorageError
from candle_pipeline.integrations.base import KeyValueStorage
from candle_pipeline.models.database import Base, CandleCacheRecord
from candle_pipeline.logger import logger


class InMemoryStorage(KeyValueStorage):
    """Dict-backed storage; contents vanish with the process."""

    def __init__(self) -> None:
        self._items: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self._items.get(key)

    async def set(self, key: str, blob: str) -> None:
        self._items[key] = blob

    async def remove(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self):
        return list(self._items.keys())


class SqlKeyValueStorage(KeyValueStorage):
    """Key-value storage on a single ``candle_cache`` table.

    The table is created lazily on first use. All SQLAlchemy failures are
    re-raised as StorageError so callers can degrade to memory-only mode.
    """

    def __init__(self, url: str, engine: Optional[AsyncEngine] = None) -> None:
        self._url = url
        if engine is None:
            _ensure_sqlite_directory(url)
            engine = create_async_engine(url, echo=False, pool_pre_ping=True)
        self._engine = engine
        self._session_factory = async_sessionmaker(
            self._engine, expire_on_commit=False
        )
        self._schema_ready = False

    async def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self._schema_ready = True
        logger.debug(f"Candle cache table ready ({self._url})")

    async def get(self, key: str) -> Optional[str]:
        try:
            await self._ensure_schema()
            async with self._session_factory() as session:
                record = await session.get(CandleCacheRecord, key)
                return record.blob if record is not None else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read '{key}': {e}") from e

    async def set(self, key: str, blob: str) -> None:
        try:
            await self._ensure_schema()
            async with self._session_factory() as session:
                await session.merge(CandleCacheRecord(key=key, blob=blob))
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to write '{key}': {e}") from e

    async def remove(self, key: str) -> None:
        try:
            await self._ensure_schema()
            async with self._session_factory() as session:
                await session.execute(
                    delete(CandleCacheRecord).where(CandleCacheRecord.key == key)
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to remove '{key}': {e}") from e

    async def close(self) -> None:
        await self._engine.dispose()


def _ensure_sqlite_directory(url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    if not url.startswith("sqlite") or ":memory:" in url:
        return
    _, _, path = url.partition(":///")
    if path:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
