"""Analytical store setup with SQLAlchemy async over a single-writer SQLite file."""

import asyncio
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import Row
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool
from sqlalchemy.sql.base import Executable

from beverage_sync.config import get_settings


class Base(DeclarativeBase):
    """Base class for all analytical store models."""

    pass


REQUIRED_TABLES = (
    "mixed_beverage_receipts",
    "location_coordinates",
    "location_enrichments",
    "geocode_cache",
)


def _coerce(statement: str | Executable) -> Executable:
    return text(statement) if isinstance(statement, str) else statement


class Store:
    """
    Thin async wrapper around the analytical store.

    The file permits one writer at a time. Reads go straight through;
    writes and transactions serialize on a process-local mutex on top of
    the cross-process lock file held by the running pipeline.
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        kwargs: dict[str, Any] = {}
        if url.startswith("sqlite"):
            # Backfill swaps the file by rename; pooled handles would keep the old inode
            kwargs["poolclass"] = NullPool
            kwargs["connect_args"] = {"timeout": 30}
        self.engine: AsyncEngine = create_async_engine(url, echo=echo, **kwargs)
        self._write_lock = asyncio.Lock()

    @classmethod
    def from_path(cls, path: Path, echo: bool = False) -> "Store":
        path.parent.mkdir(parents=True, exist_ok=True)
        return cls(f"sqlite+aiosqlite:///{path}", echo=echo)

    async def query(
        self,
        statement: str | Executable,
        params: Mapping[str, Any] | None = None,
    ) -> Sequence[Row]:
        """Run a read statement and return all rows."""
        async with self.engine.connect() as conn:
            result = await conn.execute(_coerce(statement), params or {})
            return result.fetchall()

    async def query_one(
        self,
        statement: str | Executable,
        params: Mapping[str, Any] | None = None,
    ) -> Row | None:
        rows = await self.query(statement, params)
        return rows[0] if rows else None

    async def scalar(
        self,
        statement: str | Executable,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        async with self.engine.connect() as conn:
            result = await conn.execute(_coerce(statement), params or {})
            return result.scalar()

    async def execute(
        self,
        statement: str | Executable,
        params: Mapping[str, Any] | Sequence[Mapping[str, Any]] | None = None,
    ) -> int:
        """Run a single write statement in its own transaction. Returns rowcount."""
        async with self.transaction() as conn:
            result = await conn.execute(_coerce(statement), params or {})
            return result.rowcount

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncConnection]:
        """Hold the write mutex for the duration of one committed transaction."""
        async with self._write_lock:
            async with self.engine.begin() as conn:
                yield conn

    async def dispose(self) -> None:
        await self.engine.dispose()


async def init_store(store: Store) -> None:
    """Create analytical store tables."""
    # Models register themselves on Base.metadata when imported.
    import beverage_sync.models  # noqa: F401

    async with store.transaction() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_store_ready(store: Store) -> None:
    """Verify store connectivity and expected schema."""
    rows = await store.query("SELECT name FROM sqlite_master WHERE type = 'table'")
    present = {row.name for row in rows}
    missing = [name for name in REQUIRED_TABLES if name not in present]
    if missing:
        raise RuntimeError(
            f"Store schema is missing tables: {', '.join(missing)} "
            "(run `beverage-sync init-store`)."
        )


_store: Store | None = None


def get_store() -> Store:
    """Process-wide read handle on the production store (used by the API)."""
    global _store
    if _store is None:
        settings = get_settings()
        _store = Store.from_path(settings.store_path, echo=settings.debug)
    return _store


async def close_store() -> None:
    global _store
    if _store is not None:
        await _store.dispose()
        _store = None
