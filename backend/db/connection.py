"""Process-wide database handle and SQLite write transactions.

SQLite runs every repository over one shared aiosqlite connection, so a
`commit()` from one coroutine would also commit another coroutine's half
applied batch. Every SQLite write therefore goes through `sqlite_transaction`,
which holds a per-connection lock from the first statement to the commit.
Postgres uses an asyncpg pool where each batch acquires its own connection.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import weakref
from pathlib import Path
from typing import AsyncIterator, Union

import aiosqlite
import asyncpg

from backend import config

logger = logging.getLogger("projectflow.db")

DbConnection = Union[aiosqlite.Connection, asyncpg.Pool]

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA foreign_keys=ON",
    "PRAGMA busy_timeout=5000",
)

_connection: DbConnection | None = None
_write_locks: "weakref.WeakKeyDictionary[aiosqlite.Connection, asyncio.Lock]" = weakref.WeakKeyDictionary()


async def open_sqlite(path: str | Path) -> aiosqlite.Connection:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(path))
    db.row_factory = aiosqlite.Row
    for pragma in SQLITE_PRAGMAS:
        await db.execute(pragma)
    return db


async def get_connection() -> DbConnection:
    global _connection
    if _connection is None:
        if config.DB_BACKEND == "postgres":
            _connection = await asyncpg.create_pool(config.DATABASE_URL)
            logger.info("Postgres pool ready: %s", config.DATABASE_URL.rsplit("@", 1)[-1])
        else:
            _connection = await open_sqlite(config.DB_PATH)
            logger.info("SQLite database ready: %s", config.DB_PATH)
    return _connection


@contextlib.asynccontextmanager
async def sqlite_transaction(db: aiosqlite.Connection) -> AsyncIterator[aiosqlite.Connection]:
    """Run the enclosed statements as one batch: commit on exit, roll back on error."""
    lock = _write_locks.get(db)
    if lock is None:
        lock = _write_locks[db] = asyncio.Lock()
    async with lock:
        try:
            yield db
        except BaseException:
            await db.rollback()
            raise
        await db.commit()


async def close_connection() -> None:
    global _connection
    if _connection is None:
        return
    await _connection.close()
    _connection = None
    logger.info("Database connection closed")


def is_connected() -> bool:
    return _connection is not None
