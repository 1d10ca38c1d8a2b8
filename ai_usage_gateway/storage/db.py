"""
Database connection management.

Provides async SQLite connections for data persistence.
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

DEFAULT_DB_PATH = "ai_usage_gateway.db"


@asynccontextmanager
async def get_connection(db_path: str = DEFAULT_DB_PATH) -> AsyncIterator[aiosqlite.Connection]:
    """Open an aiosqlite connection with foreign keys enabled.

    Args:
        db_path: Path to SQLite database file

    Yields:
        Connection whose rows are addressable by column name
    """
    path = Path(db_path)
    async with aiosqlite.connect(str(path)) as conn:
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA foreign_keys = ON")
        yield conn
