from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import aiosqlite


SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY,
    api_key TEXT,
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS automation_rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    enabled INTEGER NOT NULL DEFAULT 1,
    conditions TEXT NOT NULL DEFAULT '[]',
    logic_operator TEXT NOT NULL DEFAULT 'and',
    action_config TEXT NOT NULL DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_rules_user_enabled
    ON automation_rules(user_id, enabled);

CREATE TABLE IF NOT EXISTS torrent_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    torrent_id TEXT NOT NULL,
    state TEXT NOT NULL,
    progress REAL NOT NULL DEFAULT 0,
    download_speed REAL NOT NULL DEFAULT 0,
    upload_speed REAL NOT NULL DEFAULT 0,
    seeds INTEGER NOT NULL DEFAULT 0,
    peers INTEGER NOT NULL DEFAULT 0,
    ratio REAL NOT NULL DEFAULT 0,
    snapshot_data TEXT,
    created_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_snapshots_user_torrent
    ON torrent_snapshots(user_id, torrent_id, created_at);

CREATE INDEX IF NOT EXISTS idx_snapshots_created
    ON torrent_snapshots(created_at);

CREATE TABLE IF NOT EXISTS rule_execution_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    rule_id INTEGER NOT NULL,
    user_id INTEGER NOT NULL,
    rule_name TEXT,
    execution_type TEXT NOT NULL DEFAULT 'execution',
    items_processed INTEGER NOT NULL DEFAULT 0,
    success INTEGER NOT NULL,
    error_message TEXT,
    created_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_execution_log_rule
    ON rule_execution_log(rule_id, created_at);
"""


class Database:
    """Thin async wrapper around one aiosqlite connection.

    Every write commits on its own; there is no transaction spanning
    several calls.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._conn: Optional[aiosqlite.Connection] = None
        # Keeps each statement paired with its own commit when tasks interleave
        self._write_lock = asyncio.Lock()

    @property
    def is_memory(self) -> bool:
        return self.path == ':memory:'

    async def connect(self) -> 'Database':
        if self._conn is not None:
            return self
        if not self.is_memory:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self.path, timeout=10.0)
        self._conn.row_factory = aiosqlite.Row
        if not self.is_memory:
            await self._conn.execute('PRAGMA journal_mode=WAL')
            await self._conn.execute('PRAGMA synchronous=NORMAL')
        await self._conn.executescript(SCHEMA)
        await self._conn.commit()
        logging.debug(f'Database ready at {self.path}')
        return self

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> 'Database':
        return await self.connect()

    async def __aexit__(self, *exc) -> None:
        await self.close()

    def _require(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError('Database is not connected')
        return self._conn

    async def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        conn = self._require()
        async with conn.execute(sql, tuple(params)) as cursor:
            rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    async def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        conn = self._require()
        async with conn.execute(sql, tuple(params)) as cursor:
            row = await cursor.fetchone()
        return dict(row) if row is not None else None

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        conn = self._require()
        async with self._write_lock:
            cursor = await conn.execute(sql, tuple(params))
            await conn.commit()
            count = cursor.rowcount
            await cursor.close()
        return count

    async def insert(self, sql: str, params: Sequence[Any] = ()) -> Optional[int]:
        conn = self._require()
        async with self._write_lock:
            cursor = await conn.execute(sql, tuple(params))
            await conn.commit()
            rowid = cursor.lastrowid
            await cursor.close()
        return rowid

    async def execute_many(self, sql: str, rows: Iterable[Sequence[Any]]) -> int:
        conn = self._require()
        batch = [tuple(r) for r in rows]
        if not batch:
            return 0
        async with self._write_lock:
            await conn.executemany(sql, batch)
            await conn.commit()
        return len(batch)
