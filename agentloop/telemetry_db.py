"""SQLite-backed telemetry store.

Persists loop and recovery events so runs can be inspected after the fact
(``python -m agentloop events``). ``emit`` schedules the insert on the running
event loop and returns immediately; ``flush`` waits for pending writes.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sqlite3

import aiosqlite

from agentloop.config import TELEMETRY_DB_PATH
from agentloop.telemetry import TelemetryEvent

logger = logging.getLogger(__name__)


def _remove_db_files(db_path: str) -> None:
    """Remove database file and WAL/SHM sidecars so a clean DB can be created."""
    for path in (db_path, db_path + "-wal", db_path + "-shm", db_path + "-journal"):
        try:
            if os.path.exists(path):
                os.unlink(path)
                logger.info("Removed %s", path)
        except OSError as e:
            logger.warning("Could not remove %s: %s", path, e)


class SqliteTelemetrySink:
    """Telemetry sink writing events to SQLite via aiosqlite.

    Usage:
        sink = SqliteTelemetrySink("data/telemetry.db")
        await sink.init()

        sink.emit(TelemetryEvent("AgentLoopController", "thinking"))
        await sink.flush()

        rows = await sink.recent(limit=20)
        await sink.close()

    """

    def __init__(self, db_path: str = TELEMETRY_DB_PATH):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._init_lock = asyncio.Lock()
        self._pending: set[asyncio.Task] = set()
        self._initialized = False

    async def init(self) -> None:
        """Open the database and create the events table.

        If the database is corrupted, removes it and creates a new one.
        Concurrent callers share a single connection.
        """
        async with self._init_lock:
            if not self._initialized:
                await self._open()

    async def _open(self) -> None:
        dir_path = os.path.dirname(self.db_path)
        if dir_path:
            os.makedirs(dir_path, exist_ok=True)

        for attempt in range(2):
            try:
                self._db = await aiosqlite.connect(self.db_path)
                self._db.row_factory = aiosqlite.Row
                await self._db.execute("PRAGMA journal_mode=WAL")
                await self._db.execute("PRAGMA busy_timeout=5000")
                await self._create_tables()
                self._initialized = True
                logger.info("Telemetry store initialized at %s", self.db_path)
                return
            except (sqlite3.Error, OSError) as e:
                if self._db:
                    await self._db.close()
                    self._db = None
                if attempt == 0:
                    logger.warning(
                        "Telemetry database corrupted (%s), creating new one: %s",
                        type(e).__name__,
                        e,
                    )
                    _remove_db_files(self.db_path)
                else:
                    raise

    async def _create_tables(self) -> None:
        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp REAL NOT NULL,
                component TEXT NOT NULL,
                operation TEXT NOT NULL,
                level TEXT NOT NULL,
                message TEXT,
                metadata TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_events_component
                ON events(component, timestamp);
        """)
        await self._db.commit()

    def emit(self, event: TelemetryEvent) -> None:
        """Schedule the event for insertion. Never blocks."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, dropping telemetry event %s", event.operation)
            return
        task = loop.create_task(self._write(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, event: TelemetryEvent) -> None:
        if not self._initialized:
            await self.init()
        try:
            async with self._lock:
                await self._db.execute(
                    "INSERT INTO events (timestamp, component, operation, level, message, metadata) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        event.timestamp,
                        event.component,
                        event.operation,
                        event.level,
                        event.message,
                        json.dumps(event.metadata, default=str),
                    ),
                )
                await self._db.commit()
        except sqlite3.Error as e:
            logger.warning("Could not persist telemetry event: %s", e)

    async def flush(self) -> None:
        """Wait until every scheduled write has completed."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def recent(self, limit: int = 50, component: str | None = None) -> list[TelemetryEvent]:
        """Return the most recent events, oldest first."""
        if not self._initialized:
            await self.init()
        query = "SELECT * FROM events"
        params: tuple = ()
        if component:
            query += " WHERE component = ?"
            params = (component,)
        query += " ORDER BY id DESC LIMIT ?"
        params += (limit,)
        async with self._lock:
            async with self._db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        events = [
            TelemetryEvent(
                component=row["component"],
                operation=row["operation"],
                level=row["level"],
                message=row["message"] or "",
                metadata=json.loads(row["metadata"]) if row["metadata"] else {},
                timestamp=row["timestamp"],
            )
            for row in rows
        ]
        events.reverse()
        return events

    async def close(self) -> None:
        """Flush pending writes and close the connection."""
        await self.flush()
        if self._db:
            await self._db.close()
            self._db = None
            self._initialized = False


# Process-wide store used by the CLI host
_store_instance: SqliteTelemetrySink | None = None


async def get_telemetry_db() -> SqliteTelemetrySink:
    """Get or create the process-wide telemetry store (initialized)."""
    global _store_instance
    if _store_instance is None:
        _store_instance = SqliteTelemetrySink(TELEMETRY_DB_PATH)
        await _store_instance.init()
    return _store_instance


async def close_telemetry_db() -> None:
    """Close the process-wide telemetry store. Call on shutdown."""
    global _store_instance
    if _store_instance is not None:
        await _store_instance.close()
        _store_instance = None
        logger.info("Telemetry store closed")
