"""
SQLite session store.

Single aiosqlite connection shared by the reconciler, every finalizer and the
command shell. Writes are serialized under one lock; reads are not.
"""

import asyncio
from contextlib import contextmanager
from pathlib import Path
from typing import List, Optional

import aiosqlite

from .config import TABLE_NAME
from .errors import PersistenceError
from .logger import get_logger
from .session import Session

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS {table} (
    sessionID TEXT PRIMARY KEY,
    ownerID INTEGER NOT NULL,
    ownerName TEXT NOT NULL,
    streamName TEXT NOT NULL UNIQUE,
    startTime INTEGER NOT NULL,
    title TEXT NOT NULL,
    durationMs INTEGER NOT NULL DEFAULT 0,
    playbackURL TEXT NOT NULL DEFAULT '',
    backupURL TEXT NOT NULL DEFAULT '',
    auxTag INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS {table}_sessionID_idx ON {table} (sessionID);
CREATE INDEX IF NOT EXISTS {table}_ownerID_idx ON {table} (ownerID);
"""

_INSERT_SQL = """\
INSERT OR IGNORE INTO {table}
    (sessionID, ownerID, ownerName, streamName, startTime, title,
     durationMs, playbackURL, backupURL, auxTag)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_UPDATE_PLAYBACK_SQL = """\
UPDATE {table} SET durationMs = ?, playbackURL = ?, backupURL = ? WHERE sessionID = ?
"""

_UPDATE_DURATION_SQL = "UPDATE {table} SET durationMs = ? WHERE sessionID = ?"

_SELECT_OWNER_SQL = """\
SELECT sessionID, ownerID, ownerName, streamName, startTime, title,
       durationMs, playbackURL, backupURL, auxTag
    FROM {table} WHERE ownerID = ? ORDER BY startTime DESC LIMIT ?
"""

_EXISTS_SQL = "SELECT ownerID FROM {table} WHERE sessionID = ?"


def _row_to_session(row: aiosqlite.Row) -> Session:
    return Session(
        session_id=row["sessionID"],
        owner_id=row["ownerID"],
        owner_name=row["ownerName"],
        stream_name=row["streamName"],
        start_time=row["startTime"],
        title=row["title"],
        duration_ms=row["durationMs"],
        playback_url=row["playbackURL"],
        backup_url=row["backupURL"],
        aux_tag=row["auxTag"],
    )


@contextmanager
def _wrap_errors(what: str):
    try:
        yield
    except aiosqlite.Error as e:
        raise PersistenceError(f"{what} failed: {e}") from e


class SessionStore:
    """
    Persistence gateway for live sessions.

    All operations are individually atomic. Updates on a missing key affect
    zero rows and are not an error; use exists() first when it matters.
    """

    def __init__(self, database_file: str, table: str = "sessions"):
        """
        Args:
            database_file: SQLite file path or ":memory:".
            table: Table name.
        """
        if not TABLE_NAME.match(table):
            raise ValueError(f"Invalid table name: {table!r}")

        self.database_file = database_file
        self.table = table
        self._db: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()
        self._logger = get_logger('store')

    async def open(self) -> None:
        """Open the database and create or migrate the schema."""
        if self.database_file != ":memory:":
            Path(self.database_file).parent.mkdir(parents=True, exist_ok=True)

        with _wrap_errors("Opening database"):
            self._db = await aiosqlite.connect(self.database_file)
            self._db.row_factory = aiosqlite.Row
            await self._db.executescript(_SCHEMA_SQL.format(table=self.table))
            await self._migrate()
            await self._db.commit()

        self._logger.info(f"Opened session store: {self.database_file} (table {self.table})")

    async def close(self) -> None:
        """Close the database."""
        if self._db is not None:
            async with self._write_lock:
                await self._db.close()
                self._db = None

    async def __aenter__(self) -> 'SessionStore':
        await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def _migrate(self) -> None:
        """Add columns missing from databases created by older versions."""
        async with self._db.execute(f"PRAGMA table_info({self.table})") as cursor:
            columns = {row["name"] for row in await cursor.fetchall()}

        if "auxTag" not in columns:
            await self._db.execute(
                f"ALTER TABLE {self.table} ADD COLUMN auxTag INTEGER NOT NULL DEFAULT 0"
            )
            self._logger.info(f"Migrated table {self.table}: added auxTag column")

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise PersistenceError("Session store is not open")
        return self._db

    async def _write(self, sql: str, params: tuple, what: str) -> int:
        db = self._conn()
        async with self._write_lock:
            with _wrap_errors(what):
                cursor = await db.execute(sql.format(table=self.table), params)
                await db.commit()
                return cursor.rowcount

    async def insert_if_absent(self, session: Session) -> bool:
        """
        Insert a session row unless its id or stream name is already stored.

        Returns:
            True if a row was inserted.
        """
        inserted = await self._write(
            _INSERT_SQL,
            (
                session.session_id, session.owner_id, session.owner_name,
                session.stream_name, session.start_time, session.title,
                session.duration_ms, session.playback_url, session.backup_url,
                session.aux_tag,
            ),
            f"Inserting session {session.session_id}",
        )
        return inserted == 1

    async def update_playback(
        self,
        session_id: str,
        duration_ms: int,
        playback_url: str,
        backup_url: str
    ) -> int:
        """Set duration and links of a session. Returns affected rows."""
        return await self._write(
            _UPDATE_PLAYBACK_SQL,
            (duration_ms, playback_url, backup_url, session_id),
            f"Updating playback of {session_id}",
        )

    async def update_duration(self, session_id: str, duration_ms: int) -> int:
        """Set only the duration of a session. Returns affected rows."""
        return await self._write(
            _UPDATE_DURATION_SQL,
            (duration_ms, session_id),
            f"Updating duration of {session_id}",
        )

    async def exists(self, session_id: str) -> bool:
        """Check whether a session row is stored."""
        db = self._conn()
        with _wrap_errors(f"Looking up {session_id}"):
            async with db.execute(_EXISTS_SQL.format(table=self.table), (session_id,)) as cursor:
                return await cursor.fetchone() is not None

    async def list_by_owner(self, owner_id: int, limit: Optional[int] = None) -> List[Session]:
        """
        Sessions of a broadcaster, newest first.

        Args:
            owner_id: Broadcaster uid.
            limit: Maximum rows, None for all.
        """
        db = self._conn()
        with _wrap_errors(f"Listing sessions of {owner_id}"):
            async with db.execute(
                _SELECT_OWNER_SQL.format(table=self.table),
                (owner_id, -1 if limit is None else limit),
            ) as cursor:
                rows = await cursor.fetchall()

        return [_row_to_session(row) for row in rows]
