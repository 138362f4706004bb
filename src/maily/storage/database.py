# =============================================================================
# Cache Database
# =============================================================================
# Owns the SQLite file behind the local cache (maily.db in the XDG data dir).
#
# Tables:
#   - mailboxes: per (account, mailbox) sync state (UIDVALIDITY, last sync)
#   - messages: one row per cached message, keyed by (account, mailbox, uid)
#
# The daemon and one-shot `maily sync` runs open the same file. WAL mode
# lets a reader in one process keep its snapshot while the other writes,
# and busy_timeout makes a second writer queue instead of failing.
#
# Autocommit: every mutation in the repository is wrapped in an explicit
# BEGIN IMMEDIATE ... COMMIT.
# =============================================================================

import logging
from pathlib import Path

import aiosqlite

from maily.config import Config

logger = logging.getLogger(__name__)

# Bump together with a migration in _migrate()
SCHEMA_VERSION = 1

# How long a writer waits for another process's write lock (milliseconds)
BUSY_TIMEOUT_MS = 30_000

_SCHEMA = f"""
BEGIN;

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS mailboxes (
    account TEXT NOT NULL,
    name TEXT NOT NULL,
    uidvalidity INTEGER,
    last_sync TEXT,
    PRIMARY KEY (account, name)
);

CREATE TABLE IF NOT EXISTS messages (
    account TEXT NOT NULL,
    mailbox TEXT NOT NULL,
    uid INTEGER NOT NULL CHECK (uid BETWEEN 1 AND 4294967295),
    flags INTEGER NOT NULL DEFAULT 0,       -- MessageFlags bitmask
    keywords TEXT NOT NULL DEFAULT '[]',    -- JSON array of keyword flags
    modseq INTEGER,
    subject TEXT NOT NULL DEFAULT '',
    sender TEXT NOT NULL DEFAULT '',
    date_sent TEXT,                         -- ISO 8601
    message_id TEXT NOT NULL DEFAULT '',
    size INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (account, mailbox, uid)
);

CREATE INDEX IF NOT EXISTS idx_messages_date
    ON messages(account, mailbox, date_sent DESC);

DELETE FROM schema_version;
INSERT INTO schema_version (version) VALUES ({SCHEMA_VERSION});

COMMIT;
"""


class Database:
    """
    The SQLite file shared by every maily process.

    Usage:
        >>> async with Database() as db:
        ...     cache = LocalCache(db)

    Attributes:
        db_path: Location of the database file.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path or Config.database_path()
        self._connection: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """Open (creating if needed) the file and bring the schema up to date."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

        # isolation_level=None: the repository issues BEGIN/COMMIT itself
        self._connection = await aiosqlite.connect(self.db_path, isolation_level=None)
        try:
            await self._pragma(f"busy_timeout = {BUSY_TIMEOUT_MS}")
            await self._pragma("journal_mode = WAL")

            version = await self._schema_version()
            if version < SCHEMA_VERSION:
                await self._migrate(version)
        except BaseException:
            await self.close()
            raise

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def conn(self) -> aiosqlite.Connection:
        """
        The open connection.

        Raises:
            RuntimeError: If connect() hasn't been called.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    @property
    def lock_dir(self) -> Path:
        """Directory for the per-mailbox sync lock files of this database."""
        return self.db_path.parent / f"{self.db_path.stem}.locks"

    async def _pragma(self, setting: str) -> None:
        # PRAGMAs answer with a row; the cursor must be drained and closed or
        # the statement stays open and blocks the next COMMIT
        async with self.conn.execute(f"PRAGMA {setting}") as cursor:
            await cursor.fetchall()

    async def _schema_version(self) -> int:
        try:
            async with self.conn.execute("SELECT MAX(version) FROM schema_version") as cursor:
                row = await cursor.fetchone()
        except aiosqlite.OperationalError:
            # No schema_version table: brand new file
            return 0
        return row[0] if row and row[0] is not None else 0

    async def _migrate(self, version: int) -> None:
        """Bring a database at `version` up to SCHEMA_VERSION."""
        logger.info(f"Initializing cache schema v{SCHEMA_VERSION} at {self.db_path} (was v{version})")
        await self.conn.executescript(_SCHEMA)
