# =============================================================================
# Local Cache - Data Access Layer
# =============================================================================
# The account-scoped, mailbox-scoped mirror of server state.
#
# This is the only state shared between concurrent callers (the daemon and
# a one-shot `maily sync`), so the rules are strict:
#   - apply() is the only mutation path for messages, and it commits a whole
#     reconciliation pass in one transaction or nothing at all
#   - readers of a key never see half of a pass: in-process they wait on the
#     key's lock, across processes SQLite's WAL snapshot does the job
#   - at most one apply() per (account, mailbox) runs at a time, and
#     reconciliation_lock() keeps whole passes apart across processes
#
# All methods are async for non-blocking database access.
# =============================================================================

import asyncio
import json
import logging
from collections import defaultdict
from datetime import datetime
from typing import TYPE_CHECKING, Iterable

import aiosqlite

from maily.core import CacheEntry, MailboxState, MessageFlags
from maily.storage.locks import MailboxLock

if TYPE_CHECKING:
    from maily.storage.database import Database

logger = logging.getLogger(__name__)

# Max host parameters per statement (SQLite's historical default is 999)
_CHUNK = 500

_ENTRY_COLUMNS = (
    "account, mailbox, uid, flags, keywords, modseq, "
    "subject, sender, date_sent, message_id, size"
)


class LocalCache:
    """
    Persistent mirror of mailbox state.

    Usage:
        >>> cache = LocalCache(database)
        >>> entries = await cache.get("me@example.com", "INBOX")
        >>> await cache.apply("me@example.com", "INBOX", additions, updates, removals)

    Attributes:
        db: Connected Database instance.
    """

    def __init__(self, db: "Database") -> None:
        """
        Initialize the cache.

        Args:
            db: Connected Database instance.
        """
        self.db = db
        # Guards readers/writers of one (account, mailbox) key
        self._key_locks: dict[tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)
        # Held by the sync engine for a whole reconciliation pass
        self._sync_locks: dict[tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)
        # One open transaction per connection at a time
        self._write_lock = asyncio.Lock()

    def reconciliation_lock(self, account: str, mailbox: str) -> MailboxLock:
        """
        Lock serializing reconciliation passes of one mailbox.

        The sync engine holds it from login to commit. It is taken in this
        process first, then on a lock file shared with every other process
        using the same database, so a daemon tick and a manual sync never
        run interleaved passes over the same mailbox.
        """
        return MailboxLock(
            self.db.lock_dir,
            account,
            mailbox,
            self._sync_locks[(account, mailbox)],
        )

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, account: str, mailbox: str) -> list[CacheEntry]:
        """
        Get every cached entry for a mailbox, ordered by UID.

        Returns either the state before or after any concurrent apply()
        for the same key, never a mix.
        """
        async with self._key_locks[(account, mailbox)]:
            async with self.db.conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM messages "
                "WHERE account = ? AND mailbox = ? ORDER BY uid",
                (account, mailbox),
            ) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_entry(row) for row in rows]

    async def get_entries(
        self,
        account: str,
        mailbox: str,
        uids: Iterable[int],
    ) -> list[CacheEntry]:
        """
        Get cached entries for specific UIDs, in the order the UIDs were given.

        UIDs we don't have are skipped.
        """
        wanted = list(uids)
        found: dict[int, CacheEntry] = {}
        async with self._key_locks[(account, mailbox)]:
            for chunk in _chunks(wanted, _CHUNK):
                placeholders = ",".join("?" * len(chunk))
                async with self.db.conn.execute(
                    f"SELECT {_ENTRY_COLUMNS} FROM messages "
                    f"WHERE account = ? AND mailbox = ? AND uid IN ({placeholders})",
                    (account, mailbox, *chunk),
                ) as cursor:
                    for row in await cursor.fetchall():
                        entry = self._row_to_entry(row)
                        found[entry.uid] = entry
        return [found[uid] for uid in wanted if uid in found]

    async def count(self, account: str, mailbox: str | None = None) -> int:
        """Number of cached messages for an account (optionally one mailbox)."""
        if mailbox is None:
            query, params = "SELECT COUNT(*) FROM messages WHERE account = ?", (account,)
        else:
            query = "SELECT COUNT(*) FROM messages WHERE account = ? AND mailbox = ?"
            params = (account, mailbox)
        async with self.db.conn.execute(query, params) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def get_mailbox_state(self, account: str, mailbox: str) -> MailboxState | None:
        """Sync bookkeeping for a mailbox, or None if it was never synced."""
        async with self.db.conn.execute(
            "SELECT account, name, uidvalidity, last_sync FROM mailboxes "
            "WHERE account = ? AND name = ?",
            (account, mailbox),
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_state(row) if row else None

    async def list_mailboxes(self, account: str | None = None) -> list[MailboxState]:
        """Every synced mailbox, optionally limited to one account."""
        query = "SELECT account, name, uidvalidity, last_sync FROM mailboxes"
        params: tuple = ()
        if account is not None:
            query += " WHERE account = ?"
            params = (account,)
        async with self.db.conn.execute(query + " ORDER BY account, name", params) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_state(row) for row in rows]

    # =========================================================================
    # Writes
    # =========================================================================

    async def apply(
        self,
        account: str,
        mailbox: str,
        additions: Iterable[CacheEntry] = (),
        updates: Iterable[CacheEntry] = (),
        removals: Iterable[int] = (),
        *,
        uidvalidity: int | None = None,
    ) -> None:
        """
        Commit one reconciliation pass for a mailbox.

        Everything happens in a single transaction: either all additions,
        updates, removals and the new mailbox state are visible afterwards,
        or none of them are.

        Args:
            account: Account email.
            mailbox: Mailbox name.
            additions: New entries (replacing any row with the same key).
            updates: Entries whose flags/revision changed. Header content
                     already in the cache is kept.
            removals: UIDs no longer on the server.
            uidvalidity: UIDVALIDITY the pass ran under.

        Raises:
            CacheError: If the database rejects the change. Nothing is
                        committed in that case.
        """
        additions = list(additions)
        updates = list(updates)
        removals = list(removals)

        async with self._key_locks[(account, mailbox)], self._write_lock:
            conn = self.db.conn
            try:
                await conn.execute("BEGIN IMMEDIATE")
                for chunk in _chunks(removals, _CHUNK):
                    placeholders = ",".join("?" * len(chunk))
                    await conn.execute(
                        f"DELETE FROM messages WHERE account = ? AND mailbox = ? "
                        f"AND uid IN ({placeholders})",
                        (account, mailbox, *chunk),
                    )
                if additions:
                    await conn.executemany(
                        f"INSERT OR REPLACE INTO messages ({_ENTRY_COLUMNS}) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        [self._entry_to_row(account, mailbox, e) for e in additions],
                    )
                if updates:
                    await conn.executemany(
                        "UPDATE messages SET flags = ?, keywords = ?, "
                        "modseq = COALESCE(?, modseq) "
                        "WHERE account = ? AND mailbox = ? AND uid = ?",
                        [
                            (int(e.flags), json.dumps(list(e.keywords)), e.modseq,
                             account, mailbox, e.uid)
                            for e in updates
                        ],
                    )
                await conn.execute(
                    "INSERT INTO mailboxes (account, name, uidvalidity, last_sync) "
                    "VALUES (?, ?, ?, ?) "
                    "ON CONFLICT(account, name) DO UPDATE SET "
                    "uidvalidity = COALESCE(excluded.uidvalidity, uidvalidity), "
                    "last_sync = excluded.last_sync",
                    (account, mailbox, uidvalidity, datetime.now().isoformat()),
                )
                await conn.execute("COMMIT")
            except (aiosqlite.Error, ValueError) as e:
                await self._rollback()
                raise CacheError(
                    f"Failed to apply changes to {account}/{mailbox}: {e}"
                ) from e

        logger.debug(
            f"Applied {account}/{mailbox}: +{len(additions)} "
            f"~{len(updates)} -{len(removals)}"
        )

    async def forget_account(self, account: str) -> int:
        """
        Drop everything cached for an account.

        Returns:
            Number of messages removed.

        Raises:
            CacheError: If the database rejects the change.
        """
        async with self._write_lock:
            conn = self.db.conn
            try:
                await conn.execute("BEGIN IMMEDIATE")
                cursor = await conn.execute(
                    "DELETE FROM messages WHERE account = ?", (account,)
                )
                removed = cursor.rowcount
                await conn.execute("DELETE FROM mailboxes WHERE account = ?", (account,))
                await conn.execute("COMMIT")
            except aiosqlite.Error as e:
                await self._rollback()
                raise CacheError(f"Failed to forget {account}: {e}") from e
        logger.info(f"Removed {removed} cached messages for {account}")
        return removed

    async def _rollback(self) -> None:
        try:
            await self.db.conn.execute("ROLLBACK")
        except aiosqlite.Error as e:
            # Nothing to roll back if BEGIN itself failed
            logger.debug(f"Rollback skipped: {e}")

    # =========================================================================
    # Row Conversion
    # =========================================================================

    def _entry_to_row(self, account: str, mailbox: str, entry: CacheEntry) -> tuple:
        return (
            account,
            mailbox,
            entry.uid,
            int(entry.flags),
            json.dumps(list(entry.keywords)),
            entry.modseq,
            entry.subject,
            entry.sender,
            entry.date.isoformat() if entry.date else None,
            entry.message_id,
            entry.size,
        )

    def _row_to_entry(self, row) -> CacheEntry:
        """Convert a database row to a CacheEntry."""
        return CacheEntry(
            account=row[0],
            mailbox=row[1],
            uid=row[2],
            flags=MessageFlags(row[3]),
            keywords=tuple(json.loads(row[4])) if row[4] else (),
            modseq=row[5],
            subject=row[6] or "",
            sender=row[7] or "",
            date=datetime.fromisoformat(row[8]) if row[8] else None,
            message_id=row[9] or "",
            size=row[10] or 0,
        )

    def _row_to_state(self, row) -> MailboxState:
        return MailboxState(
            account=row[0],
            mailbox=row[1],
            uidvalidity=row[2],
            last_sync=datetime.fromisoformat(row[3]) if row[3] else None,
        )


def _chunks(items: list, size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


# =============================================================================
# Exceptions
# =============================================================================

class CacheError(Exception):
    """Raised when the local cache can't persist a change."""
    pass
