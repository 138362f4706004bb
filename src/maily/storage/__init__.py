# =============================================================================
# Storage Module
# =============================================================================
# Persistent local cache backed by SQLite.
#
# Provides:
#   - Database initialization (WAL mode, schema)
#   - LocalCache: get/apply for (account, mailbox) scoped message records
#   - MailboxLock: per-mailbox sync lock shared between processes
#   - Async operations via aiosqlite
#
# The database lives in the XDG data directory (~/.local/share/maily/) so
# the daemon and one-shot `maily sync` runs share the same state.
# =============================================================================

from maily.storage.database import Database
from maily.storage.locks import MailboxLock
from maily.storage.repository import CacheError, LocalCache

__all__ = ["Database", "LocalCache", "MailboxLock", "CacheError"]
