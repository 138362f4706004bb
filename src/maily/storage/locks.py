# =============================================================================
# Mailbox Sync Locks
# =============================================================================
# One reconciliation pass per (account, mailbox) at a time, across every
# process using the same cache file.
#
# The daemon and a one-shot `maily sync` are separate processes, so an
# asyncio.Lock alone can't keep their passes apart. Each pass also holds an
# exclusive flock() on a small lock file next to the database:
#   - <data>/maily.locks/<hash>.lock, one file per (account, mailbox)
#   - the kernel drops the lock when the holder exits, even on a crash
#   - waiting polls with LOCK_NB so the event loop keeps running
# =============================================================================

import asyncio
import fcntl
import hashlib
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

# Seconds between attempts while another process holds the lock
POLL_INTERVAL = 0.05


def lock_file_name(account: str, mailbox: str) -> str:
    """Stable file name for a key; mailbox names may contain '/'."""
    digest = hashlib.sha1(f"{account.lower()}\0{mailbox}".encode("utf-8")).hexdigest()
    return f"{digest[:20]}.lock"


class MailboxLock:
    """
    Exclusive hold on one (account, mailbox) for the length of a sync pass.

    Usage:
        >>> async with MailboxLock(lock_dir, "me@example.com", "INBOX", local):
        ...     ...  # enumerate, diff, apply

    Args:
        lock_dir: Directory holding the lock files.
        account: Account email.
        mailbox: Mailbox name.
        local: In-process lock for the same key, taken first.
    """

    def __init__(
        self,
        lock_dir: Path,
        account: str,
        mailbox: str,
        local: asyncio.Lock,
        *,
        poll_interval: float = POLL_INTERVAL,
    ) -> None:
        self.path = lock_dir / lock_file_name(account, mailbox)
        self.label = f"{account}/{mailbox}"
        self.poll_interval = poll_interval
        self._local = local
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    async def __aenter__(self) -> "MailboxLock":
        await self._local.acquire()
        try:
            self._fd = await self._lock_file()
        except BaseException:
            self._local.release()
            raise
        return self

    async def __aexit__(self, *exc_info) -> None:
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
            os.close(self._fd)
        finally:
            self._fd = None
            self._local.release()

    async def _lock_file(self) -> int:
        self.path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        waiting = False
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    return fd
                except BlockingIOError:
                    if not waiting:
                        logger.info(f"Waiting for another sync of {self.label} to finish")
                        waiting = True
                    await asyncio.sleep(self.poll_interval)
        except BaseException:
            os.close(fd)
            raise
