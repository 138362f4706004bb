# =============================================================================
# Daemon Loop
# =============================================================================
# Keeps the local cache fresh in the background.
#
# Lifecycle:
#   - One sync tick right after start
#   - Then wait for whichever comes first: the interval timer, an on-demand
#     request_sync(), or a shutdown request (SIGINT/SIGTERM)
#   - Shutdown is only honored between ticks; a running tick finishes first
#
# Process supervision (`maily daemon start|stop|status`) goes through a PID
# file in the XDG state directory. `stop` sends SIGTERM, which the loop turns
# into a graceful shutdown.
# =============================================================================

import asyncio
import logging
import os
import signal
import subprocess
import sys
from pathlib import Path
from typing import Callable, Iterable

from maily.config import (
    AccountStore,
    Config,
    ConfigError,
    ensure_directories,
    get_credentials,
)
from maily.core import Account
from maily.imap.session import SessionOptions
from maily.imap.sync import SyncEngine, SyncResult
from maily.storage import Database, LocalCache

logger = logging.getLogger(__name__)

# Type for the account source; called once per tick so edits to the
# account store are picked up without a restart
AccountSource = Callable[[], Iterable[Account]]


class DaemonLoop:
    """
    Periodic full sync of every enabled account.

    Usage:
        >>> loop = DaemonLoop(engine, store.enabled, interval=1800)
        >>> loop.install_signal_handlers()
        >>> await loop.run()        # returns after SIGTERM / request_shutdown()

    Attributes:
        engine: Sync engine running the passes.
        interval: Seconds between the end of one tick and the next.
        concurrent: Sync accounts concurrently within a tick.
        ticks: Number of completed ticks.
        last_results: Results of the most recent tick.
    """

    def __init__(
        self,
        engine: SyncEngine,
        accounts: AccountSource,
        interval: float,
        *,
        concurrent: bool = False,
    ) -> None:
        self.engine = engine
        self.accounts = accounts
        self.interval = interval
        self.concurrent = concurrent
        self.ticks = 0
        self.last_results: list[SyncResult] = []
        self._shutdown = asyncio.Event()
        self._wakeup = asyncio.Event()
        self._running = False
        self._signals: list[signal.Signals] = []

    @property
    def is_running(self) -> bool:
        """Check if the loop is currently running."""
        return self._running

    def request_sync(self) -> None:
        """Run the next tick now instead of waiting for the timer."""
        self._wakeup.set()

    def request_shutdown(self) -> None:
        """Stop after the current tick (or right away if idle)."""
        if not self._shutdown.is_set():
            logger.info("Shutdown requested")
        self._shutdown.set()

    def install_signal_handlers(self) -> None:
        """Turn SIGINT/SIGTERM into a graceful shutdown."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except (NotImplementedError, RuntimeError) as e:
                # No signal support (e.g. Windows event loop or non-main thread)
                logger.debug(f"Cannot handle {sig.name}: {e}")
                continue
            self._signals.append(sig)

    def remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._signals:
            loop.remove_signal_handler(sig)
        self._signals.clear()

    async def run(self) -> None:
        """
        Run ticks until shutdown is requested.

        A shutdown requested before run() is called still lets the
        initial tick run, then returns.
        """
        if self._running:
            logger.warning("Daemon loop already running")
            return

        self._running = True
        logger.info(f"Daemon loop started (interval {self.interval:.0f}s)")
        try:
            await self.tick()
            while not self._shutdown.is_set():
                await self._wait_for_next_tick()
                if self._shutdown.is_set():
                    break
                await self.tick()
        finally:
            self._running = False
            logger.info(f"Daemon loop stopped after {self.ticks} ticks")

    async def tick(self) -> list[SyncResult]:
        """Run one sync pass over every enabled account."""
        accounts = [a for a in self.accounts() if a.enabled]
        if not accounts:
            logger.warning("No enabled accounts to sync")

        results = await self.engine.sync_accounts(accounts, concurrent=self.concurrent)

        self.ticks += 1
        self.last_results = results
        failed = [r for r in results if not r.success]
        for result in results:
            if result.success:
                logger.info(f"Tick {self.ticks}: {result}")
            else:
                logger.warning(f"Tick {self.ticks}: {result}")
        logger.info(
            f"Tick {self.ticks} done: {len(results) - len(failed)}/{len(results)} "
            f"mailboxes synced"
        )
        return results

    async def _wait_for_next_tick(self) -> None:
        """Sleep until the interval elapses, a sync is requested, or shutdown."""
        waiters = [
            asyncio.create_task(self._shutdown.wait(), name="daemon-shutdown"),
            asyncio.create_task(self._wakeup.wait(), name="daemon-wakeup"),
        ]
        try:
            await asyncio.wait(
                waiters,
                timeout=self.interval,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for waiter in waiters:
                waiter.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)

        if self._wakeup.is_set():
            logger.debug("On-demand sync requested")
        self._wakeup.clear()


# =============================================================================
# Running the Daemon
# =============================================================================

async def run_daemon(config: Config, accounts_path: Path | None = None) -> int:
    """
    Run the daemon in the current process until SIGINT/SIGTERM.

    Writes the PID file on start and removes it on exit, unless another
    daemon has written its own PID there in the meantime.

    Returns:
        Exit code (1 if no accounts are configured).
    """
    ensure_directories()

    def load_accounts() -> list[Account]:
        # Re-read every tick; a broken edit keeps the last good list
        nonlocal accounts
        try:
            accounts = AccountStore.load(accounts_path).enabled()
        except (ConfigError, OSError) as e:
            logger.error(f"Failed to reload accounts, keeping previous list: {e}")
        return accounts

    accounts = AccountStore.load(accounts_path).enabled()
    if not accounts:
        logger.error("No accounts configured")
        return 1

    pid_file = Config.pid_file_path()
    write_pid_file(pid_file)
    try:
        async with Database() as db:
            engine = SyncEngine(
                LocalCache(db),
                get_credentials,
                options=SessionOptions(
                    timeout=config.sync.command_timeout,
                    fetch_batch_size=config.sync.fetch_batch_size,
                ),
                default_mailboxes=config.sync.mailboxes,
            )
            loop = DaemonLoop(
                engine,
                load_accounts,
                config.sync.interval_seconds,
                concurrent=config.sync.concurrent_accounts,
            )
            loop.install_signal_handlers()
            try:
                await loop.run()
            finally:
                loop.remove_signal_handlers()
    finally:
        remove_pid_file(pid_file, owner=os.getpid())
    return 0


# =============================================================================
# PID File / Process Supervision
# =============================================================================

def write_pid_file(path: Path, pid: int | None = None) -> None:
    """Record a daemon PID (defaults to this process)."""
    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    path.write_text(str(pid if pid is not None else os.getpid()))
    path.chmod(0o600)


def remove_pid_file(path: Path, owner: int | None = None) -> None:
    """
    Delete the PID file.

    With `owner`, only delete it while it still names that PID; a daemon
    started after this one was stopped keeps its file.
    """
    if owner is not None and read_pid(path) != owner:
        return
    path.unlink(missing_ok=True)


def read_pid(path: Path) -> int | None:
    """PID recorded in the file, or None if missing/invalid."""
    try:
        pid = int(path.read_text().strip())
    except (OSError, ValueError):
        return None
    return pid if pid > 0 else None


def is_process_running(pid: int) -> bool:
    """Signal 0 probes a process without touching it."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, but belongs to someone else
        return True
    return True


def daemon_status(path: Path) -> int | None:
    """
    PID of the running daemon, or None.

    A PID file pointing at a dead process is removed.
    """
    pid = read_pid(path)
    if pid is None:
        return None
    if not is_process_running(pid):
        logger.debug(f"Removing stale PID file {path} (pid {pid})")
        remove_pid_file(path)
        return None
    return pid


def start_background(path: Path) -> int:
    """
    Start `maily daemon start --foreground` detached from this terminal.

    Returns:
        PID of the daemon (the existing one if it's already running).
    """
    existing = daemon_status(path)
    if existing is not None:
        return existing

    process = subprocess.Popen(
        [sys.executable, "-m", "maily", "daemon", "start", "--foreground"],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
    # The child rewrites this itself; writing it here closes the gap
    write_pid_file(path, process.pid)
    logger.info(f"Daemon started (pid {process.pid})")
    return process.pid


def stop_daemon(path: Path) -> int | None:
    """
    Ask the running daemon to shut down.

    Returns:
        PID that was signalled, or None if no daemon was running.
    """
    pid = daemon_status(path)
    if pid is None:
        return None
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        remove_pid_file(path)
        return None
    remove_pid_file(path)
    logger.info(f"Sent SIGTERM to daemon (pid {pid})")
    return pid
