# =============================================================================
# maily Command Line
# =============================================================================
# Entry point for the `maily` command.
#
# Commands:
#   - sync:     One-shot full sync of all (or one) account(s)
#   - search:   Server-side search, matched against the local cache
#   - accounts: List configured accounts and what's cached for them
#   - login:    Add an account and store its password in the keyring
#   - logout:   Remove an account, its password and its cached mail
#   - daemon:   start / stop / status of the background sync loop
#
# Exit codes: 0 unless the configuration itself is unusable (no accounts,
# unknown account, unparseable config). One account failing to sync is
# reported, not fatal.
# =============================================================================

import argparse
import asyncio
import getpass
import logging
import sys
from pathlib import Path

from maily import __app_name__, __version__
from maily.config import (
    AccountStore,
    Config,
    ConfigError,
    CredentialsError,
    delete_credentials,
    ensure_directories,
    get_credentials,
    print_paths,
    store_credentials,
)
from maily.core import Account, Provider
from maily.daemon import daemon_status, run_daemon, start_background, stop_daemon
from maily.imap.search import SearchResolver
from maily.imap.session import IMAPError, SessionOptions
from maily.imap.sync import SyncEngine, SyncResult
from maily.storage import CacheError, Database, LocalCache

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


# =============================================================================
# Logging
# =============================================================================

def setup_logging(
    debug: bool = False,
    log_file: Path | None = None,
    file_level: str = "INFO",
) -> None:
    """
    Configure the root logger.

    The console only shows warnings (everything with --debug); the log
    file, if any, records at `file_level`.
    """
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG)

    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG if debug else logging.WARNING)
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(console)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        handler = logging.FileHandler(log_file)
        handler.setLevel(logging.DEBUG if debug else getattr(logging, file_level, logging.INFO))
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)


# =============================================================================
# Helpers
# =============================================================================

def _session_options(config: Config) -> SessionOptions:
    return SessionOptions(
        timeout=config.sync.command_timeout,
        fetch_batch_size=config.sync.fetch_batch_size,
    )


def _select_accounts(store: AccountStore, email: str | None) -> list[Account]:
    """
    Accounts a command applies to.

    Raises:
        ConfigError: If there are none, or `email` isn't configured.
    """
    if not len(store):
        raise ConfigError(f"No accounts configured. Run '{__app_name__} login' first.")
    if email is None:
        return store.enabled()
    account = store.get(email)
    if account is None:
        raise ConfigError(f"Unknown account: {email}")
    return [account]


def _print_result(result: SyncResult) -> None:
    if result.success:
        print(f"  {result}")
    else:
        hint = " (will retry)" if result.retryable else ""
        print(f"  {result}{hint}")


# =============================================================================
# Commands
# =============================================================================

async def cmd_sync(args: argparse.Namespace, config: Config, store: AccountStore) -> int:
    """Full sync of every enabled account (or just --account)."""
    accounts = _select_accounts(store, args.account)

    async with Database() as db:
        engine = SyncEngine(
            LocalCache(db),
            get_credentials,
            options=_session_options(config),
            default_mailboxes=config.sync.mailboxes,
        )

        print("Syncing emails...")
        if args.mailbox:
            results = [await engine.full_sync(account, args.mailbox) for account in accounts]
        else:
            results = await engine.sync_accounts(
                accounts, concurrent=config.sync.concurrent_accounts
            )

    for result in results:
        _print_result(result)
    failed = sum(1 for r in results if not r.success)
    print(f"Sync complete ({len(results) - failed}/{len(results)} mailboxes)")
    return 0


async def cmd_search(args: argparse.Namespace, config: Config, store: AccountStore) -> int:
    """Search one mailbox on the server and show what's cached for the hits."""
    accounts = _select_accounts(store, args.account)
    if not accounts:
        raise ConfigError("No enabled accounts")
    account = accounts[0]

    resolver = SearchResolver(_session_options(config))
    try:
        credentials = get_credentials(account)
        async with Database() as db:
            result = await resolver.search_with_cache(
                account, credentials, args.mailbox, args.query, LocalCache(db)
            )
    except (IMAPError, CredentialsError, CacheError) as e:
        print(f"Search failed: {e}", file=sys.stderr)
        return 1

    print(
        f"{len(result.uids)} matches in {account.email}/{args.mailbox} "
        f"({result.search_type.name})"
    )
    for entry in result.cached:
        print(f"  {entry}")
    if result.uncached:
        print(f"  {len(result.uncached)} not cached yet; run '{__app_name__} sync'")
    return 0


async def cmd_accounts(args: argparse.Namespace, config: Config, store: AccountStore) -> int:
    """List configured accounts with cached message counts."""
    if not len(store):
        print(f"No accounts configured. Run '{__app_name__} login' first.")
        return 0

    async with Database() as db:
        cache = LocalCache(db)
        for account in store.accounts:
            host, port = account.endpoint
            state = "" if account.enabled else " (disabled)"
            print(f"{account.email} [{account.provider.value}] {host}:{port}{state}")
            for mailbox in await cache.list_mailboxes(account.email):
                count = await cache.count(account.email, mailbox.mailbox)
                synced = mailbox.last_sync.strftime("%Y-%m-%d %H:%M") if mailbox.last_sync else "never"
                print(f"  {mailbox.mailbox}: {count} messages, last sync {synced}")
    return 0


async def cmd_login(args: argparse.Namespace, config: Config, store: AccountStore) -> int:
    """Add (or update) an account and store its password."""
    provider = Provider(args.provider)
    if provider is Provider.IMAP and not args.host:
        raise ConfigError("--host is required for generic IMAP accounts")

    account = Account(
        email=args.email,
        provider=provider,
        imap_host=args.host or "",
        imap_port=args.port or 993,
    )

    secret = getpass.getpass(f"Password for {account.email}: ")
    if not secret:
        print("No password given, nothing saved", file=sys.stderr)
        return 1

    try:
        store_credentials(account, secret)
    except CredentialsError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    store.add(account)
    store.save()
    print(f"Added {account.email}")
    return 0


async def cmd_logout(args: argparse.Namespace, config: Config, store: AccountStore) -> int:
    """Remove an account (or all of them) with its password and cache."""
    accounts = _select_accounts(store, args.email)
    if args.email is None:
        accounts = list(store.accounts)

    async with Database() as db:
        cache = LocalCache(db)
        try:
            for account in accounts:
                removed = await cache.forget_account(account.email)
                delete_credentials(account)
                store.remove(account.email)
                print(f"Removed {account.email} ({removed} cached messages)")
        except (CacheError, CredentialsError) as e:
            print(f"Logout failed: {e}", file=sys.stderr)
            return 1
        finally:
            # Accounts removed before a failure stay removed
            store.save()
    return 0


def cmd_daemon(args: argparse.Namespace, config: Config) -> int:
    """start / stop / status of the background daemon."""
    pid_file = Config.pid_file_path()

    if args.action == "start":
        if args.foreground:
            log_file = Config.log_file_path() if config.logging.file else None
            setup_logging(args.debug, log_file, config.logging.level)
            return asyncio.run(run_daemon(config))
        pid = daemon_status(pid_file)
        if pid is not None:
            print(f"Daemon is already running (PID: {pid})")
            return 0
        pid = start_background(pid_file)
        print(f"Daemon started (PID: {pid})")
        return 0

    if args.action == "stop":
        pid = stop_daemon(pid_file)
        print("Daemon stopped" if pid is not None else "Daemon is not running")
        return 0

    pid = daemon_status(pid_file)
    if pid is None:
        print("Daemon is not running")
    else:
        print(f"Daemon is running (PID: {pid})")
    return 0


_ASYNC_COMMANDS = {
    "sync": cmd_sync,
    "search": cmd_search,
    "accounts": cmd_accounts,
    "login": cmd_login,
    "logout": cmd_logout,
}


# =============================================================================
# CLI Entry Point
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog=__app_name__,
        description="maily: keep a local mirror of your IMAP mailboxes",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--paths",
        action="store_true",
        help="Print configuration paths and exit",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode (verbose logging)",
    )

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")

    sync = commands.add_parser("sync", help="Sync emails from the server")
    sync.add_argument("-a", "--account", help="Only sync this account")
    sync.add_argument("-m", "--mailbox", help="Only sync this mailbox")

    search = commands.add_parser("search", help="Search emails on the server")
    search.add_argument("-q", "--query", required=True, help="Search query")
    search.add_argument("-a", "--account", help="Account to search (default: first)")
    search.add_argument("-m", "--mailbox", default="INBOX", help="Mailbox to search")

    commands.add_parser("accounts", help="List configured accounts")

    login = commands.add_parser("login", help="Add an account")
    login.add_argument("provider", choices=[p.value for p in Provider])
    login.add_argument("email")
    login.add_argument("--host", help="IMAP host (required for 'imap')")
    login.add_argument("--port", type=int, help="IMAP port (default: 993)")

    logout = commands.add_parser("logout", help="Remove an account (default: all)")
    logout.add_argument("email", nargs="?")

    daemon = commands.add_parser("daemon", help="Manage the background sync daemon")
    daemon.add_argument("action", choices=["start", "stop", "status"])
    daemon.add_argument(
        "-f", "--foreground",
        action="store_true",
        help="Run in the foreground (for debugging)",
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for maily.

    This function:
        1. Parses command-line arguments
        2. Handles special commands (--paths, --version)
        3. Loads configuration and the account store
        4. Dispatches the subcommand

    Returns:
        Exit code (0 for success, non-zero for configuration errors).
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    # Handle --paths flag
    if args.paths:
        print_paths()
        return 0

    if args.command is None:
        parser.print_help()
        return 0

    try:
        config = Config.load()
        if args.command == "daemon":
            return cmd_daemon(args, config)

        setup_logging(args.debug)
        ensure_directories()
        store = AccountStore.load()
        return asyncio.run(_ASYNC_COMMANDS[args.command](args, config, store))
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
