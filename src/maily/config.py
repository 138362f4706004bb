# =============================================================================
# Configuration Management
# =============================================================================
# Handles loading, saving, and validating maily configuration and the
# account store.
#
# XDG Base Directory Compliance (https://specifications.freedesktop.org/basedir-spec/):
#   - Config:  $XDG_CONFIG_HOME/maily/  (default: ~/.config/maily/)
#   - Data:    $XDG_DATA_HOME/maily/    (default: ~/.local/share/maily/)
#   - State:   $XDG_STATE_HOME/maily/   (default: ~/.local/state/maily/)
#
# Files:
#   - config.toml: Preferences (sync interval, mailboxes, logging)
#   - accounts.toml: Configured accounts, in order (no secrets!)
#   - maily.db: SQLite cache (in data directory)
#   - daemon.pid, maily.log: Daemon bookkeeping (in state directory)
#
# Secrets live in the system keyring, never in these files.
# =============================================================================

import logging
import os
import tomllib  # Built into Python 3.11+
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import keyring
import tomli_w
from keyring.errors import KeyringError, PasswordDeleteError

from maily.core import Account, Credentials, Provider

logger = logging.getLogger(__name__)


# =============================================================================
# XDG Directory Management
# =============================================================================

# Directory name under every XDG base
APP_NAME = "maily"


def _xdg_dir(env_var: str, *fallback: str) -> Path:
    """$env_var/maily when the variable is set and non-empty, else ~/<fallback>/maily."""
    root = os.environ.get(env_var)
    base = Path(root) if root else Path.home().joinpath(*fallback)
    return base / APP_NAME


def get_xdg_config_home() -> Path:
    """Where config.toml and accounts.toml live."""
    return _xdg_dir("XDG_CONFIG_HOME", ".config")


def get_xdg_data_home() -> Path:
    """Where the message cache lives."""
    return _xdg_dir("XDG_DATA_HOME", ".local", "share")


def get_xdg_state_home() -> Path:
    """Where the daemon keeps its PID file and log."""
    return _xdg_dir("XDG_STATE_HOME", ".local", "state")


def ensure_directories() -> dict[str, Path]:
    """
    Make sure the config, data and state directories exist (mode 0700).

    Returns:
        The directories, keyed "config", "data" and "state".
    """
    dirs = {
        "config": get_xdg_config_home(),
        "data": get_xdg_data_home(),
        "state": get_xdg_state_home(),
    }
    for path in dirs.values():
        path.mkdir(parents=True, exist_ok=True, mode=0o700)
    return dirs


# =============================================================================
# Configuration Data Structures
# =============================================================================

@dataclass
class SyncConfig:
    """
    Configuration for synchronization.

    Attributes:
        interval_minutes: How often the daemon runs a full sync.
        mailboxes: Mailboxes synced for accounts that don't list their own.
        concurrent_accounts: Sync accounts as concurrent tasks instead of
                             one after another. Passes over the same
                             mailbox are serialized either way.
        command_timeout_seconds: Per-read timeout for IMAP commands
                                 (0 = wait for the transport to give up).
        fetch_batch_size: UIDs per header fetch.
    """
    interval_minutes: int = 30
    mailboxes: list[str] = field(default_factory=lambda: ["INBOX"])
    concurrent_accounts: bool = False
    command_timeout_seconds: float = 0
    fetch_batch_size: int = 100

    @property
    def interval_seconds(self) -> float:
        return self.interval_minutes * 60.0

    @property
    def command_timeout(self) -> float | None:
        return self.command_timeout_seconds or None


@dataclass
class LoggingConfig:
    """
    Configuration for logging.

    Attributes:
        level: Level for the log file (the console only shows warnings
               unless --debug is given).
        file: Write the daemon log to the state directory.
    """
    level: str = "INFO"
    file: bool = True


@dataclass
class Config:
    """
    Main configuration container for maily.

    Usage:
        >>> config = Config.load()
        >>> config.sync.interval_minutes
        30
    """
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # -------------------------------------------------------------------------
    # File Paths
    # -------------------------------------------------------------------------

    @staticmethod
    def config_file_path() -> Path:
        """config.toml: preferences."""
        return get_xdg_config_home() / "config.toml"

    @staticmethod
    def accounts_file_path() -> Path:
        """accounts.toml: the ordered account list."""
        return get_xdg_config_home() / "accounts.toml"

    @staticmethod
    def database_path() -> Path:
        """maily.db: the local message cache."""
        return get_xdg_data_home() / "maily.db"

    @staticmethod
    def pid_file_path() -> Path:
        """daemon.pid: written while the daemon runs."""
        return get_xdg_state_home() / "daemon.pid"

    @staticmethod
    def log_file_path() -> Path:
        """maily.log: daemon log output."""
        return get_xdg_state_home() / "maily.log"

    # -------------------------------------------------------------------------
    # Loading and Saving
    # -------------------------------------------------------------------------

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """
        Read preferences from config.toml.

        A missing file means every setting keeps its default.

        Raises:
            ConfigError: If the file exists but cannot be parsed.
        """
        config_path = path or cls.config_file_path()

        if not config_path.exists():
            return cls()

        data = _read_toml(config_path)
        return cls._from_dict(data)

    def save(self, path: Path | None = None) -> None:
        """Write preferences as TOML, creating directories as needed."""
        ensure_directories()
        config_path = path or self.config_file_path()
        with open(config_path, "wb") as f:
            tomli_w.dump(self._to_dict(), f)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """Create a Config object from a parsed TOML dictionary."""
        config = cls()

        sync = data.get("sync", {})
        mailboxes = sync.get("mailboxes", ["INBOX"])
        if not isinstance(mailboxes, list) or not all(isinstance(m, str) for m in mailboxes):
            raise ConfigError("sync.mailboxes must be a list of mailbox names")
        interval = sync.get("interval_minutes", 30)
        if not _is_int(interval) or interval <= 0:
            raise ConfigError("sync.interval_minutes must be a positive integer")
        batch_size = sync.get("fetch_batch_size", 100)
        if not _is_int(batch_size) or batch_size <= 0:
            raise ConfigError("sync.fetch_batch_size must be a positive integer")
        timeout = sync.get("command_timeout_seconds", 0)
        if not (_is_int(timeout) or isinstance(timeout, float)) or timeout < 0:
            raise ConfigError("sync.command_timeout_seconds must be a number >= 0")

        config.sync = SyncConfig(
            interval_minutes=interval,
            mailboxes=mailboxes,
            concurrent_accounts=bool(sync.get("concurrent_accounts", False)),
            command_timeout_seconds=float(timeout),
            fetch_batch_size=batch_size,
        )

        log = data.get("logging", {})
        config.logging = LoggingConfig(
            level=str(log.get("level", "INFO")).upper(),
            file=bool(log.get("file", True)),
        )

        return config

    def _to_dict(self) -> dict[str, Any]:
        """Convert Config to a dictionary for TOML serialization."""
        return {
            "sync": {
                "interval_minutes": self.sync.interval_minutes,
                "mailboxes": list(self.sync.mailboxes),
                "concurrent_accounts": self.sync.concurrent_accounts,
                "command_timeout_seconds": self.sync.command_timeout_seconds,
                "fetch_batch_size": self.sync.fetch_batch_size,
            },
            "logging": {
                "level": self.logging.level,
                "file": self.logging.file,
            },
        }


# =============================================================================
# Account Store
# =============================================================================

class AccountStore:
    """
    Ordered list of configured accounts, persisted in accounts.toml.

    Format:
        [[accounts]]
        email = "me@gmail.com"
        provider = "gmail"
        mailboxes = ["INBOX", "[Gmail]/Sent Mail"]

    Usage:
        >>> store = AccountStore.load()
        >>> account = store.get("me@gmail.com")
        >>> store.remove("old@example.com")
        >>> store.save()
    """

    def __init__(self, accounts: list[Account] | None = None, path: Path | None = None) -> None:
        self.accounts: list[Account] = list(accounts or [])
        self.path = path or Config.accounts_file_path()

    @classmethod
    def load(cls, path: Path | None = None) -> "AccountStore":
        """
        Load the account store. A missing file is an empty store.

        Raises:
            ConfigError: If the file is invalid.
        """
        store_path = path or Config.accounts_file_path()
        if not store_path.exists():
            return cls(path=store_path)

        data = _read_toml(store_path)
        accounts = []
        for index, entry in enumerate(data.get("accounts", [])):
            try:
                accounts.append(
                    Account(
                        email=entry["email"],
                        provider=Provider(entry.get("provider", "imap")),
                        imap_host=entry.get("imap_host", ""),
                        imap_port=int(entry.get("imap_port", 993)),
                        mailboxes=list(entry.get("mailboxes", [])),
                        enabled=bool(entry.get("enabled", True)),
                    )
                )
            except (KeyError, ValueError, TypeError) as e:
                raise ConfigError(f"Invalid account #{index + 1} in {store_path}: {e}") from e
        return cls(accounts, path=store_path)

    def save(self) -> None:
        """Write the store back to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        data = {"accounts": [_account_to_dict(a) for a in self.accounts]}
        with open(self.path, "wb") as f:
            tomli_w.dump(data, f)

    def get(self, email: str) -> Account | None:
        """Find an account by email (case-insensitive)."""
        wanted = email.lower()
        for account in self.accounts:
            if account.email.lower() == wanted:
                return account
        return None

    def add(self, account: Account) -> None:
        """Add an account, replacing an existing one with the same email."""
        existing = self.get(account.email)
        if existing is not None:
            self.accounts[self.accounts.index(existing)] = account
        else:
            self.accounts.append(account)

    def remove(self, email: str) -> bool:
        """
        Remove an account by email.

        Returns:
            True if an account was removed.
        """
        account = self.get(email)
        if account is None:
            return False
        self.accounts.remove(account)
        return True

    def enabled(self) -> list[Account]:
        """Accounts that take part in sync, in configured order."""
        return [a for a in self.accounts if a.enabled]

    def __len__(self) -> int:
        return len(self.accounts)


def _account_to_dict(account: Account) -> dict[str, Any]:
    data: dict[str, Any] = {
        "email": account.email,
        "provider": account.provider.value,
        "imap_host": account.imap_host,
        "imap_port": account.imap_port,
        "enabled": account.enabled,
    }
    if account.mailboxes:
        data["mailboxes"] = list(account.mailboxes)
    return data


# =============================================================================
# Credentials (keyring)
# =============================================================================

def get_credentials(account: Account) -> Credentials:
    """
    Fetch an account's secret from the system keyring.

    Raises:
        CredentialsError: If no secret is stored or the keyring fails.
    """
    try:
        secret = keyring.get_password(account.keyring_service, account.email)
    except KeyringError as e:
        raise CredentialsError(f"Keyring lookup failed for {account.email}: {e}") from e

    if not secret:
        raise CredentialsError(
            f"No password found in keyring for {account.email}. "
            f"Run: maily login {account.provider.value} {account.email}"
        )
    return Credentials(email=account.email, secret=secret)


def store_credentials(account: Account, secret: str) -> None:
    """
    Save an account's secret in the system keyring.

    Raises:
        CredentialsError: If the keyring refuses it.
    """
    try:
        keyring.set_password(account.keyring_service, account.email, secret)
    except KeyringError as e:
        raise CredentialsError(f"Failed to store password for {account.email}: {e}") from e


def delete_credentials(account: Account) -> None:
    """
    Remove an account's secret from the keyring (missing is fine).

    Raises:
        CredentialsError: If the keyring backend fails.
    """
    try:
        keyring.delete_password(account.keyring_service, account.email)
    except PasswordDeleteError:
        logger.debug(f"No keyring entry to delete for {account.email}")
    except KeyringError as e:
        raise CredentialsError(f"Failed to delete password for {account.email}: {e}") from e


# =============================================================================
# Helpers
# =============================================================================

def _read_toml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e


def _is_int(value: Any) -> bool:
    # TOML booleans arrive as bool, which is an int subclass
    return isinstance(value, int) and not isinstance(value, bool)


# =============================================================================
# Exceptions
# =============================================================================

class ConfigError(Exception):
    """A config or account file is missing required data or is not valid TOML."""
    pass


class CredentialsError(Exception):
    """Raised when an account's secret can't be obtained."""
    pass


# =============================================================================
# Diagnostics
# =============================================================================

def print_paths() -> None:
    """Show where maily keeps its files (`maily --paths`)."""
    print(f"Config:  {get_xdg_config_home()}")
    print(f"Data:    {get_xdg_data_home()}")
    print(f"State:   {get_xdg_state_home()}")
    print()
    print(f"Config file:   {Config.config_file_path()}")
    print(f"Accounts file: {Config.accounts_file_path()}")
    print(f"Database:      {Config.database_path()}")
    print(f"PID file:      {Config.pid_file_path()}")
    print(f"Log file:      {Config.log_file_path()}")
