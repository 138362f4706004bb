# =============================================================================
# Sync Engine
# =============================================================================
# Reconciles one account's mailboxes against the local cache.
#
# Sync strategy (every pass is a full reconciliation):
#   1. Open a session, log in, select the mailbox
#   2. Enumerate every UID on the server with its flags (and MODSEQ)
#   3. Diff against the cache: additions, removals, updates
#   4. Fetch headers for the additions only
#   5. Commit additions/updates/removals to the cache in one transaction
#   6. Log out, whatever happened
#
# Key concepts:
#   - UIDVALIDITY: If this changes, every cached UID is meaningless and the
#     whole mailbox is replaced
#   - Failures are values: full_sync() returns a SyncResult describing what
#     went wrong instead of raising, so one broken account never stops the
#     others
#
# Re-transferring all metadata each pass is the price for being correct
# whatever other clients did to the mailbox in between.
# =============================================================================

import asyncio
import email
import email.errors
import email.header
import email.utils
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Callable, Iterable

from maily.config import CredentialsError
from maily.core import Account, CacheEntry, Credentials, normalize_mailbox, parse_flags
from maily.imap.protocol import FetchItem
from maily.imap.session import (
    AuthError,
    CommandFailed,
    ConnectError,
    IMAPError,
    MailboxError,
    SessionOptions,
    TransportError,
    open_session,
)
from maily.storage.repository import CacheError, LocalCache


logger = logging.getLogger(__name__)


class SyncStatus(Enum):
    """Outcome of a reconciliation pass."""
    COMPLETE = auto()       # Cache now mirrors the server
    ERROR = auto()          # Pass failed, cache untouched


class ErrorKind(Enum):
    """What kind of failure ended a pass."""
    AUTH = "auth"               # Login rejected / no credentials
    MAILBOX = "mailbox"         # SELECT rejected (e.g. mailbox doesn't exist)
    TRANSPORT = "transport"     # Dial, greeting, dropped connection, timeout
    PROTOCOL = "protocol"       # Some other command answered NO/BAD
    CACHE = "cache"             # Local persistence failed
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        """Transport hiccups may go away by themselves, the rest won't."""
        return self is ErrorKind.TRANSPORT


@dataclass
class SyncResult:
    """
    Result of reconciling one (account, mailbox).

    Attributes:
        account: Account email.
        mailbox: Mailbox name.
        status: COMPLETE or ERROR.
        added: Entries new on the server.
        removed: Entries gone from the server.
        updated: Entries whose flags/revision changed.
        unchanged: Entries identical on both sides.
        error: The exception that ended the pass, if any.
        error_kind: Classification of that exception.
        duration_seconds: Time taken.
    """
    account: str
    mailbox: str
    status: SyncStatus = SyncStatus.COMPLETE
    added: int = 0
    removed: int = 0
    updated: int = 0
    unchanged: int = 0
    error: Exception | None = None
    error_kind: ErrorKind | None = None
    uidvalidity_reset: bool = False
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status is SyncStatus.COMPLETE

    @property
    def retryable(self) -> bool:
        return self.error_kind is not None and self.error_kind.retryable

    @property
    def changed(self) -> int:
        return self.added + self.removed + self.updated

    def __str__(self) -> str:
        if self.success:
            return (
                f"{self.account}/{self.mailbox}: {self.added} new, "
                f"{self.updated} updated, {self.removed} removed"
            )
        return f"{self.account}/{self.mailbox}: {self.error_kind.value} error: {self.error}"


@dataclass
class SyncDiff:
    """
    What a pass has to change in the cache.

    Attributes:
        additions: Remote entries missing locally (headers not yet fetched).
        updates: Local entries carrying the new remote metadata.
        removals: UIDs cached locally but gone from the server.
        unchanged: Count of entries identical on both sides.
    """
    additions: list[CacheEntry] = field(default_factory=list)
    updates: list[CacheEntry] = field(default_factory=list)
    removals: list[int] = field(default_factory=list)
    unchanged: int = 0

    @property
    def is_empty(self) -> bool:
        return not (self.additions or self.updates or self.removals)


def compute_diff(
    remote: Iterable[CacheEntry],
    local: Iterable[CacheEntry],
    *,
    uidvalidity_changed: bool = False,
) -> SyncDiff:
    """
    Diff server state against cached state.

    Args:
        remote: Entries enumerated from the server (flags/modseq only).
        local: Entries currently in the cache.
        uidvalidity_changed: If True the cached UIDs are stale: everything
                             local is removed and everything remote added.

    Returns:
        The additions, updates and removals, each ordered by UID.
    """
    remote_by_uid = {entry.uid: entry for entry in remote}
    local_by_uid = {entry.uid: entry for entry in local}

    if uidvalidity_changed:
        return SyncDiff(
            additions=[remote_by_uid[uid] for uid in sorted(remote_by_uid)],
            removals=sorted(local_by_uid),
        )

    diff = SyncDiff()
    for uid in sorted(remote_by_uid):
        remote_entry = remote_by_uid[uid]
        local_entry = local_by_uid.get(uid)
        if local_entry is None:
            diff.additions.append(remote_entry)
        elif remote_entry.differs_from(local_entry):
            diff.updates.append(local_entry.with_metadata(remote_entry))
        else:
            diff.unchanged += 1
    diff.removals = sorted(uid for uid in local_by_uid if uid not in remote_by_uid)
    return diff


# Type alias for the credentials collaborator
CredentialsProvider = Callable[[Account], Credentials]


class SyncEngine:
    """
    Runs full reconciliation passes against the local cache.

    The engine owns each session it opens for the duration of one pass and
    closes it before returning. Passes over the same (account, mailbox)
    never overlap inside a process.

    Usage:
        >>> engine = SyncEngine(cache, get_credentials)
        >>> result = await engine.full_sync(account, "INBOX")
        >>> results = await engine.sync_accounts(store.enabled())

    Attributes:
        cache: Local cache to reconcile into.
        credentials: Callable returning an account's Credentials.
        options: Session dial options.
        default_mailboxes: Mailboxes for accounts that don't list their own.
    """

    def __init__(
        self,
        cache: LocalCache,
        credentials: CredentialsProvider,
        *,
        options: SessionOptions | None = None,
        default_mailboxes: list[str] | None = None,
    ) -> None:
        self.cache = cache
        self.credentials = credentials
        self.options = options or SessionOptions()
        self.default_mailboxes = default_mailboxes or ["INBOX"]

    async def full_sync(self, account: Account, mailbox: str) -> SyncResult:
        """
        Reconcile one mailbox of one account.

        Never raises: any failure is captured in the returned SyncResult and
        leaves the cache exactly as it was.
        """
        mailbox = normalize_mailbox(mailbox)
        result = SyncResult(account=account.email, mailbox=mailbox)
        started = time.monotonic()

        try:
            async with self.cache.reconciliation_lock(account.email, mailbox):
                await self._reconcile(account, mailbox, result)
        except Exception as e:
            result.status = SyncStatus.ERROR
            result.error = e
            result.error_kind = classify_error(e)
            if result.error_kind is ErrorKind.UNKNOWN:
                logger.error(f"Sync of {account.email}/{mailbox} failed: {e}", exc_info=True)
            else:
                logger.warning(f"Sync of {account.email}/{mailbox} failed: {e}")

        result.duration_seconds = time.monotonic() - started
        if result.success:
            logger.info(
                f"Synced {account.email}/{mailbox}: {result.added} new, "
                f"{result.updated} updated, {result.removed} removed "
                f"({result.duration_seconds:.1f}s)"
            )
        return result

    async def _reconcile(self, account: Account, mailbox: str, result: SyncResult) -> None:
        credentials = self.credentials(account)

        async with open_session(account, credentials, mailbox, options=self.options) as session:
            status = session.selected
            fetched = await session.fetch_flags()
            remote = [
                _entry_from_fetch(account.email, mailbox, uid, item)
                for uid, item in fetched.items()
            ]

            local = await self.cache.get(account.email, mailbox)
            state = await self.cache.get_mailbox_state(account.email, mailbox)
            uidvalidity_changed = (
                state is not None
                and state.uidvalidity is not None
                and status.uidvalidity is not None
                and state.uidvalidity != status.uidvalidity
            )
            if uidvalidity_changed:
                logger.warning(
                    f"UIDVALIDITY changed for {account.email}/{mailbox}: "
                    f"{state.uidvalidity} -> {status.uidvalidity}, re-mirroring"
                )

            diff = compute_diff(remote, local, uidvalidity_changed=uidvalidity_changed)
            logger.debug(
                f"{account.email}/{mailbox}: server={len(remote)} local={len(local)} "
                f"+{len(diff.additions)} ~{len(diff.updates)} -{len(diff.removals)}"
            )

            additions = diff.additions
            if additions:
                headers = await session.fetch_headers(
                    [entry.uid for entry in additions],
                    batch_size=self.options.fetch_batch_size,
                )
                # A UID missing here was expunged after the flags FETCH
                vanished = [entry.uid for entry in additions if entry.uid not in headers]
                if vanished:
                    logger.debug(
                        f"{account.email}/{mailbox}: skipping {len(vanished)} "
                        f"message(s) expunged mid-pass: {vanished}"
                    )
                additions = [
                    _with_headers(entry, headers[entry.uid])
                    for entry in additions
                    if entry.uid in headers
                ]

        # Session is closed; commit the whole pass at once
        await self.cache.apply(
            account.email,
            mailbox,
            additions,
            diff.updates,
            diff.removals,
            uidvalidity=status.uidvalidity,
        )

        result.added = len(additions)
        result.updated = len(diff.updates)
        result.removed = len(diff.removals)
        result.unchanged = diff.unchanged
        result.uidvalidity_reset = uidvalidity_changed

    async def sync_account(self, account: Account) -> list[SyncResult]:
        """Reconcile every mailbox of one account, in order."""
        mailboxes = account.mailboxes or self.default_mailboxes
        results = []
        for mailbox in mailboxes:
            results.append(await self.full_sync(account, mailbox))
        return results

    async def sync_accounts(
        self,
        accounts: Iterable[Account],
        *,
        concurrent: bool = False,
    ) -> list[SyncResult]:
        """
        Reconcile every mailbox of every account.

        Args:
            accounts: Accounts to sync; disabled ones are skipped.
            concurrent: Run accounts as concurrent tasks. By default they
                        run one after another, so a hanging account delays
                        the ones behind it.

        Returns:
            One SyncResult per (account, mailbox), in account order.
        """
        enabled = [a for a in accounts if a.enabled]
        if not concurrent:
            results: list[SyncResult] = []
            for account in enabled:
                results.extend(await self.sync_account(account))
            return results

        per_account = await asyncio.gather(*(self.sync_account(a) for a in enabled))
        return [result for results in per_account for result in results]


def classify_error(error: BaseException) -> ErrorKind:
    """Map an exception from a pass onto an ErrorKind."""
    if isinstance(error, (AuthError, CredentialsError)):
        return ErrorKind.AUTH
    if isinstance(error, MailboxError):
        return ErrorKind.MAILBOX
    if isinstance(error, (ConnectError, TransportError)):
        return ErrorKind.TRANSPORT
    if isinstance(error, CacheError):
        return ErrorKind.CACHE
    if isinstance(error, (CommandFailed, IMAPError)):
        return ErrorKind.PROTOCOL
    return ErrorKind.UNKNOWN


# =============================================================================
# FETCH -> CacheEntry
# =============================================================================

def _entry_from_fetch(account: str, mailbox: str, uid: int, item: FetchItem) -> CacheEntry:
    raw_flags = item.attrs.get("FLAGS") or []
    if isinstance(raw_flags, str):
        raw_flags = [raw_flags]
    flags, keywords = parse_flags(f for f in raw_flags if isinstance(f, str))

    modseq = None
    raw_modseq = item.attrs.get("MODSEQ")
    if isinstance(raw_modseq, list) and raw_modseq:
        raw_modseq = raw_modseq[0]
    if isinstance(raw_modseq, str) and raw_modseq.isdigit():
        modseq = int(raw_modseq)

    return CacheEntry(
        account=account,
        mailbox=mailbox,
        uid=uid,
        flags=flags,
        keywords=keywords,
        modseq=modseq,
    )


def _with_headers(entry: CacheEntry, item: FetchItem | None) -> CacheEntry:
    """Fill in header content for a new entry from its header FETCH."""
    if item is None:
        return entry

    size = item.attrs.get("RFC822.SIZE")
    if isinstance(size, str) and size.isdigit():
        entry.size = int(size)

    raw = None
    for name, value in item.attrs.items():
        if name.startswith("BODY[") and isinstance(value, (bytes, str)):
            raw = value.encode("utf-8") if isinstance(value, str) else value
            break
    if not raw:
        return entry

    headers = email.message_from_bytes(raw)
    entry.subject = _decode_header(headers.get("Subject", ""))
    entry.sender = _decode_header(headers.get("From", ""))
    entry.message_id = (headers.get("Message-ID") or "").strip()
    entry.date = _parse_date(headers.get("Date"))
    return entry


def _decode_header(value: str) -> str:
    """Decode an RFC 2047 encoded header value."""
    if not value:
        return ""
    try:
        parts = email.header.decode_header(value)
    except (ValueError, email.errors.HeaderParseError):
        return str(value)
    decoded = []
    for part, charset in parts:
        if isinstance(part, bytes):
            try:
                decoded.append(part.decode(charset or "utf-8", errors="replace"))
            except LookupError:
                decoded.append(part.decode("utf-8", errors="replace"))
        else:
            decoded.append(part)
    return " ".join("".join(decoded).split())


def _parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
