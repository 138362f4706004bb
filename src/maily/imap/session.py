# =============================================================================
# IMAP Protocol Session
# =============================================================================
# One authenticated, ordered sequence of IMAP commands over a dedicated TLS
# connection.
#
# Key responsibilities:
#   - Dial TLS and swallow the server greeting
#   - Send tagged commands (a1, a2, ...) one at a time
#   - Read lines until the tagged completion, handing every other line to
#     the caller as a structured event
#   - Tell transport failures (connection dropped, timeout) apart from
#     protocol failures (NO/BAD)
#
# Design notes:
#   - A session is used for exactly one logical operation
#     (login -> select -> work -> logout) and then thrown away. Sessions are
#     never pooled or shared between accounts.
#   - open_session() is the way to get one: it guarantees LOGOUT and socket
#     close on every exit path, including errors.
#   - We talk to the socket ourselves instead of going through an IMAP
#     library so provider extensions (X-GM-RAW) can be issued verbatim.
# =============================================================================

import asyncio
import logging
import re
import ssl
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, AsyncIterator, Callable, Iterable

from maily.imap.protocol import (
    LITERAL_RE,
    Completion,
    Event,
    FetchItem,
    ResponseLine,
    SearchHit,
    TagGenerator,
    Untagged,
    classify,
    quote_string,
)

if TYPE_CHECKING:
    from maily.core import Account, Credentials

logger = logging.getLogger(__name__)

# Header fields fetched for messages we haven't seen before
HEADER_FIELDS = ("FROM", "SUBJECT", "DATE", "MESSAGE-ID")

# StreamReader line limit. A UID FETCH 1:* response is one line per message,
# but Gmail labels can make a single line long.
LINE_LIMIT = 1024 * 1024


@dataclass
class MailboxStatus:
    """
    Mailbox data reported by SELECT.

    Attributes:
        name: Mailbox name as selected.
        exists: Number of messages in the mailbox.
        uidvalidity: UIDVALIDITY response code, if sent.
        uidnext: Predicted next UID, if sent.
        highestmodseq: HIGHESTMODSEQ for CONDSTORE servers, None otherwise.
        read_only: True if the server answered [READ-ONLY].
    """
    name: str
    exists: int = 0
    uidvalidity: int | None = None
    uidnext: int | None = None
    highestmodseq: int | None = None
    read_only: bool = False
    flags: list[str] = field(default_factory=list)

    @property
    def supports_modseq(self) -> bool:
        return self.highestmodseq is not None


@dataclass
class SessionOptions:
    """
    How to dial the server.

    Attributes:
        tls: True for a default verified TLS context, an SSLContext to use
             a specific one, or False for plain TCP (local test servers).
        timeout: Seconds to wait for each read. None waits forever, so a
                 hung server stalls the caller until the transport gives up.
        fetch_batch_size: UIDs per UID FETCH when pulling headers.
    """
    tls: bool | ssl.SSLContext = True
    timeout: float | None = None
    fetch_batch_size: int = 100


class ProtocolSession:
    """
    A single-connection IMAP command engine.

    Usage:
        >>> async with open_session(account, credentials, "INBOX") as session:
        ...     uids = await session.uid_search('TEXT "invoice"')

    Attributes:
        host, port: Server endpoint.
        greeting: The server greeting line.
        tags: Tag generator for this session.
        selected: Status of the selected mailbox, if any.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        host: str = "",
        port: int = 0,
        timeout: float | None = None,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self.host = host
        self.port = port
        self.timeout = timeout
        self.tags = TagGenerator()
        self.greeting = ""
        self.selected: MailboxStatus | None = None
        self._closed = False

    # =========================================================================
    # Connection Management
    # =========================================================================

    @classmethod
    async def open(
        cls,
        host: str,
        port: int,
        *,
        tls: bool | ssl.SSLContext = True,
        timeout: float | None = None,
    ) -> "ProtocolSession":
        """
        Dial the server and read the greeting.

        Raises:
            ConnectError: On dial/TLS failure, or if no greeting arrives.
        """
        if tls is True:
            ssl_context: ssl.SSLContext | None = ssl.create_default_context()
        elif tls is False:
            ssl_context = None
        else:
            ssl_context = tls

        logger.debug(f"Connecting to {host}:{port} (tls={ssl_context is not None})")

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port, ssl=ssl_context, limit=LINE_LIMIT),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise ConnectError(f"Connection timed out to {host}:{port}") from e
        except OSError as e:
            # ssl.SSLError is an OSError too
            raise ConnectError(f"Failed to connect to {host}:{port}: {e}") from e

        session = cls(reader, writer, host=host, port=port, timeout=timeout)

        try:
            greeting = await session._read_response()
        except TransportError as e:
            await session._close_transport()
            raise ConnectError(f"Failed to read greeting from {host}:{port}: {e}") from e

        session.greeting = greeting.text
        if greeting.text.upper().startswith("* BYE"):
            await session._close_transport()
            raise ConnectError(f"Server refused connection: {greeting.text}")

        logger.debug(f"Greeting: {greeting.text}")
        return session

    async def close(self) -> None:
        """
        Send LOGOUT (best effort) and release the connection.

        Safe to call more than once and after transport failures.
        """
        if self._closed:
            return
        try:
            await self.run("LOGOUT")
        except (IMAPError, OSError) as e:
            logger.debug(f"Ignoring error during logout from {self.host}: {e}")
        finally:
            await self._close_transport()

    async def _close_transport(self) -> None:
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"Error closing connection to {self.host}: {e}")

    @property
    def is_closed(self) -> bool:
        return self._closed

    # =========================================================================
    # Command Execution
    # =========================================================================

    async def run(
        self,
        command: str,
        on_event: Callable[[Event], None] | None = None,
        *,
        redacted: str | None = None,
    ) -> Completion:
        """
        Send one tagged command and read until its completion line.

        Args:
            command: Command text without tag or CRLF.
            on_event: Called with every non-completion event, in order.
            redacted: What to log instead of the command (for LOGIN).

        Returns:
            The tagged Completion (OK, NO or BAD). Callers decide what a
            NO/BAD means for them.

        Raises:
            TransportError: If the connection fails before the completion.
        """
        if self._closed:
            raise TransportError("Session is closed")

        tag = self.tags.next()
        logger.debug(f"> {tag} {redacted or command}")

        try:
            self._writer.write(f"{tag} {command}\r\n".encode("utf-8"))
            await self._writer.drain()
        except OSError as e:
            raise TransportError(f"Failed to send {tag}: {e}") from e

        while True:
            line = await self._read_response()
            event = classify(line, tag)
            if isinstance(event, Completion):
                logger.debug(f"< {event.line}")
                return event
            if (
                isinstance(event, Untagged)
                and event.text.upper().startswith("BYE")
                and command != "LOGOUT"
            ):
                raise TransportError(f"Server closed the session: {event.text}")
            if on_event is not None:
                on_event(event)

    async def _read_response(self) -> ResponseLine:
        """
        Read one logical response line, pulling in any {N} literals.

        Raises:
            TransportError: On EOF, timeout or socket error.
        """
        text_parts: list[str] = []
        literals: list[bytes] = []
        while True:
            raw = await self._read(self._reader.readline())
            if not raw:
                raise TransportError("Connection closed by server")
            match = LITERAL_RE.search(raw)
            if not match:
                text_parts.append(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
                return ResponseLine(text="".join(text_parts), literals=literals)
            text_parts.append(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
            literals.append(await self._read(self._reader.readexactly(int(match.group(1)))))

    async def _read(self, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"Timed out waiting for {self.host}") from e
        except asyncio.IncompleteReadError as e:
            raise TransportError("Connection closed in the middle of a literal") from e
        except (asyncio.LimitOverrunError, ValueError) as e:
            raise TransportError(f"Response line too long: {e}") from e
        except OSError as e:
            raise TransportError(f"Connection to {self.host} failed: {e}") from e

    # =========================================================================
    # Commands
    # =========================================================================

    async def login(self, email: str, secret: str) -> None:
        """
        LOGIN with both arguments quoted.

        Raises:
            AuthError: If the server answers NO or BAD.
        """
        completion = await self.run(
            f"LOGIN {quote_string(email)} {quote_string(secret)}",
            redacted=f"LOGIN {quote_string(email)} ***",
        )
        if not completion.ok:
            raise AuthError(f"Login failed for {email}: {completion.line}", completion.line)
        logger.debug(f"Authenticated as {email}")

    async def select(self, mailbox: str) -> MailboxStatus:
        """
        SELECT a mailbox and collect its status data.

        Raises:
            MailboxError: If the server answers NO or BAD.
        """
        status = MailboxStatus(name=mailbox)

        def on_event(event: Event) -> None:
            if isinstance(event, Untagged):
                _parse_select_data(event.text, status)

        completion = await self.run(f"SELECT {quote_string(mailbox)}", on_event)
        if not completion.ok:
            raise MailboxError(
                f"Failed to select mailbox '{mailbox}': {completion.line}", completion.line
            )
        if "[READ-ONLY]" in completion.text.upper():
            status.read_only = True

        self.selected = status
        logger.debug(f"Selected {mailbox}: {status}")
        return status

    async def uid_search(self, criteria: str) -> list[int]:
        """
        UID SEARCH with pre-built criteria.

        Identifiers from every * SEARCH line are accumulated in wire order
        and only returned once the tagged completion is OK.

        Raises:
            SearchFailed: If the server answers NO or BAD.
        """
        ids: list[int] = []
        seen: set[int] = set()

        def on_event(event: Event) -> None:
            if isinstance(event, SearchHit):
                for uid in event.ids:
                    if uid not in seen:
                        seen.add(uid)
                        ids.append(uid)

        completion = await self.run(f"UID SEARCH {criteria}", on_event)
        if not completion.ok:
            raise SearchFailed(f"Search failed: {completion.line}", completion.line)
        return ids

    async def fetch_flags(self) -> dict[int, FetchItem]:
        """
        Enumerate every message in the selected mailbox with its flags.

        Asks for MODSEQ too when the server reported HIGHESTMODSEQ.

        Returns:
            Mapping of UID to the FETCH item carrying FLAGS (and MODSEQ).
        """
        if self.selected is None:
            raise IMAPError("No mailbox selected")
        if self.selected.exists == 0:
            # Some servers answer BAD to "1:*" on an empty mailbox
            return {}

        items = "(UID FLAGS MODSEQ)" if self.selected.supports_modseq else "(UID FLAGS)"
        return await self._uid_fetch("1:*", items)

    async def fetch_headers(
        self,
        uids: Iterable[int],
        *,
        batch_size: int = 100,
    ) -> dict[int, FetchItem]:
        """
        Fetch size and a few header fields for the given UIDs, in batches.

        Returns:
            Mapping of UID to FETCH item. UIDs expunged in the meantime are
            simply missing from the result.
        """
        fields = " ".join(HEADER_FIELDS)
        items = f"(UID RFC822.SIZE BODY.PEEK[HEADER.FIELDS ({fields})])"
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        ordered = sorted(set(uids))
        result: dict[int, FetchItem] = {}
        for i in range(0, len(ordered), batch_size):
            batch = ordered[i:i + batch_size]
            logger.debug(f"Fetching headers for {len(batch)} messages")
            result.update(await self._uid_fetch(format_uid_set(batch), items))
        return result

    async def _uid_fetch(self, uid_set: str, items: str) -> dict[int, FetchItem]:
        fetched: dict[int, FetchItem] = {}

        def on_event(event: Event) -> None:
            if isinstance(event, FetchItem) and event.uid is not None:
                fetched[event.uid] = event

        completion = await self.run(f"UID FETCH {uid_set} {items}", on_event)
        if not completion.ok:
            raise FetchFailed(f"Fetch failed: {completion.line}", completion.line)
        return fetched


# =============================================================================
# Scoped Session
# =============================================================================

@asynccontextmanager
async def open_session(
    account: "Account",
    credentials: "Credentials",
    mailbox: str | None = None,
    *,
    options: SessionOptions | None = None,
) -> AsyncIterator[ProtocolSession]:
    """
    Open, log in and (optionally) select; always log out afterwards.

    Args:
        account: Account whose endpoint to dial.
        credentials: Opaque login bearer.
        mailbox: Mailbox to SELECT before handing the session out.
        options: Dial options (TLS, timeout).

    Raises:
        ConnectError, AuthError, MailboxError: From the respective step.
    """
    options = options or SessionOptions()
    host, port = account.endpoint
    session = await ProtocolSession.open(host, port, tls=options.tls, timeout=options.timeout)
    try:
        await session.login(credentials.email, credentials.secret)
        if mailbox is not None:
            await session.select(mailbox)
        yield session
    finally:
        await session.close()


# =============================================================================
# Helpers
# =============================================================================

_SELECT_PATTERNS = {
    "exists": re.compile(r"^(\d+)\s+EXISTS", re.IGNORECASE),
    "uidvalidity": re.compile(r"\[UIDVALIDITY\s+(\d+)\]", re.IGNORECASE),
    "uidnext": re.compile(r"\[UIDNEXT\s+(\d+)\]", re.IGNORECASE),
    "highestmodseq": re.compile(r"\[HIGHESTMODSEQ\s+(\d+)\]", re.IGNORECASE),
}
_FLAGS_PATTERN = re.compile(r"^FLAGS\s+\(([^)]*)\)", re.IGNORECASE)


def _parse_select_data(text: str, status: MailboxStatus) -> None:
    """Fold one untagged SELECT response into the status."""
    for attr, pattern in _SELECT_PATTERNS.items():
        match = pattern.search(text)
        if match:
            setattr(status, attr, int(match.group(1)))
    match = _FLAGS_PATTERN.match(text)
    if match:
        status.flags = match.group(1).split()


def format_uid_set(uids: Iterable[int]) -> str:
    """
    Compress UIDs into an IMAP sequence set.

    Example:
        >>> format_uid_set([1, 2, 3, 7, 9, 10])
        '1:3,7,9:10'
    """
    ordered = sorted(set(uids))
    if not ordered:
        raise ValueError("Empty UID set")
    ranges = []
    start = prev = ordered[0]
    for uid in ordered[1:]:
        if uid == prev + 1:
            prev = uid
            continue
        ranges.append(f"{start}:{prev}" if start != prev else str(start))
        start = prev = uid
    ranges.append(f"{start}:{prev}" if start != prev else str(start))
    return ",".join(ranges)


# =============================================================================
# Exceptions
# =============================================================================

class IMAPError(Exception):
    """Base exception for IMAP operations."""
    pass


class ConnectError(IMAPError):
    """Raised when the server can't be dialed or doesn't greet us."""
    retryable = True


class TransportError(ConnectError):
    """Raised when the connection drops or times out mid-exchange."""
    retryable = True


class CommandFailed(IMAPError):
    """
    Raised when the server answers a command with NO or BAD.

    Attributes:
        line: The raw tagged completion line, for diagnostics.
    """
    retryable = False

    def __init__(self, message: str, line: str = "") -> None:
        super().__init__(message)
        self.line = line


class AuthError(CommandFailed):
    """Raised when LOGIN is rejected."""
    pass


class MailboxError(CommandFailed):
    """Raised when SELECT is rejected (e.g. the mailbox doesn't exist)."""
    pass


class SearchFailed(CommandFailed):
    """Raised when UID SEARCH is rejected."""
    pass


class FetchFailed(CommandFailed):
    """Raised when UID FETCH is rejected."""
    pass
