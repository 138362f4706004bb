# =============================================================================
# Pytest Configuration and Fixtures
# =============================================================================
# Shared fixtures for the maily test suite.
#
# FakeIMAPServer is a scripted IMAP server on 127.0.0.1 speaking just enough
# of the protocol (LOGIN, SELECT, UID SEARCH, UID FETCH, LOGOUT) to drive
# sessions, searches and sync passes end to end over plain TCP.
# =============================================================================

import asyncio
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from maily.core import Account, CacheEntry, MessageFlags, Provider
from maily.imap.protocol import tokenize
from maily.imap.session import SessionOptions


# =============================================================================
# Fake IMAP Server
# =============================================================================

@dataclass
class FakeMessage:
    """A message held by the fake server."""
    uid: int
    flags: list[str] = field(default_factory=list)
    subject: str = "Hello"
    sender: str = "sender@example.com"
    date: str = "Mon, 15 Jan 2024 10:30:00 +0000"
    modseq: int | None = None

    def header_bytes(self) -> bytes:
        return (
            f"From: {self.sender}\r\n"
            f"Subject: {self.subject}\r\n"
            f"Date: {self.date}\r\n"
            f"Message-ID: <{self.uid}@example.com>\r\n"
            "\r\n"
        ).encode("utf-8")


@dataclass
class FakeMailbox:
    """A mailbox held by the fake server."""
    uidvalidity: int = 1
    messages: list[FakeMessage] = field(default_factory=list)
    highestmodseq: int | None = None

    def add(self, uid: int, *flags: str, **kwargs) -> FakeMessage:
        message = FakeMessage(uid=uid, flags=list(flags), **kwargs)
        self.messages.append(message)
        self.messages.sort(key=lambda m: m.uid)
        return message

    def get(self, uid: int) -> FakeMessage | None:
        for message in self.messages:
            if message.uid == uid:
                return message
        return None

    def remove(self, uid: int) -> None:
        self.messages = [m for m in self.messages if m.uid != uid]


class FakeIMAPServer:
    """
    Scripted IMAP server.

    Usage:
        >>> async with FakeIMAPServer() as server:
        ...     server.inbox.add(1, "\\\\Seen")
        ...     account = server.account()

    Attributes:
        mailboxes: Mailbox name -> FakeMailbox.
        password: The only password LOGIN accepts.
        greeting: First line sent to every client.
        search_lines: Untagged lines sent for UID SEARCH.
        search_completion: Status and text of the UID SEARCH completion.
        drop_on: Command name after which the server hangs up.
        bye_on_drop: Say "* BYE" before hanging up on drop_on.
        received: Every command line received, in order, across connections.
    """

    def __init__(
        self,
        mailboxes: dict[str, FakeMailbox] | None = None,
        *,
        password: str = "secret",
        greeting: str = "* OK [CAPABILITY IMAP4rev1] fake server ready",
    ) -> None:
        self.mailboxes = mailboxes if mailboxes is not None else {"INBOX": FakeMailbox()}
        self.password = password
        self.greeting = greeting
        self.search_lines: list[str] = ["* SEARCH"]
        self.search_completion = "OK SEARCH completed"
        self.drop_on: str | None = None
        self.bye_on_drop = False
        self.received: list[str] = []
        self.connections = 0
        self.port = 0
        self._server: asyncio.AbstractServer | None = None

    @property
    def inbox(self) -> FakeMailbox:
        return self.mailboxes["INBOX"]

    def account(self, email: str = "test@example.com", provider: Provider = Provider.IMAP) -> Account:
        """An Account pointing at this server."""
        return Account(
            email=email,
            provider=provider,
            imap_host="127.0.0.1",
            imap_port=self.port,
        )

    def tags(self) -> list[str]:
        """Tags of every command received, in order."""
        return [line.split(" ", 1)[0] for line in self.received]

    async def __aenter__(self) -> "FakeIMAPServer":
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def __aexit__(self, *exc_info) -> None:
        self._server.close()
        await self._server.wait_closed()

    # -------------------------------------------------------------------------
    # Connection Handling
    # -------------------------------------------------------------------------

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections += 1
        selected: FakeMailbox | None = None
        try:
            writer.write(f"{self.greeting}\r\n".encode())
            await writer.drain()
            if self.greeting.startswith("* BYE"):
                return

            while True:
                raw = await reader.readline()
                if not raw:
                    return
                line = raw.decode("utf-8").rstrip("\r\n")
                self.received.append(line)
                tag, _, rest = line.partition(" ")
                command, _, args = rest.partition(" ")
                command = command.upper()
                if command == "UID":
                    sub, _, args = args.partition(" ")
                    command = f"UID {sub.upper()}"

                if self.drop_on == command:
                    if self.bye_on_drop:
                        writer.write(b"* BYE server shutting down\r\n")
                        await writer.drain()
                    return

                if command == "LOGIN":
                    reply, selected = self._login(tag, args), None
                elif command == "SELECT":
                    selected, reply = self._select(tag, args)
                elif command == "UID SEARCH":
                    reply = self.search_lines + [f"{tag} {self.search_completion}"]
                elif command == "UID FETCH":
                    reply = self._fetch(tag, args, selected)
                elif command == "LOGOUT":
                    writer.write(f"* BYE logging out\r\n{tag} OK LOGOUT completed\r\n".encode())
                    await writer.drain()
                    return
                else:
                    reply = [f"{tag} BAD unknown command"]

                for item in reply:
                    writer.write(item if isinstance(item, bytes) else f"{item}\r\n".encode())
                await writer.drain()
        except (ConnectionError, asyncio.IncompleteReadError):
            return
        finally:
            writer.close()

    def _login(self, tag: str, args: str) -> list[str]:
        tokens = tokenize(args)
        if len(tokens) == 2 and tokens[1] == self.password:
            return [f"{tag} OK LOGIN completed"]
        return [f"{tag} NO [AUTHENTICATIONFAILED] Invalid credentials"]

    def _select(self, tag: str, args: str) -> tuple[FakeMailbox | None, list[str]]:
        name = tokenize(args)[0]
        mailbox = self.mailboxes.get(name)
        if mailbox is None:
            return None, [f"{tag} NO Mailbox doesn't exist: {name}"]
        uidnext = max((m.uid for m in mailbox.messages), default=0) + 1
        lines = [
            "* FLAGS (\\Answered \\Flagged \\Deleted \\Seen \\Draft)",
            f"* {len(mailbox.messages)} EXISTS",
            "* 0 RECENT",
            f"* OK [UIDVALIDITY {mailbox.uidvalidity}] UIDs valid",
            f"* OK [UIDNEXT {uidnext}] Predicted next UID",
        ]
        if mailbox.highestmodseq is not None:
            lines.append(f"* OK [HIGHESTMODSEQ {mailbox.highestmodseq}] Highest")
        lines.append(f"{tag} OK [READ-WRITE] SELECT completed")
        return mailbox, lines

    def _fetch(self, tag: str, args: str, mailbox: FakeMailbox | None) -> list[str | bytes]:
        if mailbox is None:
            return [f"{tag} BAD No mailbox selected"]
        uid_set, _, items = args.partition(" ")
        wanted = _match_uid_set(uid_set, [m.uid for m in mailbox.messages])
        reply: list[str | bytes] = []
        for seq, message in enumerate(mailbox.messages, start=1):
            if message.uid not in wanted:
                continue
            if "BODY.PEEK[" in items.upper():
                headers = message.header_bytes()
                reply.append(
                    f"* {seq} FETCH (UID {message.uid} RFC822.SIZE {len(headers) * 10} "
                    f"BODY[HEADER.FIELDS (FROM SUBJECT DATE MESSAGE-ID)] {{{len(headers)}}}\r\n"
                    .encode()
                    + headers
                    + b")\r\n"
                )
            else:
                flags = " ".join(message.flags)
                modseq = f" MODSEQ ({message.modseq})" if message.modseq is not None else ""
                reply.append(f"* {seq} FETCH (UID {message.uid} FLAGS ({flags}){modseq})")
        reply.append(f"{tag} OK FETCH completed")
        return reply


def _match_uid_set(uid_set: str, uids: list[int]) -> set[int]:
    """UIDs from `uids` that fall inside an IMAP sequence set like 1:3,7,9:*."""
    highest = max(uids, default=0)
    matched: set[int] = set()
    for part in uid_set.split(","):
        if ":" in part:
            low, high = part.split(":")
            low_n = highest if low == "*" else int(low)
            high_n = highest if high == "*" else int(high)
            low_n, high_n = min(low_n, high_n), max(low_n, high_n)
            matched.update(uid for uid in uids if low_n <= uid <= high_n)
        else:
            value = highest if part == "*" else int(part)
            if value in uids:
                matched.add(value)
    return matched


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(autouse=True)
def xdg_dirs(temp_dir, monkeypatch):
    """Point every XDG directory into the temp dir."""
    for name in ("XDG_CONFIG_HOME", "XDG_DATA_HOME", "XDG_STATE_HOME"):
        monkeypatch.setenv(name, str(temp_dir / name.lower()))
    return temp_dir


@pytest.fixture
def db_path(temp_dir):
    """Path for a throwaway cache database."""
    return temp_dir / "cache.db"


@pytest.fixture
def plain_tcp():
    """Session options for talking to FakeIMAPServer."""
    return SessionOptions(tls=False, timeout=5)


@pytest.fixture
def sample_account():
    """Create a sample Account for testing."""
    return Account(
        email="test@example.com",
        provider=Provider.IMAP,
        imap_host="imap.example.com",
        imap_port=993,
    )


@pytest.fixture
def gmail_account():
    """Create a sample Gmail Account for testing."""
    return Account(email="me@gmail.com", provider=Provider.GMAIL)


def make_entry(uid: int, flags: MessageFlags = MessageFlags.NONE, **kwargs) -> CacheEntry:
    """Build a CacheEntry for test@example.com/INBOX."""
    kwargs.setdefault("subject", f"Message {uid}")
    return CacheEntry(
        account=kwargs.pop("account", "test@example.com"),
        mailbox=kwargs.pop("mailbox", "INBOX"),
        uid=uid,
        flags=flags,
        **kwargs,
    )
