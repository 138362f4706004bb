# =============================================================================
# Cache Entry Model
# =============================================================================
# The local record of one server message. The sync engine only needs enough
# to answer "do we already have this message, and has it changed?":
#   - IMAP metadata (UID, flags, MODSEQ revision marker)
#   - A few headers fetched once when the message is first seen
#
# Entries are keyed by (account, mailbox, uid) and there is at most one
# entry per key.
# =============================================================================

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import IntFlag
from typing import Iterable


class MessageFlags(IntFlag):
    """
    System flags (RFC 3501), stored as a bitmask.

    Keyword flags ($Forwarded, $Junk, Gmail labels exposed as keywords...)
    don't fit a bitmask and are kept alongside as a sorted tuple.
    """
    NONE = 0
    SEEN = 1 << 0       # \\Seen
    ANSWERED = 1 << 1   # \\Answered
    FLAGGED = 1 << 2    # \\Flagged
    DELETED = 1 << 3    # \\Deleted
    DRAFT = 1 << 4      # \\Draft
    RECENT = 1 << 5     # \\Recent (session flag, ignored when diffing)


_SYSTEM_FLAGS = {
    "\\SEEN": MessageFlags.SEEN,
    "\\ANSWERED": MessageFlags.ANSWERED,
    "\\FLAGGED": MessageFlags.FLAGGED,
    "\\DELETED": MessageFlags.DELETED,
    "\\DRAFT": MessageFlags.DRAFT,
    "\\RECENT": MessageFlags.RECENT,
}


def parse_flags(raw_flags: Iterable[str]) -> tuple[MessageFlags, tuple[str, ...]]:
    """
    Split raw IMAP flag atoms into system flags and keywords.

    Example:
        >>> parse_flags(["\\\\Seen", "$Forwarded"])
        (<MessageFlags.SEEN: 1>, ('$Forwarded',))
    """
    flags = MessageFlags.NONE
    keywords: set[str] = set()
    for atom in raw_flags:
        system = _SYSTEM_FLAGS.get(atom.upper())
        if system is not None:
            flags |= system
        elif atom:
            keywords.add(atom)
    # \Recent belongs to whichever session saw the message first, so it
    # flips between passes without anything changing.
    flags &= ~MessageFlags.RECENT
    return flags, tuple(sorted(keywords))


@dataclass
class CacheEntry:
    """
    One cached message.

    Attributes:
        account: Account email (cache scope).
        mailbox: Mailbox name (cache scope).
        uid: Server-assigned UID, unique within the mailbox.
        flags: System flags bitmask.
        keywords: Keyword flags, sorted.
        modseq: Revision marker from CONDSTORE servers, None otherwise.
        subject, sender, date, message_id, size: Header content fetched
            the first time the message was seen.
    """
    account: str
    mailbox: str
    uid: int
    flags: MessageFlags = MessageFlags.NONE
    keywords: tuple[str, ...] = field(default_factory=tuple)
    modseq: int | None = None

    subject: str = ""
    sender: str = ""
    date: datetime | None = None
    message_id: str = ""
    size: int = 0

    @property
    def key(self) -> tuple[str, str, int]:
        return (self.account, self.mailbox, self.uid)

    @property
    def is_read(self) -> bool:
        return bool(self.flags & MessageFlags.SEEN)

    def differs_from(self, other: "CacheEntry") -> bool:
        """
        True if the server-side metadata changed between self and other.

        MODSEQ is only compared when both sides have one; a server that
        stopped reporting it falls back to comparing flags.
        """
        if self.flags != other.flags or self.keywords != other.keywords:
            return True
        if self.modseq is not None and other.modseq is not None:
            return self.modseq != other.modseq
        return False

    def with_metadata(self, other: "CacheEntry") -> "CacheEntry":
        """Copy of self carrying other's flags and revision marker."""
        return replace(
            self,
            flags=other.flags,
            keywords=other.keywords,
            modseq=other.modseq if other.modseq is not None else self.modseq,
        )

    def __str__(self) -> str:
        marker = " " if self.is_read else "*"
        return f"{marker} {self.uid:>8}  {self.sender[:30]:<30}  {self.subject}"
