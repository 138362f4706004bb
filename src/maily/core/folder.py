# =============================================================================
# Mailbox Names
# =============================================================================
# Mailboxes are flat strings: whatever name the server accepts in SELECT.
# No hierarchy is modeled. This module only names the well-known folders
# so callers don't scatter string literals around.
# =============================================================================

from dataclasses import dataclass
from datetime import datetime

# Standard IMAP folders (Yahoo and others)
INBOX = "INBOX"  # RFC 3501 reserves the case-insensitive name INBOX
SENT = "Sent"
DRAFT = "Draft"
DRAFTS = "Drafts"
TRASH = "Trash"
SPAM = "Spam"
BULK_MAIL = "Bulk Mail"
ARCHIVE = "Archive"
JUNK = "Junk"

# Gmail special folders
GMAIL_FOLDER_PREFIX = "[Gmail]/"
GMAIL_TRASH = "[Gmail]/Trash"
GMAIL_ALL_MAIL = "[Gmail]/All Mail"
GMAIL_DRAFTS = "[Gmail]/Drafts"
GMAIL_SENT = "[Gmail]/Sent Mail"
GMAIL_STARRED = "[Gmail]/Starred"
GMAIL_SPAM = "[Gmail]/Spam"


def normalize_mailbox(name: str) -> str:
    """
    Canonical form of a mailbox name for use as a cache key.

    INBOX is case-insensitive per RFC 3501, every other name is kept
    exactly as given.
    """
    name = name.strip()
    if name.upper() == INBOX:
        return INBOX
    return name


@dataclass
class MailboxState:
    """
    Per (account, mailbox) synchronization state kept in the cache.

    Attributes:
        account: Account email.
        mailbox: Mailbox name.
        uidvalidity: UIDVALIDITY seen on the last successful pass. If the
                     server reports a different value, every cached UID is
                     stale and the mailbox is re-mirrored from scratch.
        last_sync: When the last successful pass committed.
    """
    account: str
    mailbox: str
    uidvalidity: int | None = None
    last_sync: datetime | None = None
