# =============================================================================
# Maily Core Module
# =============================================================================
# Core domain models. These are plain dataclasses with no external
# dependencies, so they can be imported anywhere without creating cycles.
#
#   - Account / Provider / Credentials: who we sync and how to reach them
#   - MailboxState: per-mailbox sync bookkeeping (UIDVALIDITY, last sync)
#   - CacheEntry / MessageFlags: the local record of a server message
# =============================================================================

from maily.core.account import Account, Credentials, Provider
from maily.core.folder import INBOX, MailboxState, normalize_mailbox
from maily.core.message import CacheEntry, MessageFlags, parse_flags

__all__ = [
    "Account",
    "Credentials",
    "Provider",
    "INBOX",
    "MailboxState",
    "normalize_mailbox",
    "CacheEntry",
    "MessageFlags",
    "parse_flags",
]
