# =============================================================================
# IMAP Module
# =============================================================================
# Everything that talks to an IMAP server:
#   - protocol: tags, quoting, and the response tokenizer
#   - session: one TLS connection running tagged commands in order
#   - search: provider-aware server-side search (X-GM-RAW vs. TEXT)
#   - sync: full reconciliation of a mailbox into the local cache
# =============================================================================

from maily.imap.protocol import (
    Completion,
    FetchItem,
    SearchHit,
    TagGenerator,
    quote_string,
    unquote_string,
)
from maily.imap.session import (
    AuthError,
    CommandFailed,
    ConnectError,
    FetchFailed,
    IMAPError,
    MailboxError,
    MailboxStatus,
    ProtocolSession,
    SearchFailed,
    SessionOptions,
    TransportError,
    open_session,
)
from maily.imap.search import (
    SearchResolver,
    SearchResult,
    SearchType,
    build_search_command,
    parse_search_response,
)
from maily.imap.sync import (
    ErrorKind,
    SyncEngine,
    SyncResult,
    SyncStatus,
    compute_diff,
)

__all__ = [
    # Protocol
    "Completion",
    "FetchItem",
    "SearchHit",
    "TagGenerator",
    "quote_string",
    "unquote_string",
    # Session
    "ProtocolSession",
    "SessionOptions",
    "MailboxStatus",
    "open_session",
    "IMAPError",
    "ConnectError",
    "TransportError",
    "CommandFailed",
    "AuthError",
    "MailboxError",
    "SearchFailed",
    "FetchFailed",
    # Search
    "SearchResolver",
    "SearchResult",
    "SearchType",
    "build_search_command",
    "parse_search_response",
    # Sync
    "SyncEngine",
    "SyncResult",
    "SyncStatus",
    "ErrorKind",
    "compute_diff",
]
