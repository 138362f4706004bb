# =============================================================================
# Search Resolver
# =============================================================================
# Runs a provider-appropriate server-side search and returns matching UIDs.
#
#   Gmail-family:  UID SEARCH X-GM-RAW "<query>"   (Gmail search syntax)
#   Everyone else: UID SEARCH TEXT "<query>"       (RFC 3501 substring match)
#
# Every search opens its own session (login, select, search, logout). A
# search never borrows the sync engine's connection.
#
# Nothing is validated client side: if a server doesn't understand the
# extension it answers BAD and that surfaces as SearchFailed.
# =============================================================================

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Iterable

from maily.core import Account, CacheEntry, Credentials, Provider
from maily.core.folder import INBOX
from maily.imap.protocol import Completion, ResponseLine, SearchHit, classify, quote_string
from maily.imap.session import SearchFailed, SessionOptions, TransportError, open_session

logger = logging.getLogger(__name__)


class SearchType(Enum):
    """Which IMAP search command to use."""
    TEXT = auto()           # Standard IMAP TEXT search
    GMAIL_RAW = auto()      # Gmail X-GM-RAW extension


def search_type_for(provider: Provider) -> SearchType:
    """Pick the search variant a provider understands."""
    if provider.supports_raw_search:
        return SearchType.GMAIL_RAW
    return SearchType.TEXT


def build_search_criteria(provider: Provider, query: str) -> str:
    """
    Criteria for UID SEARCH, with the query quoted.

    Example:
        >>> build_search_criteria(Provider.GMAIL, "is:unread")
        'X-GM-RAW "is:unread"'
    """
    if search_type_for(provider) is SearchType.GMAIL_RAW:
        return f"X-GM-RAW {quote_string(query)}"
    return f"TEXT {quote_string(query)}"


def build_search_command(provider: Provider, query: str) -> str:
    """Full command text (without tag) for a provider and query."""
    return f"UID SEARCH {build_search_criteria(provider, query)}"


def parse_search_response(lines: Iterable[bytes | str], tag: str) -> list[int]:
    """
    Parse the response to a UID SEARCH command, independent of transport.

    Scans lines until the completion for `tag`. Every * SEARCH line adds
    its identifiers (in the order seen); a bare * SEARCH adds none. The
    ids are only returned once the completion says OK.

    Raises:
        SearchFailed: On NO/BAD for `tag`; carries the raw server line.
        TransportError: If the lines run out before the completion.

    Example:
        >>> parse_search_response([b"* SEARCH 3 5 9\\r\\n", b"a3 OK done\\r\\n"], "a3")
        [3, 5, 9]
    """
    ids: list[int] = []
    seen: set[int] = set()
    for raw in lines:
        event = classify(ResponseLine.from_raw(raw), tag)
        if isinstance(event, SearchHit):
            for uid in event.ids:
                if uid not in seen:
                    seen.add(uid)
                    ids.append(uid)
        elif isinstance(event, Completion):
            if event.ok:
                return ids
            raise SearchFailed(f"Search failed: {event.line}", event.line)
    raise TransportError(f"Response ended before {tag} completion")


@dataclass
class SearchResult:
    """
    Outcome of a search.

    Attributes:
        account: Account searched.
        mailbox: Mailbox searched.
        query: The raw query.
        search_type: Which command variant was used.
        uids: Matching UIDs in server order.
        cached: Cache entries for the matches we already mirror.
    """
    account: str
    mailbox: str
    query: str
    search_type: SearchType
    uids: list[int] = field(default_factory=list)
    cached: list[CacheEntry] = field(default_factory=list)

    @property
    def uncached(self) -> list[int]:
        """Matches not (yet) in the local cache."""
        have = {entry.uid for entry in self.cached}
        return [uid for uid in self.uids if uid not in have]


class SearchResolver:
    """
    Provider-aware server-side search.

    Usage:
        >>> resolver = SearchResolver(options)
        >>> uids = await resolver.search(account, credentials, "INBOX", "invoice")
    """

    def __init__(self, options: SessionOptions | None = None) -> None:
        self.options = options or SessionOptions()

    async def search(
        self,
        account: Account,
        credentials: Credentials,
        mailbox: str = INBOX,
        query: str = "",
    ) -> list[int]:
        """
        Search one mailbox of one account.

        Raises:
            ConnectError, AuthError, MailboxError: While setting up.
            SearchFailed: If the server rejects the search.
        """
        criteria = build_search_criteria(account.provider, query)
        logger.info(f"Searching {account.email}/{mailbox} ({search_type_for(account.provider).name})")

        async with open_session(account, credentials, mailbox, options=self.options) as session:
            uids = await session.uid_search(criteria)

        logger.debug(f"Search matched {len(uids)} messages")
        return uids

    async def search_with_cache(
        self,
        account: Account,
        credentials: Credentials,
        mailbox: str,
        query: str,
        cache,
    ) -> SearchResult:
        """
        Search, then match the hits against the local cache.

        Args:
            cache: A LocalCache; read only, via get_entries().
        """
        uids = await self.search(account, credentials, mailbox, query)
        cached = await cache.get_entries(account.email, mailbox, uids) if uids else []
        return SearchResult(
            account=account.email,
            mailbox=mailbox,
            query=query,
            search_type=search_type_for(account.provider),
            uids=uids,
            cached=cached,
        )
