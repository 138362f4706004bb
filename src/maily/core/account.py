# =============================================================================
# Account Model
# =============================================================================
# Represents a mailbox account the sync engine mirrors: which provider it
# lives on (this decides the search dialect), where its IMAP server is, and
# which mailboxes are synced on every pass.
#
# IMPORTANT: Secrets are NOT stored here. They live in the system keyring
# and are handed to the protocol session as an opaque Credentials value.
# =============================================================================

from dataclasses import dataclass, field
from enum import Enum


class Provider(str, Enum):
    """
    Mail provider family.

    The provider decides which search command variant is used:
    Gmail-family servers understand the X-GM-RAW extension, everyone
    else gets the standard IMAP TEXT search.
    """
    GMAIL = "gmail"
    YAHOO = "yahoo"
    IMAP = "imap"       # Generic IMAP server, host must be configured

    @property
    def supports_raw_search(self) -> bool:
        """True if the server accepts UID SEARCH X-GM-RAW."""
        return self is Provider.GMAIL

    @property
    def default_endpoint(self) -> tuple[str, int] | None:
        """Well-known IMAP endpoint for this provider, if there is one."""
        return PROVIDER_ENDPOINTS.get(self)


PROVIDER_ENDPOINTS: dict[Provider, tuple[str, int]] = {
    Provider.GMAIL: ("imap.gmail.com", 993),
    Provider.YAHOO: ("imap.mail.yahoo.com", 993),
}


@dataclass(frozen=True)
class Credentials:
    """
    Opaque login bearer passed straight through to LOGIN.

    The core never inspects the secret; __repr__ masks it so it can't
    leak into logs or tracebacks.
    """
    email: str
    secret: str

    def __repr__(self) -> str:
        return f"Credentials(email={self.email!r}, secret='***')"


@dataclass
class Account:
    """
    A configured mailbox account.

    Attributes:
        email: The account identity. Used as the cache scope and as the
               keyring user name.
        provider: Provider family (decides the search dialect).
        imap_host: Hostname of the IMAP server.
        imap_port: Port for the implicit-TLS IMAP connection (993).
        mailboxes: Mailboxes reconciled on every sync pass.
        enabled: Disabled accounts are skipped by sync and the daemon.

    Example:
        >>> account = Account(email="me@gmail.com", provider=Provider.GMAIL)
        >>> account.endpoint
        ('imap.gmail.com', 993)
    """

    email: str
    provider: Provider = Provider.IMAP
    imap_host: str = ""
    imap_port: int = 993
    mailboxes: list[str] = field(default_factory=lambda: ["INBOX"])
    enabled: bool = True

    def __post_init__(self) -> None:
        """Normalize the provider and fill in well-known endpoints."""
        if not isinstance(self.provider, Provider):
            self.provider = Provider(str(self.provider).lower())
        if not self.imap_host and self.provider.default_endpoint:
            self.imap_host, self.imap_port = self.provider.default_endpoint

    @property
    def endpoint(self) -> tuple[str, int]:
        """(host, port) tuple for the protocol session."""
        return (self.imap_host, self.imap_port)

    @property
    def keyring_service(self) -> str:
        """
        Service name used for keyring storage:
            keyring get maily:user@example.com user@example.com
        """
        return f"maily:{self.email}"

    def __str__(self) -> str:
        return f"{self.email} ({self.provider.value})"
