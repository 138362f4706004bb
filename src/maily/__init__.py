# =============================================================================
# maily: A Local Mirror of Your IMAP Mailboxes
# =============================================================================
#
# maily keeps a locally cached copy of one or more remote IMAP mailboxes
# and refreshes it from a background daemon, so searches and listings
# don't have to wait on the server.
#
# Features:
#   - Gmail (X-GM-RAW), Yahoo and generic IMAP accounts over TLS
#   - Full reconciliation sync into a shared SQLite cache
#   - Provider-aware server-side search
#   - Periodic background daemon with on-demand ticks
#   - Passwords in the system keyring, XDG Base Directory compliant
#
# =============================================================================

__version__ = "0.1.0"
__app_name__ = "maily"

# Main entry point - this is what gets called by the 'maily' command
from maily.app import main

__all__ = ["main", "__version__", "__app_name__"]
