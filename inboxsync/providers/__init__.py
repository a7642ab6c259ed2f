"""
Mail Providers Package

Unified synchronization interfaces for external mailboxes.

Provider families:
- API polling (Gmail API over OAuth 2.0)
- Connection polling (IMAP for Mailgun, SendGrid and plain IMAP accounts)
"""

from inboxsync.providers.base import (
    CAPABILITY_TABLE,
    IncrementalSyncStrategy,
    ProviderCapabilities,
    ProviderFamily,
    get_capabilities,
)

__all__ = [
    "CAPABILITY_TABLE",
    "IncrementalSyncStrategy",
    "ProviderCapabilities",
    "ProviderFamily",
    "get_capabilities",
]
