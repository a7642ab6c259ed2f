"""Email Sync Providers

Provider implementations are registered with the factory in
inboxsync.providers.registry:
- Gmail (via Gmail API)
- IMAP (Mailgun, SendGrid and plain IMAP mailboxes, receive-only)
"""

from inboxsync.providers.email.base import (
    AttachmentInfo,
    BaseSyncProvider,
    EmailAccount,
    MessageDirection,
    NormalizedMessage,
    ReadState,
    SyncOptions,
    SyncProviderError,
)

__all__ = [
    "AttachmentInfo",
    "BaseSyncProvider",
    "EmailAccount",
    "MessageDirection",
    "NormalizedMessage",
    "ReadState",
    "SyncOptions",
    "SyncProviderError",
]
