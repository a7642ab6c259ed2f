"""
IMAP Synchronization for Relay Accounts

Connection-polling provider for accounts that send through a relay API
(Mailgun, SendGrid) or plain IMAP mailboxes, and receive by polling IMAP.

- Stored credentials are AES-256-CBC encrypted and decrypted per sync
- Each sync fetches a bounded batch of the newest messages
- The incremental filter runs client-side on the received timestamp
- Receive-only: read state is unknown and cannot be pushed back
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union

from inboxsync.core.config import SyncSettings
from inboxsync.core.credential_vault import (
    DecryptionError,
    ImapCredentialCipher,
    KeyProvider,
    SettingsKeyProvider,
)
from inboxsync.providers.base import ProviderCapabilities, ProviderFamily, get_capabilities
from inboxsync.providers.email.base import (
    AttachmentInfo,
    BaseSyncProvider,
    CapabilityError,
    ConfigurationError,
    Cursor,
    EmailAccount,
    MessageDirection,
    NormalizationError,
    NormalizedMessage,
    ReadState,
    SyncOptions,
    coerce_cursor,
    extract_email,
    extract_name,
    format_utc_timestamp,
    parse_date,
)
from inboxsync.providers.email.imap_client import (
    AioImapProtocolClient,
    ImapConnectionConfig,
    ImapProtocolClient,
)
from inboxsync.providers.registry import register_provider

logger = logging.getLogger(__name__)


@dataclass
class ConnectionTestResult:
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success}
        if self.error:
            result["error"] = self.error
        return result


def normalize_references(value: Any) -> tuple[str, ...]:
    """Threading references arrive as a scalar, a list or a spaced string."""
    if not value:
        return ()
    if isinstance(value, str):
        return tuple(value.split())
    if isinstance(value, (list, tuple)):
        return tuple(str(ref) for ref in value if ref)
    return (str(value),)


def _attachment_info(record: Any) -> AttachmentInfo:
    if isinstance(record, AttachmentInfo):
        return record
    return AttachmentInfo(
        filename=record.get("filename") or "attachment",
        content_type=record.get("content_type") or record.get("contentType") or "application/octet-stream",
        size_bytes=int(record.get("size") or record.get("size_bytes") or 0),
        content_id=record.get("content_id") or record.get("cid"),
    )


@register_provider(ProviderFamily.CONNECTION_POLLING)
class ImapSyncProvider(BaseSyncProvider):
    """
    Receive-only IMAP synchronization.

    The client returned by initialize_client is an ImapConnectionConfig; each
    fetch opens and closes its own connection through the protocol client.
    """

    family = ProviderFamily.CONNECTION_POLLING
    dependency_names = ("key_provider", "protocol_client")

    def __init__(
        self,
        provider_type: str = "imap",
        capabilities: Optional[ProviderCapabilities] = None,
        settings: Optional[SyncSettings] = None,
        key_provider: Optional[KeyProvider] = None,
        protocol_client: Optional[ImapProtocolClient] = None,
    ):
        if capabilities is None:
            capabilities = get_capabilities(provider_type)
        super().__init__(provider_type, capabilities, settings)
        if key_provider is None:
            key_provider = SettingsKeyProvider(self.settings)
        self.cipher = ImapCredentialCipher(key_provider)
        self.protocol_client = (
            protocol_client if protocol_client is not None else AioImapProtocolClient(self.settings)
        )

    async def initialize_client(self, account: Union[EmailAccount, Mapping[str, Any]]) -> ImapConnectionConfig:
        """
        Decrypt stored credentials and merge them with connection parameters.

        Raises:
            ConfigurationError: If the account has no IMAP configuration
            DecryptionError: If the credential blob cannot be decrypted
        """
        account = EmailAccount.coerce(account)
        self._log("initialize_client", account_id=account.id, email=account.email, provider=account.provider)

        if not account.imap_config or not account.imap_credentials_encrypted:
            raise ConfigurationError("IMAP configuration not found for account")

        try:
            credentials = self.cipher.decrypt(
                account.imap_credentials_encrypted,
                account.imap_credentials_iv,
            )
        except DecryptionError as e:
            self._log_error("initialize_client", e, account_id=account.id)
            raise

        password = credentials.get("password") if isinstance(credentials, dict) else None
        if not password:
            raise DecryptionError("Decrypted IMAP credentials contain no password")

        config = self._connection_config(account, password)
        self._log("initialize_client", host=config.host, port=config.port, use_tls=config.use_tls)
        return config

    def _connection_config(self, account: EmailAccount, password: str) -> ImapConnectionConfig:
        stored = account.imap_config
        use_tls = stored.get("use_tls", stored.get("secure", True)) is not False
        try:
            port = int(stored.get("port") or (993 if use_tls else 143))
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid IMAP port: {stored.get('port')!r}")

        return ImapConnectionConfig(
            host=stored.get("host") or "",
            port=port,
            user=stored.get("user") or account.email,
            password=password,
            use_tls=use_tls,
            mailbox=stored.get("mailbox") or self.settings.imap_mailbox,
        )

    async def get_incremental_changes(
        self,
        client: ImapConnectionConfig,
        cursor: Cursor,
        options: Union[SyncOptions, Mapping[str, Any], None] = None,
    ) -> list[NormalizedMessage]:
        options = SyncOptions.from_value(options)
        batch_size = self._resolve_batch_size(options)
        synced_at = options.synced_at or datetime.now(timezone.utc)
        since = coerce_cursor(cursor)

        self._log("get_incremental_changes", host=client.host, cursor=str(cursor) if cursor else None,
                  batch_size=batch_size)

        try:
            raw_messages = await self.protocol_client.fetch_messages(client, batch_size)
        except Exception as e:
            self._log_error("get_incremental_changes", e, host=client.host)
            raise

        # Server-side filtering is limited: normalize everything, then filter
        normalized: list[NormalizedMessage] = []
        for raw in raw_messages:
            try:
                normalized.append(self.normalize_message_data(raw, synced_at=synced_at))
            except NormalizationError as e:
                logger.warning(f"[{self.provider_type.upper()}] Skipping IMAP message: {e}")

        messages = normalized
        if since is not None:
            messages = [m for m in normalized if datetime.fromisoformat(m.received_at) > since]

        self._log(
            "get_incremental_changes",
            fetched=len(raw_messages),
            normalized=len(normalized),
            after_filtering=len(messages),
        )
        return messages

    async def get_message_details(self, client: Any, provider_message_id: str) -> Optional[NormalizedMessage]:
        # Detail is already part of the batch result
        self._log("get_message_details", message_id=provider_message_id, supported=False)
        return None

    async def _apply_read_state(self, client: Any, provider_message_id: str, is_read: bool) -> bool:
        raise CapabilityError("Bidirectional sync not supported for IMAP provider")

    async def test_connection(self, client: ImapConnectionConfig) -> ConnectionTestResult:
        """Fetch a single message to verify connectivity. Never raises."""
        self._log("test_connection", host=client.host, port=client.port, user=client.user)
        try:
            await self.protocol_client.fetch_messages(client, 1)
        except Exception as e:
            self._log_error("test_connection", e, host=client.host, port=client.port)
            return ConnectionTestResult(success=False, error=str(e))

        self._log("test_connection", host=client.host, success=True)
        return ConnectionTestResult(success=True)

    def normalize_message_data(
        self,
        raw: Mapping[str, Any],
        synced_at: Optional[datetime] = None,
    ) -> NormalizedMessage:
        if not isinstance(raw, Mapping):
            raise NormalizationError(f"IMAP record is not a mapping: {type(raw).__name__}")

        uid = raw.get("uid")
        try:
            return self._normalize(raw, synced_at)
        except NormalizationError:
            raise
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise NormalizationError(f"Cannot normalize IMAP message {uid}: {e}") from e

    def _normalize(self, raw: Mapping[str, Any], synced_at: Optional[datetime]) -> NormalizedMessage:
        uid = raw.get("uid")
        if uid is None or uid == "":
            raise NormalizationError("IMAP message has no UID")

        received = parse_date(raw.get("date"), default=synced_at) or datetime.now(timezone.utc)
        attachments = tuple(_attachment_info(a) for a in raw.get("attachments") or [])
        from_header = raw.get("from") or ""
        to_header = raw.get("to") or ""
        text = raw.get("text") or ""

        return NormalizedMessage(
            provider_message_id=str(uid),
            message_id_header=raw.get("message_id") or raw.get("messageId"),
            in_reply_to=raw.get("in_reply_to") or raw.get("inReplyTo") or None,
            references=normalize_references(raw.get("references")),
            from_email=extract_email(from_header),
            from_name=extract_name(from_header),
            to_email=extract_email(to_header),
            to_name=extract_name(to_header),
            subject=raw.get("subject") or "(no subject)",
            content_plain=text,
            content_html=raw.get("html") or text,
            received_at=format_utc_timestamp(received),
            read_state=ReadState.UNKNOWN,
            direction=MessageDirection.RECEIVED,
            provider=self.provider_type,
            has_attachments=bool(attachments),
            attachments=attachments,
            last_status_sync_at=format_utc_timestamp(synced_at) if synced_at else None,
            raw_headers={"from": from_header or None, "to": to_header or None, "subject": raw.get("subject")},
        )
