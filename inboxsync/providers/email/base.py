"""
Base types and classes for email provider synchronization.

Provides the universal message schema, the account record, the error taxonomy
and the abstract contract every provider family implements.
"""

import asyncio
import email.utils
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, TypeVar, Union

from inboxsync.core.config import SyncSettings, get_settings
from inboxsync.providers.base import (
    IncrementalSyncStrategy,
    ProviderCapabilities,
    ProviderFamily,
    fetch_concurrency,
    normalize_provider_type,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

LOCAL_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"

Cursor = Union[datetime, str, int, float, None]


class SyncProviderError(Exception):
    """Base exception for provider sync operations."""
    pass


class ConfigurationError(SyncProviderError):
    """Account is missing fields required by its provider type."""

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        super().__init__(message)
        self.errors = errors or [message]


class UnknownProviderError(ConfigurationError):
    """Provider type has no capability table entry."""
    pass


class UnsupportedProviderError(SyncProviderError):
    """Provider type is named in the capability table but not implemented."""
    pass


class CapabilityError(SyncProviderError):
    """Operation is not permitted by the provider's capabilities."""
    pass


class AuthenticationError(SyncProviderError):
    """Client initialization failed."""
    pass


class TransportError(SyncProviderError):
    """List, search, detail or mutation call failed at the backend."""
    pass


class NormalizationError(SyncProviderError):
    """A single message could not be mapped to the universal schema."""
    pass


class MessageDirection(str, Enum):
    SENT = "sent"
    RECEIVED = "received"


class ReadState(str, Enum):
    """Read state as reported by the provider."""
    READ = "read"
    UNREAD = "unread"
    UNKNOWN = "unknown"  # Provider does not track read status

    @classmethod
    def from_flag(cls, is_read: Optional[bool]) -> "ReadState":
        if is_read is None:
            return cls.UNKNOWN
        return cls.READ if is_read else cls.UNREAD

    def as_flag(self) -> Optional[bool]:
        if self is ReadState.UNKNOWN:
            return None
        return self is ReadState.READ


SYNC_STATUS_SYNCED = "synced"


@dataclass(frozen=True)
class AttachmentInfo:
    """Attachment metadata; content is never carried in a normalized message."""
    filename: str
    content_type: str = "application/octet-stream"
    size_bytes: int = 0
    content_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "content_type": self.content_type,
            "size_bytes": self.size_bytes,
            "content_id": self.content_id,
        }


@dataclass(frozen=True)
class NormalizedMessage:
    """
    Universal message schema produced by every provider.

    provider_message_id is the idempotency key for upserts. Exactly one of
    sent_at / received_at is set, matching the direction.
    """
    provider_message_id: str
    provider: str
    direction: MessageDirection
    read_state: ReadState
    subject: str
    from_email: Optional[str] = None
    from_name: Optional[str] = None
    to_email: Optional[str] = None
    to_name: Optional[str] = None
    provider_thread_id: Optional[str] = None
    message_id_header: Optional[str] = None
    content_plain: str = ""
    content_html: str = ""
    in_reply_to: Optional[str] = None
    references: tuple[str, ...] = ()
    sent_at: Optional[str] = None
    received_at: Optional[str] = None
    has_attachments: bool = False
    attachments: tuple[AttachmentInfo, ...] = ()
    sync_status: str = SYNC_STATUS_SYNCED
    last_status_sync_at: Optional[str] = None
    raw_headers: Mapping[str, Optional[str]] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        if not self.provider_message_id:
            raise NormalizationError("provider_message_id is required")

        if self.direction is MessageDirection.SENT:
            valid = self.sent_at is not None and self.received_at is None
        else:
            valid = self.received_at is not None and self.sent_at is None
        if not valid:
            raise NormalizationError(
                f"Message {self.provider_message_id}: exactly one of sent_at/received_at "
                f"must be set for direction '{self.direction.value}'"
            )

    @property
    def is_read(self) -> Optional[bool]:
        """True, False, or None when the provider does not track read state."""
        return self.read_state.as_flag()

    @property
    def timestamp(self) -> str:
        return self.sent_at if self.direction is MessageDirection.SENT else self.received_at

    @property
    def internal_id(self) -> str:
        return generate_internal_message_id(self.provider, self.provider_message_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_message_id": self.provider_message_id,
            "provider_thread_id": self.provider_thread_id,
            "message_id_header": self.message_id_header,
            "subject": self.subject,
            "from_email": self.from_email,
            "from_name": self.from_name,
            "to_email": self.to_email,
            "to_name": self.to_name,
            "direction": self.direction.value,
            "is_read": self.is_read,
            "read_state": self.read_state.value,
            "content_plain": self.content_plain,
            "content_html": self.content_html,
            "in_reply_to": self.in_reply_to,
            "references": list(self.references),
            "sent_at": self.sent_at,
            "received_at": self.received_at,
            "has_attachments": self.has_attachments,
            "attachments": [a.to_dict() for a in self.attachments],
            "provider": self.provider,
            "sync_status": self.sync_status,
            "last_status_sync_at": self.last_status_sync_at,
            "raw_headers": dict(self.raw_headers),
        }


@dataclass
class EmailAccount:
    """One external mailbox, as stored by the account service."""
    email: str = ""
    provider: str = ""
    id: Optional[str] = None
    organization_id: Optional[str] = None

    # OAuth2 (API providers)
    encrypted_tokens: Optional[str] = None
    oauth_token_ref: Optional[str] = None

    # IMAP (relay / receive-only providers)
    imap_config: dict[str, Any] = field(default_factory=dict)
    imap_credentials_encrypted: Optional[str] = None
    imap_credentials_iv: Optional[str] = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "EmailAccount":
        """Build an account from a store record, ignoring unrelated columns."""
        return cls(
            email=record.get("email") or "",
            provider=record.get("provider") or "",
            id=record.get("id"),
            organization_id=record.get("organization_id"),
            encrypted_tokens=record.get("encrypted_tokens"),
            oauth_token_ref=record.get("oauth_token_ref"),
            imap_config=dict(record.get("imap_config") or {}),
            imap_credentials_encrypted=record.get("imap_credentials_encrypted"),
            imap_credentials_iv=record.get("imap_credentials_iv"),
        )

    @classmethod
    def coerce(cls, account: Union["EmailAccount", Mapping[str, Any]]) -> "EmailAccount":
        if isinstance(account, cls):
            return account
        if isinstance(account, Mapping):
            return cls.from_record(account)
        raise ConfigurationError(f"Unsupported account record type: {type(account).__name__}")

    def has_oauth_identity(self) -> bool:
        return bool(self.encrypted_tokens or self.oauth_token_ref)


@dataclass
class SyncOptions:
    """Per-call options for incremental sync."""
    batch_size: Optional[int] = None
    concurrency: Optional[int] = None
    synced_at: Optional[datetime] = None

    @classmethod
    def from_value(cls, options: Union["SyncOptions", Mapping[str, Any], None]) -> "SyncOptions":
        if options is None:
            return cls()
        if isinstance(options, cls):
            return options
        return cls(
            batch_size=options.get("batch_size", options.get("batchSize")),
            concurrency=options.get("concurrency"),
            synced_at=options.get("synced_at"),
        )


# ============================================================================
# Shared helpers
# ============================================================================

_ANGLE_ADDRESS = re.compile(r"<([^>]+)>")
_BARE_ADDRESS = re.compile(r"([^\s<>,;\"]+@[^\s<>,;\"]+)")
_DISPLAY_NAME = re.compile(r"^([^<]+)\s*<[^>]+>")


def extract_email(value: Optional[str]) -> Optional[str]:
    """Extract a case-folded address from "Name <addr>" or a bare address."""
    if not value:
        return None

    match = _ANGLE_ADDRESS.search(value) or _BARE_ADDRESS.search(value)
    address = match.group(1) if match else value
    return address.strip().lower() or None


def extract_name(value: Optional[str]) -> Optional[str]:
    """Extract the display name from "Name <addr>"."""
    if not value:
        return None

    match = _DISPLAY_NAME.match(value.strip())
    if not match:
        return None
    name = match.group(1).strip().strip("\"'").strip()
    return name or None


def generate_internal_message_id(provider_type: str, provider_message_id: str) -> str:
    return f"{provider_type}_{provider_message_id}"


def _as_aware(value: datetime) -> datetime:
    # Naive datetimes are local wall-clock time.
    return value if value.tzinfo else value.astimezone()


def _parse_datetime_value(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return _as_aware(value)

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            iso = text[:-1] + "+00:00" if text.endswith("Z") else text
            return _as_aware(datetime.fromisoformat(iso))
        except ValueError:
            pass
        try:
            return _as_aware(email.utils.parsedate_to_datetime(text))
        except (TypeError, ValueError, IndexError):
            return None

    return None


def parse_date(value: Any, default: Optional[datetime] = None) -> Optional[datetime]:
    """
    Best-effort date parsing.

    Accepts datetimes, epoch seconds, ISO-8601 and RFC 2822 strings. Empty
    input returns `default`; unparsable input is logged and falls back to
    `default`, or to now when no default is given.
    """
    if value is None or value == "":
        return default

    try:
        parsed = _parse_datetime_value(value)
    except (OverflowError, OSError, ValueError):
        parsed = None

    if parsed is None:
        logger.warning(f"Failed to parse date: {value!r}")
        return default or datetime.now(timezone.utc)
    return parsed


def format_local_timestamp(value: datetime) -> str:
    """Render as local wall-clock YYYY-MM-DDTHH:MM:SS with no offset."""
    return _as_aware(value).astimezone().strftime(LOCAL_TIMESTAMP_FORMAT)


def format_utc_timestamp(value: datetime) -> str:
    return _as_aware(value).astimezone(timezone.utc).isoformat()


def coerce_cursor(cursor: Cursor) -> Optional[datetime]:
    """
    Convert a sync cursor into an aware datetime.

    Raises:
        ConfigurationError: If the cursor cannot be interpreted
    """
    if cursor is None or cursor == "":
        return None

    try:
        parsed = _parse_datetime_value(cursor)
    except (OverflowError, OSError, ValueError):
        parsed = None

    if parsed is None:
        raise ConfigurationError(f"Invalid sync cursor: {cursor!r}")
    return parsed


# ============================================================================
# Provider contract
# ============================================================================

class BaseSyncProvider(ABC):
    """
    Abstract contract for provider synchronization.

    One instance is created per account per sync and holds no cross-account
    state. Concrete families declare `family` and implement client
    initialization, incremental retrieval, detail retrieval, normalization
    and the read-state mutation.
    """

    family: ProviderFamily

    def __init__(
        self,
        provider_type: str,
        capabilities: ProviderCapabilities,
        settings: Optional[SyncSettings] = None,
    ):
        self.provider_type = normalize_provider_type(provider_type)
        self.capabilities = capabilities
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def get_capabilities(self) -> ProviderCapabilities:
        return self.capabilities

    def supports_bidirectional_sync(self) -> bool:
        return self.capabilities.bidirectional_sync

    def supports_real_time_updates(self) -> bool:
        return self.capabilities.real_time_updates

    def get_incremental_sync_type(self) -> IncrementalSyncStrategy:
        return self.capabilities.incremental_sync_strategy

    def get_max_batch_size(self) -> int:
        return self.capabilities.max_batch_size

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    @abstractmethod
    async def initialize_client(self, account: Union[EmailAccount, Mapping[str, Any]]) -> Any:
        """
        Establish the session object for this account.

        Raises:
            AuthenticationError / DecryptionError / ConfigurationError
        """
        pass

    @abstractmethod
    async def get_incremental_changes(
        self,
        client: Any,
        cursor: Cursor,
        options: Union[SyncOptions, Mapping[str, Any], None] = None,
    ) -> list[NormalizedMessage]:
        """
        Fetch messages changed since `cursor`.

        Never raises for a single bad message; connection and query failures
        propagate.
        """
        pass

    @abstractmethod
    async def get_message_details(
        self,
        client: Any,
        provider_message_id: str,
    ) -> Optional[NormalizedMessage]:
        """Fetch and normalize a single message, or None if unsupported."""
        pass

    @abstractmethod
    def normalize_message_data(
        self,
        raw: Mapping[str, Any],
        synced_at: Optional[datetime] = None,
    ) -> NormalizedMessage:
        """Pure mapping from the provider-native shape. No I/O."""
        pass

    @abstractmethod
    async def _apply_read_state(self, client: Any, provider_message_id: str, is_read: bool) -> bool:
        pass

    async def mark_as_read(self, client: Any, provider_message_id: str) -> bool:
        self._require_bidirectional_sync("mark_as_read")
        return await self._apply_read_state(client, provider_message_id, True)

    async def mark_as_unread(self, client: Any, provider_message_id: str) -> bool:
        self._require_bidirectional_sync("mark_as_unread")
        return await self._apply_read_state(client, provider_message_id, False)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def generate_internal_message_id(self, provider_message_id: str) -> str:
        return generate_internal_message_id(self.provider_type, provider_message_id)

    def _require_bidirectional_sync(self, operation: str):
        if not self.capabilities.bidirectional_sync:
            raise CapabilityError(
                f"{self.provider_type} does not support bidirectional sync ({operation})"
            )

    def _resolve_batch_size(self, options: SyncOptions) -> int:
        maximum = self.capabilities.max_batch_size
        if not options.batch_size:
            return maximum
        return max(1, min(int(options.batch_size), maximum))

    def _resolve_concurrency(self, options: SyncOptions) -> int:
        if options.concurrency:
            return max(1, int(options.concurrency))
        return fetch_concurrency(self.capabilities, self.settings.max_fetch_concurrency)

    async def _gather_in_order(
        self,
        operation: str,
        items: Iterable[T],
        worker: Callable[[T], Awaitable[R]],
        concurrency: int,
    ) -> tuple[list[R], int]:
        """
        Run `worker` over `items` with bounded concurrency.

        Results keep input order. Each item's failure is logged and skipped
        without cancelling its siblings.

        Returns:
            Tuple of (successful results, failure count)
        """
        items = list(items)
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def run(item: T) -> R:
            async with semaphore:
                return await worker(item)

        outcomes = await asyncio.gather(*(run(item) for item in items), return_exceptions=True)

        results: list[R] = []
        failures = 0
        for item, outcome in zip(items, outcomes):
            if isinstance(outcome, Exception):
                failures += 1
                logger.warning(
                    f"[{self.provider_type.upper()}] {operation} skipped {item!r}: {outcome}"
                )
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            if outcome is not None:
                results.append(outcome)
        return results, failures

    def _log(self, operation: str, **details: Any):
        logger.info(f"[{self.provider_type.upper()}] {operation}: {details}")

    def _log_error(self, operation: str, error: BaseException, **context: Any):
        logger.error(f"[{self.provider_type.upper()}] {operation} failed: {error} | context={context}")
