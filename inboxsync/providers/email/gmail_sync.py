"""
Gmail Synchronization

API-polling provider built on the Gmail API.

Features:
- Query-based incremental sync (after:<unix seconds>)
- Paginated listing with per-message detail fetches
- Bounded concurrency sized from the provider rate limit
- Label-based read/unread mutation
- Direct search and Message-ID reverse lookup
"""

import asyncio
import base64
import binascii
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol, Union

import httplib2
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from google_auth_httplib2 import AuthorizedHttp

from inboxsync.core.config import SyncSettings
from inboxsync.core.credential_vault import CredentialVault, DecryptionError
from inboxsync.providers.base import ProviderCapabilities, ProviderFamily, get_capabilities
from inboxsync.providers.email.base import (
    AttachmentInfo,
    AuthenticationError,
    BaseSyncProvider,
    Cursor,
    EmailAccount,
    MessageDirection,
    NormalizationError,
    NormalizedMessage,
    ReadState,
    SyncOptions,
    TransportError,
    coerce_cursor,
    extract_email,
    extract_name,
    format_local_timestamp,
    format_utc_timestamp,
    parse_date,
)
from inboxsync.providers.registry import register_provider

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"

UNREAD_LABEL = "UNREAD"
SENT_LABEL = "SENT"

_HTML_TAG = re.compile(r"<[^>]*>")
_WHITESPACE = re.compile(r"\s+")


class TokenBroker(Protocol):
    """Resolves an account identity into an authenticated Gmail service."""

    async def get_gmail_client(self, email: str, organization_id: Optional[str]) -> Any:
        ...


TokenLoader = Callable[[str, Optional[str]], Awaitable[Optional[str]]]


class StoredTokenBroker:
    """
    Token broker backed by vault-encrypted OAuth token sets.

    The loader returns the encrypted token blob stored for an account; the
    blob decrypts to {"access_token", "refresh_token", "client_id",
    "client_secret", "expires_at"}.
    """

    def __init__(
        self,
        token_loader: TokenLoader,
        vault: CredentialVault,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
    ):
        self.token_loader = token_loader
        self.vault = vault
        self.client_id = client_id
        self.client_secret = client_secret

    async def get_gmail_client(self, email: str, organization_id: Optional[str]) -> Any:
        encrypted = await self.token_loader(email, organization_id)
        if not encrypted:
            raise AuthenticationError(f"No OAuth2 tokens stored for {email}")

        try:
            tokens = self.vault.decrypt(encrypted)
        except DecryptionError as e:
            raise AuthenticationError(f"Stored OAuth2 tokens for {email} are unreadable") from e

        if not tokens.get("access_token") and not tokens.get("refresh_token"):
            raise AuthenticationError(f"Stored OAuth2 tokens for {email} are empty")

        credentials = Credentials(
            token=tokens.get("access_token"),
            refresh_token=tokens.get("refresh_token"),
            token_uri=GOOGLE_TOKEN_URI,
            client_id=tokens.get("client_id") or self.client_id,
            client_secret=tokens.get("client_secret") or self.client_secret,
            expiry=self._parse_expiry(tokens.get("expires_at")),
        )

        try:
            if (credentials.expired or not credentials.token) and credentials.refresh_token:
                await asyncio.to_thread(credentials.refresh, Request())
            return build("gmail", "v1", credentials=credentials, cache_discovery=False)
        except GoogleAuthError as e:
            raise AuthenticationError(f"Gmail OAuth2 authentication failed for {email}: {e}") from e

    @staticmethod
    def _parse_expiry(value: Optional[str]) -> Optional[datetime]:
        # google-auth compares expiry against naive UTC
        parsed = parse_date(value) if value else None
        if parsed is None:
            return None
        return parsed.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass
class SearchPage:
    """One page of a direct search."""
    messages: list[NormalizedMessage] = field(default_factory=list)
    next_page_token: Optional[str] = None


@dataclass
class BatchResult:
    """Outcome of a batch mutation."""
    success: int = 0
    failed: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)


# ============================================================================
# Payload helpers
# ============================================================================

def find_header(headers: list[Mapping[str, Any]], name: str) -> Optional[str]:
    """Find a header value by name (case-insensitive)."""
    wanted = name.lower()
    for header in headers:
        if (header.get("name") or "").lower() == wanted:
            return header.get("value") or None
    return None


def decode_base64url(data: Optional[str]) -> str:
    """Decode Gmail's URL-safe base64 body data."""
    if not data:
        return ""
    try:
        padded = data + "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError) as e:
        logger.warning(f"Failed to decode base64url data: {e}")
        return ""


def html_to_text(html: str) -> str:
    """Strip markup and collapse whitespace."""
    return _WHITESPACE.sub(" ", _HTML_TAG.sub("", html)).strip()


def _collect_text_parts(parts: list[Mapping[str, Any]], found: dict[str, str]):
    """Depth-first search for the first text/plain and first text/html part."""
    for part in parts:
        if "plain" in found and "html" in found:
            return

        mime_type = part.get("mimeType", "")
        data = (part.get("body") or {}).get("data")

        if data and not part.get("filename"):
            if mime_type == "text/plain" and "plain" not in found:
                found["plain"] = decode_base64url(data)
            elif mime_type == "text/html" and "html" not in found:
                found["html"] = decode_base64url(data)

        if part.get("parts"):
            _collect_text_parts(part["parts"], found)


def extract_message_content(payload: Optional[Mapping[str, Any]]) -> tuple[str, str]:
    """
    Extract (html, plain) content from a Gmail payload.

    A top-level single-part body wins; otherwise sub-parts are walked
    depth-first and the first plain and first html payloads are kept. When
    only HTML exists, a plain-text fallback is derived from it.
    """
    if not payload:
        return "", ""

    found: dict[str, str] = {}
    body_data = (payload.get("body") or {}).get("data")
    mime_type = payload.get("mimeType", "")

    if body_data and mime_type == "text/html":
        found["html"] = decode_base64url(body_data)
    elif body_data and mime_type == "text/plain":
        found["plain"] = decode_base64url(body_data)
    elif payload.get("parts"):
        _collect_text_parts(payload["parts"], found)

    content_html = found.get("html", "")
    content_plain = found.get("plain", "")
    if content_html and not content_plain:
        content_plain = html_to_text(content_html)

    return content_html, content_plain


def extract_attachments(payload: Optional[Mapping[str, Any]]) -> list[AttachmentInfo]:
    """Collect metadata for every part that carries a filename."""
    attachments: list[AttachmentInfo] = []
    if not payload:
        return attachments

    for part in payload.get("parts") or []:
        filename = part.get("filename")
        if filename:
            attachments.append(AttachmentInfo(
                filename=filename,
                content_type=part.get("mimeType") or "application/octet-stream",
                size_bytes=int((part.get("body") or {}).get("size", 0) or 0),
                content_id=find_header(part.get("headers") or [], "Content-ID"),
            ))
        if part.get("parts"):
            attachments.extend(extract_attachments(part))

    return attachments


# ============================================================================
# Provider
# ============================================================================

@register_provider(ProviderFamily.API_POLLING)
class GmailSyncProvider(BaseSyncProvider):
    """
    Gmail synchronization over the Gmail API.

    The client is a googleapiclient Gmail v1 resource obtained from the
    token broker. Blocking request execution runs in worker threads.
    """

    family = ProviderFamily.API_POLLING
    dependency_names = ("token_broker",)

    def __init__(
        self,
        provider_type: str = "gmail",
        capabilities: Optional[ProviderCapabilities] = None,
        settings: Optional[SyncSettings] = None,
        token_broker: Optional[TokenBroker] = None,
    ):
        if capabilities is None:
            capabilities = get_capabilities(provider_type)
        super().__init__(provider_type, capabilities, settings)
        self.token_broker = token_broker
        self._transport_lock = asyncio.Lock()

    async def initialize_client(self, account: Union[EmailAccount, Mapping[str, Any]]) -> Any:
        account = EmailAccount.coerce(account)
        self._log("initialize_client", account_id=account.id, email=account.email)

        if self.token_broker is None:
            raise AuthenticationError("No token broker configured for Gmail accounts")

        try:
            client = await self.token_broker.get_gmail_client(account.email, account.organization_id)
        except AuthenticationError as e:
            self._log_error("initialize_client", e, account_id=account.id)
            raise
        except Exception as e:
            self._log_error("initialize_client", e, account_id=account.id)
            raise AuthenticationError(f"Gmail client initialization failed: {e}") from e

        if client is None:
            raise AuthenticationError("Failed to initialize Gmail client - OAuth2 authentication failed")
        return client

    def build_incremental_query(self, cursor: Cursor, now: Optional[datetime] = None) -> str:
        """Gmail query restricting results to messages after the cursor."""
        since = coerce_cursor(cursor)
        if since is None:
            # First sync: bounded look-back instead of the whole mailbox
            now = now or datetime.now(timezone.utc)
            since = now - timedelta(hours=self.settings.initial_sync_window_hours)
        return f"after:{int(since.timestamp())}"

    async def get_incremental_changes(
        self,
        client: Any,
        cursor: Cursor,
        options: Union[SyncOptions, Mapping[str, Any], None] = None,
    ) -> list[NormalizedMessage]:
        options = SyncOptions.from_value(options)
        batch_size = self._resolve_batch_size(options)
        synced_at = options.synced_at or datetime.now(timezone.utc)
        query = self.build_incremental_query(cursor, now=synced_at)

        self._log(
            "get_incremental_changes",
            cursor=str(cursor) if cursor else None,
            initial_sync=cursor is None,
            query=query,
            batch_size=batch_size,
        )

        refs, next_page_token = await self._list_message_refs(client, query, batch_size)
        if not refs:
            self._log("get_incremental_changes", result="no_new_messages")
            return []

        messages, failures = await self._fetch_details(client, refs, synced_at, options)

        self._log(
            "get_incremental_changes",
            listed=len(refs),
            normalized=len(messages),
            skipped=failures,
            has_more=next_page_token is not None,
        )
        return messages

    async def get_message_details(
        self,
        client: Any,
        provider_message_id: str,
    ) -> Optional[NormalizedMessage]:
        return await self._fetch_and_normalize(client, provider_message_id, datetime.now(timezone.utc))

    async def search_direct(
        self,
        client: Any,
        query: str,
        page_token: Optional[str] = None,
        max_results: int = 50,
    ) -> SearchPage:
        """
        Search Gmail directly with a free-form query, bypassing the cursor.

        Returns one page of normalized messages and the next page token.
        """
        self._log("search_direct", query=query, max_results=max_results,
                  page_token=page_token[:20] + "..." if page_token else None)

        params: dict[str, Any] = {"userId": "me", "q": query, "maxResults": max_results}
        if page_token:
            params["pageToken"] = page_token

        result = await self._list(client, params, "search_direct")
        refs = result.get("messages") or []
        next_token = result.get("nextPageToken")

        if not refs:
            self._log("search_direct", result="no_matches")
            return SearchPage(messages=[], next_page_token=next_token)

        messages, failures = await self._fetch_details(
            client, refs, datetime.now(timezone.utc), SyncOptions()
        )
        self._log("search_direct", matches=len(refs), normalized=len(messages),
                  skipped=failures, has_more=next_token is not None)
        return SearchPage(messages=messages, next_page_token=next_token)

    async def get_message_id_by_header(self, client: Any, message_id_header: Optional[str]) -> Optional[str]:
        """Resolve a Gmail message id from an RFC Message-ID header, or None."""
        if not message_id_header:
            return None

        params = {"userId": "me", "q": f"rfc822msgid:{message_id_header}", "maxResults": 1}
        try:
            result = await self._list(client, params, "get_message_id_by_header")
        except TransportError:
            return None

        refs = result.get("messages") or []
        return refs[0].get("id") if refs else None

    async def batch_mark_as_read(self, client: Any, provider_message_ids: list[str]) -> BatchResult:
        """Mark several messages read; failures are collected per message."""
        self._require_bidirectional_sync("batch_mark_as_read")
        result = BatchResult()

        for message_id in provider_message_ids:
            try:
                if await self.mark_as_read(client, message_id):
                    result.success += 1
                else:
                    result.failed += 1
                    result.errors.append({"message_id": message_id, "error": "Gmail rejected the label change"})
            except TransportError as e:
                result.failed += 1
                result.errors.append({"message_id": message_id, "error": str(e)})

        return result

    async def _apply_read_state(self, client: Any, provider_message_id: str, is_read: bool) -> bool:
        operation = "mark_as_read" if is_read else "mark_as_unread"
        body = {"removeLabelIds": [UNREAD_LABEL]} if is_read else {"addLabelIds": [UNREAD_LABEL]}
        self._log(operation, message_id=provider_message_id)

        request = client.users().messages().modify(userId="me", id=provider_message_id, body=body)
        try:
            await self._execute(request)
        except HttpError as e:
            # Non-200 status: failure, body not inspected
            self._log_error(operation, e, message_id=provider_message_id, status=e.resp.status)
            return False
        except Exception as e:
            self._log_error(operation, e, message_id=provider_message_id)
            raise TransportError(f"Gmail {operation} failed for {provider_message_id}: {e}") from e

        self._log(operation, message_id=provider_message_id, success=True)
        return True

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def normalize_message_data(
        self,
        raw: Mapping[str, Any],
        synced_at: Optional[datetime] = None,
    ) -> NormalizedMessage:
        if not isinstance(raw, Mapping):
            raise NormalizationError(f"Gmail message is not a mapping: {type(raw).__name__}")

        message_id = raw.get("id")
        try:
            return self._normalize(raw, synced_at)
        except NormalizationError:
            raise
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise NormalizationError(f"Cannot normalize Gmail message {message_id}: {e}") from e

    def _normalize(self, raw: Mapping[str, Any], synced_at: Optional[datetime]) -> NormalizedMessage:
        message_id = raw.get("id")
        if not message_id:
            raise NormalizationError("Gmail message has no id")

        payload = raw.get("payload") or {}
        headers = payload.get("headers") or []
        label_ids = raw.get("labelIds") or []

        subject = find_header(headers, "Subject")
        from_header = find_header(headers, "From")
        to_header = find_header(headers, "To")
        date_header = find_header(headers, "Date")
        references = find_header(headers, "References")

        # Direction follows the SENT label; a mislabelled folder yields the wrong direction
        direction = MessageDirection.SENT if SENT_LABEL in label_ids else MessageDirection.RECEIVED
        read_state = ReadState.from_flag(UNREAD_LABEL not in label_ids)

        content_html, content_plain = extract_message_content(payload)
        attachments = tuple(extract_attachments(payload))

        fallback = self._internal_date(raw.get("internalDate")) or synced_at
        moment = parse_date(date_header, default=fallback) or datetime.now(timezone.utc)
        timestamp = format_local_timestamp(moment)

        return NormalizedMessage(
            provider_message_id=str(message_id),
            provider_thread_id=raw.get("threadId"),
            message_id_header=find_header(headers, "Message-ID"),
            subject=subject or "(No subject)",
            from_email=extract_email(from_header),
            from_name=extract_name(from_header),
            to_email=extract_email(to_header),
            to_name=extract_name(to_header),
            direction=direction,
            read_state=read_state,
            content_html=content_html,
            content_plain=content_plain,
            in_reply_to=find_header(headers, "In-Reply-To"),
            references=tuple(references.split()) if references else (),
            sent_at=timestamp if direction is MessageDirection.SENT else None,
            received_at=timestamp if direction is MessageDirection.RECEIVED else None,
            has_attachments=bool(attachments),
            attachments=attachments,
            provider=self.provider_type,
            last_status_sync_at=format_utc_timestamp(synced_at) if synced_at else None,
            raw_headers={
                "from": from_header,
                "to": to_header,
                "date": date_header,
                "subject": subject,
            },
        )

    @staticmethod
    def _internal_date(value: Any) -> Optional[datetime]:
        if value in (None, ""):
            return None
        try:
            return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            return None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _execute(self, request: Any) -> Any:
        """
        Run a blocking request in a worker thread.

        httplib2.Http is not thread-safe: requests bound to an AuthorizedHttp
        get a fresh connection per call, anything else is serialized.
        """
        http = getattr(request, "http", None)
        if isinstance(http, AuthorizedHttp):
            fresh = AuthorizedHttp(http.credentials, http=httplib2.Http())
            return await asyncio.to_thread(request.execute, http=fresh)

        async with self._transport_lock:
            return await asyncio.to_thread(request.execute)

    async def _list(self, client: Any, params: dict[str, Any], operation: str) -> dict[str, Any]:
        try:
            return await self._execute(client.users().messages().list(**params)) or {}
        except Exception as e:
            self._log_error(operation, e, query=params.get("q"))
            raise TransportError(f"Gmail list failed: {e}") from e

    async def _list_message_refs(
        self,
        client: Any,
        query: str,
        limit: int,
    ) -> tuple[list[dict[str, Any]], Optional[str]]:
        """Follow list pages until `limit` references are collected."""
        refs: list[dict[str, Any]] = []
        page_token: Optional[str] = None

        while len(refs) < limit:
            params: dict[str, Any] = {
                "userId": "me",
                "q": query,
                "maxResults": min(limit - len(refs), self.settings.gmail_max_page_size),
            }
            if page_token:
                params["pageToken"] = page_token

            result = await self._list(client, params, "get_incremental_changes")
            refs.extend(result.get("messages") or [])
            page_token = result.get("nextPageToken")
            if not page_token:
                break

        return refs[:limit], page_token

    async def _fetch_details(
        self,
        client: Any,
        refs: list[dict[str, Any]],
        synced_at: datetime,
        options: SyncOptions,
    ) -> tuple[list[NormalizedMessage], int]:
        async def fetch(ref: dict[str, Any]) -> NormalizedMessage:
            return await self._fetch_and_normalize(client, ref["id"], synced_at)

        return await self._gather_in_order(
            "get_message_details", refs, fetch, self._resolve_concurrency(options)
        )

    async def _fetch_and_normalize(
        self,
        client: Any,
        provider_message_id: str,
        synced_at: datetime,
    ) -> NormalizedMessage:
        request = client.users().messages().get(userId="me", id=provider_message_id, format="full")
        try:
            raw = await self._execute(request)
        except Exception as e:
            self._log_error("get_message_details", e, message_id=provider_message_id)
            raise TransportError(f"Failed to fetch Gmail message {provider_message_id}: {e}") from e

        return self.normalize_message_data(raw, synced_at=synced_at)
