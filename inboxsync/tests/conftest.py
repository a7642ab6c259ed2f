"""
Sync Engine Test Configuration.

Pytest fixtures for testing providers without real mail servers: settings
with test key material, stored account records and raw-message builders.
"""

import base64
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from inboxsync.core.config import SyncSettings
from inboxsync.core.credential_vault import CredentialVault, ImapCredentialCipher, StaticKeyProvider

TEST_ENCRYPTION_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
TEST_VAULT_KEY = "test-vault-master-key"


def b64url(text: str) -> str:
    """Encode text the way Gmail encodes body data (unpadded)."""
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def make_gmail_message(
    message_id: str = "msg-1",
    labels: Optional[list[str]] = None,
    headers: Optional[dict[str, str]] = None,
    html: Optional[str] = None,
    plain: Optional[str] = None,
    parts: Optional[list[dict[str, Any]]] = None,
    internal_date: Optional[str] = "1700000000000",
    thread_id: str = "thread-1",
) -> dict[str, Any]:
    """Build a users.messages.get(format=full) response."""
    header_values = {
        "From": "Alice Sender <Alice@Example.com>",
        "To": "bob@example.org",
        "Subject": "Quarterly report",
        "Date": "Tue, 14 Nov 2023 22:13:20 +0000",
        "Message-ID": f"<{message_id}@mail.example.com>",
    }
    header_values.update(headers or {})

    payload: dict[str, Any] = {
        "headers": [{"name": k, "value": v} for k, v in header_values.items()],
    }
    if parts is not None:
        payload["mimeType"] = "multipart/mixed"
        payload["parts"] = parts
    elif html is not None and plain is not None:
        payload["mimeType"] = "multipart/alternative"
        payload["parts"] = [
            {"mimeType": "text/plain", "body": {"data": b64url(plain)}},
            {"mimeType": "text/html", "body": {"data": b64url(html)}},
        ]
    elif html is not None:
        payload["mimeType"] = "text/html"
        payload["body"] = {"data": b64url(html)}
    else:
        payload["mimeType"] = "text/plain"
        payload["body"] = {"data": b64url(plain or "Hello")}

    raw = {
        "id": message_id,
        "threadId": thread_id,
        "labelIds": labels if labels is not None else ["INBOX", "UNREAD"],
        "payload": payload,
    }
    if internal_date is not None:
        raw["internalDate"] = internal_date
    return raw


def make_gmail_service(messages: dict[str, dict[str, Any]], pages: Optional[list[dict[str, Any]]] = None):
    """
    Mock Gmail v1 resource.

    `messages` maps id -> full message; a missing id makes get() fail.
    `pages` are successive list() responses.
    """
    service = MagicMock()
    resource = service.users.return_value.messages.return_value

    if pages is None:
        pages = [{"messages": [{"id": mid} for mid in messages]}]
    resource.list.side_effect = [MagicMock(execute=MagicMock(return_value=page)) for page in pages]

    def get(**kwargs):
        request = MagicMock()
        if kwargs["id"] in messages:
            request.execute.return_value = messages[kwargs["id"]]
        else:
            request.execute.side_effect = ConnectionError(f"fetch failed for {kwargs['id']}")
        return request

    resource.get.side_effect = get
    resource.modify.return_value.execute.return_value = {"id": "modified"}
    return service


def make_imap_record(uid: str = "101", **overrides) -> dict[str, Any]:
    """Build a raw record as returned by the IMAP protocol client."""
    record = {
        "uid": uid,
        "date": "Tue, 14 Nov 2023 22:13:20 +0000",
        "from": "Relay Sender <sender@relay.example.com>",
        "to": "inbox@example.org",
        "subject": "Delivery notice",
        "text": "Plain body",
        "html": "<p>Plain body</p>",
        "message_id": f"<{uid}@relay.example.com>",
        "in_reply_to": None,
        "references": [],
        "attachments": [],
    }
    record.update(overrides)
    return record


@pytest.fixture
def settings():
    """Settings with test key material and no .env lookup."""
    return SyncSettings(
        _env_file=None,
        email_encryption_key=TEST_ENCRYPTION_KEY,
        credential_vault_key=TEST_VAULT_KEY,
        max_fetch_concurrency=4,
    )


@pytest.fixture
def key_provider():
    return StaticKeyProvider(TEST_ENCRYPTION_KEY)


@pytest.fixture
def cipher(key_provider):
    return ImapCredentialCipher(key_provider)


@pytest.fixture
def vault(settings):
    return CredentialVault(settings=settings)


@pytest.fixture
def imap_account(cipher):
    """Stored record of a Mailgun relay account receiving over IMAP."""
    blob, iv = cipher.encrypt({"password": "relay-secret"})
    return {
        "id": "acct-imap-1",
        "email": "inbox@example.org",
        "provider": "mailgun",
        "organization_id": "org-1",
        "imap_config": {"host": "imap.example.org", "port": 993, "user": "inbox@example.org", "use_tls": True},
        "imap_credentials_encrypted": blob,
        "imap_credentials_iv": iv,
    }


@pytest.fixture
def gmail_account():
    return {
        "id": "acct-gmail-1",
        "email": "owner@gmail.com",
        "provider": "gmail",
        "organization_id": "org-1",
        "encrypted_tokens": "opaque-token-reference",
    }


@pytest.fixture
def token_broker():
    broker = MagicMock()
    broker.get_gmail_client = AsyncMock(return_value=MagicMock(name="gmail_service"))
    return broker


@pytest.fixture
def protocol_client():
    client = MagicMock()
    client.fetch_messages = AsyncMock(return_value=[])
    return client
