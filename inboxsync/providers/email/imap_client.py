"""
IMAP Protocol Client

Fetches the newest messages of one mailbox over IMAP and parses them into
raw records consumed by the IMAP sync provider.

Non-destructive: the mailbox is opened read-only (EXAMINE) and bodies are
fetched with BODY.PEEK so no \\Seen flag is set.
"""

import email
import email.header
import email.utils
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from email.message import Message
from typing import Any, Optional, Protocol

import aioimaplib

from inboxsync.core.config import SyncSettings, get_settings
from inboxsync.providers.email.base import (
    AuthenticationError,
    SyncProviderError,
    TransportError,
)

logger = logging.getLogger(__name__)

_UID_PATTERN = re.compile(r"UID\s+(\d+)")


@dataclass
class ImapConnectionConfig:
    """Merged connection descriptor: stored parameters plus decrypted secret."""
    host: str
    port: int
    user: str
    password: str
    use_tls: bool = True
    mailbox: str = "INBOX"

    def to_dict(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": "***",
            "use_tls": self.use_tls,
            "mailbox": self.mailbox,
        }


class ImapProtocolClient(Protocol):
    """Wire-level IMAP access used by the sync provider."""

    async def fetch_messages(self, config: ImapConnectionConfig, limit: int) -> list[dict[str, Any]]:
        ...


class AioImapProtocolClient:
    """IMAP client built on aioimaplib."""

    def __init__(self, settings: Optional[SyncSettings] = None):
        self.settings = settings or get_settings()

    async def fetch_messages(self, config: ImapConnectionConfig, limit: int) -> list[dict[str, Any]]:
        """
        Fetch the newest `limit` messages from the configured mailbox.

        Raises:
            AuthenticationError: If login is rejected
            TransportError: On any other connection or protocol failure
        """
        client = None
        try:
            client = await self._connect(config)
            return await self._fetch_newest(client, config, limit)
        except SyncProviderError:
            raise
        except Exception as e:
            logger.error(f"IMAP fetch error for {config.host}: {e}")
            raise TransportError(f"IMAP fetch from {config.host} failed: {e}") from e
        finally:
            if client is not None:
                await self._logout(client)

    async def _connect(self, config: ImapConnectionConfig) -> aioimaplib.IMAP4:
        timeout = self.settings.imap_timeout_seconds
        if config.use_tls:
            client = aioimaplib.IMAP4_SSL(host=config.host, port=config.port, timeout=timeout)
        else:
            client = aioimaplib.IMAP4(host=config.host, port=config.port, timeout=timeout)

        await client.wait_hello_from_server()

        response = await client.login(config.user, config.password)
        if response.result != "OK":
            logger.error(f"IMAP login failed for {config.user}@{config.host}: {response.result}")
            raise AuthenticationError(f"IMAP login rejected for {config.user}")

        logger.info(f"Connected to IMAP server: {config.host}")
        return client

    async def _logout(self, client: aioimaplib.IMAP4):
        try:
            await client.logout()
        except Exception as e:
            logger.warning(f"Error during IMAP logout: {e}")

    async def _fetch_newest(
        self,
        client: aioimaplib.IMAP4,
        config: ImapConnectionConfig,
        limit: int,
    ) -> list[dict[str, Any]]:
        response = await client.examine(config.mailbox)
        if response.result != "OK":
            raise TransportError(f"Could not open mailbox {config.mailbox}")

        response = await client.uid_search("ALL")
        if response.result != "OK":
            raise TransportError(f"IMAP search failed in {config.mailbox}")

        uids = parse_search_response(response.lines)
        if not uids:
            return []

        newest = uids[-limit:]
        response = await client.uid("fetch", ",".join(newest), "(UID BODY.PEEK[])")
        if response.result != "OK":
            raise TransportError(f"IMAP fetch failed for {len(newest)} messages")

        records = []
        for uid, raw_bytes in iter_fetch_literals(response.lines):
            try:
                records.append(parse_raw_message(uid, raw_bytes))
            except (TypeError, ValueError, LookupError) as e:
                logger.warning(f"Error parsing IMAP message {uid}: {e}")

        logger.info(f"Fetched {len(records)} messages from {config.mailbox}")
        return records


def parse_search_response(lines: list[Any]) -> list[str]:
    """Extract UIDs from a SEARCH response, oldest first."""
    uids: list[str] = []
    for line in lines:
        text = line.decode(errors="replace") if isinstance(line, (bytes, bytearray)) else str(line)
        tokens = text.split()
        if tokens and tokens[0].upper() == "SEARCH":
            tokens = tokens[1:]
        if tokens and all(t.isdigit() for t in tokens):
            uids.extend(tokens)
    return sorted(uids, key=int)


def iter_fetch_literals(lines: list[Any]):
    """
    Pair each fetched message literal with its UID.

    Servers may report the UID before or after the literal, so a record is
    emitted once both halves have been seen.
    """
    uid: Optional[str] = None
    literal: Optional[bytes] = None
    for line in lines:
        if isinstance(line, bytearray):
            literal = bytes(line)
        else:
            text = line.decode(errors="replace") if isinstance(line, bytes) else str(line)
            match = _UID_PATTERN.search(text)
            if "FETCH" in text:
                uid = match.group(1) if match else None
                literal = None
            elif match and uid is None:
                uid = match.group(1)

        if uid is not None and literal is not None:
            yield uid, literal
            uid, literal = None, None


def decode_header_value(value: Optional[str]) -> str:
    """Decode a MIME-encoded header."""
    if not value:
        return ""

    parts = []
    for content, charset in email.header.decode_header(value):
        if isinstance(content, bytes):
            try:
                parts.append(content.decode(charset or "utf-8"))
            except (LookupError, UnicodeDecodeError):
                parts.append(content.decode("utf-8", errors="replace"))
        else:
            parts.append(content)
    return "".join(parts)


def _decode_payload(part: Message) -> str:
    payload = part.get_payload(decode=True)
    if not payload:
        return ""
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def extract_bodies(msg: Message) -> tuple[str, str]:
    """Return the first (plain, html) bodies, skipping attachments."""
    body_plain = ""
    body_html = ""

    for part in msg.walk():
        if part.is_multipart():
            continue
        if "attachment" in str(part.get("Content-Disposition", "")):
            continue

        content_type = part.get_content_type()
        if content_type == "text/plain" and not body_plain:
            body_plain = _decode_payload(part)
        elif content_type == "text/html" and not body_html:
            body_html = _decode_payload(part)

    return body_plain, body_html


def extract_attachment_records(msg: Message) -> list[dict[str, Any]]:
    attachments = []
    if not msg.is_multipart():
        return attachments

    for part in msg.walk():
        disposition = str(part.get("Content-Disposition", ""))
        filename = part.get_filename()
        if "attachment" not in disposition and not filename:
            continue

        payload = part.get_payload(decode=True)
        attachments.append({
            "filename": decode_header_value(filename) if filename else "attachment",
            "content_type": part.get_content_type(),
            "size": len(payload) if payload else 0,
            "content_id": part.get("Content-ID"),
        })
    return attachments


def parse_raw_message(uid: str, raw_bytes: bytes) -> dict[str, Any]:
    """Parse an RFC 822 message into a raw IMAP record."""
    msg = email.message_from_bytes(raw_bytes)

    date: Optional[datetime] = None
    date_header = msg.get("Date")
    if date_header:
        try:
            date = email.utils.parsedate_to_datetime(date_header)
        except (TypeError, ValueError):
            date = None

    body_plain, body_html = extract_bodies(msg)

    return {
        "uid": uid,
        "date": date,
        "from": decode_header_value(msg.get("From")),
        "to": decode_header_value(msg.get("To")),
        "subject": decode_header_value(msg.get("Subject")) or "(no subject)",
        "text": body_plain,
        "html": body_html,
        "message_id": (msg.get("Message-ID") or "").strip() or f"<{uid}@imap>",
        "in_reply_to": (msg.get("In-Reply-To") or "").strip() or None,
        "references": (msg.get("References") or "").split(),
        "attachments": extract_attachment_records(msg),
    }
