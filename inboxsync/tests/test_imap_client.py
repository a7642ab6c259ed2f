"""
Unit tests for the IMAP protocol client.

Parsing helpers are tested on literal RFC 822 bytes; the aioimaplib
connection is mocked.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from inboxsync.providers.email.base import AuthenticationError, TransportError
from inboxsync.providers.email.imap_client import (
    AioImapProtocolClient,
    ImapConnectionConfig,
    decode_header_value,
    iter_fetch_literals,
    parse_raw_message,
    parse_search_response,
)

SIMPLE_MESSAGE = (
    b"From: =?utf-8?q?J=C3=BCrgen?= <jurgen@example.com>\r\n"
    b"To: inbox@example.org\r\n"
    b"Subject: Status update\r\n"
    b"Date: Tue, 14 Nov 2023 22:13:20 +0000\r\n"
    b"Message-ID: <abc@example.com>\r\n"
    b"References: <root@example.com> <parent@example.com>\r\n"
    b"In-Reply-To: <parent@example.com>\r\n"
    b"Content-Type: text/plain; charset=utf-8\r\n"
    b"\r\n"
    b"All systems nominal.\r\n"
)

MULTIPART_MESSAGE = (
    b"From: sender@example.com\r\n"
    b"To: inbox@example.org\r\n"
    b"Subject: Invoice\r\n"
    b"MIME-Version: 1.0\r\n"
    b"Content-Type: multipart/mixed; boundary=\"XYZ\"\r\n"
    b"\r\n"
    b"--XYZ\r\n"
    b"Content-Type: text/html; charset=utf-8\r\n"
    b"\r\n"
    b"<p>Invoice attached</p>\r\n"
    b"--XYZ\r\n"
    b"Content-Type: application/pdf\r\n"
    b"Content-Disposition: attachment; filename=\"invoice.pdf\"\r\n"
    b"Content-Transfer-Encoding: base64\r\n"
    b"\r\n"
    b"JVBERi0xLjQK\r\n"
    b"--XYZ--\r\n"
)


class TestParsing:
    """Tests for response and message parsing."""

    def test_search_response(self):
        assert parse_search_response([b"12 3 7", b"SEARCH completed"]) == ["3", "7", "12"]
        assert parse_search_response([b"SEARCH 5 9"]) == ["5", "9"]
        assert parse_search_response([b""]) == []

    def test_fetch_literals_uid_first(self):
        lines = [
            b"1 FETCH (UID 101 BODY[] {10}",
            bytearray(b"message-01"),
            b")",
            b"2 FETCH (UID 102 BODY[] {10}",
            bytearray(b"message-02"),
            b")",
            b"Fetch completed.",
        ]
        assert list(iter_fetch_literals(lines)) == [("101", b"message-01"), ("102", b"message-02")]

    def test_fetch_literals_uid_after_literal(self):
        lines = [
            b"1 FETCH (BODY[] {10}",
            bytearray(b"message-01"),
            b" UID 101)",
        ]
        assert list(iter_fetch_literals(lines)) == [("101", b"message-01")]

    def test_decode_header_value(self):
        assert decode_header_value("=?utf-8?q?J=C3=BCrgen?=") == "Jürgen"
        assert decode_header_value(None) == ""

    def test_parse_simple_message(self):
        record = parse_raw_message("101", SIMPLE_MESSAGE)

        assert record["uid"] == "101"
        assert record["from"] == "Jürgen <jurgen@example.com>"
        assert record["subject"] == "Status update"
        assert record["date"] == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
        assert record["text"].strip() == "All systems nominal."
        assert record["html"] == ""
        assert record["message_id"] == "<abc@example.com>"
        assert record["in_reply_to"] == "<parent@example.com>"
        assert record["references"] == ["<root@example.com>", "<parent@example.com>"]
        assert record["attachments"] == []

    def test_parse_multipart_message(self):
        record = parse_raw_message("102", MULTIPART_MESSAGE)

        assert record["html"].strip() == "<p>Invoice attached</p>"
        assert record["text"] == ""
        assert record["date"] is None
        assert record["message_id"] == "<102@imap>"
        assert record["attachments"] == [{
            "filename": "invoice.pdf",
            "content_type": "application/pdf",
            "size": 9,
            "content_id": None,
        }]


def response(result="OK", lines=None):
    return MagicMock(result=result, lines=lines or [])


def mock_imap(search_lines, fetch_lines, login_result="OK"):
    client = MagicMock()
    client.wait_hello_from_server = AsyncMock()
    client.login = AsyncMock(return_value=response(login_result))
    client.examine = AsyncMock(return_value=response())
    client.uid_search = AsyncMock(return_value=response(lines=search_lines))
    client.uid = AsyncMock(return_value=response(lines=fetch_lines))
    client.logout = AsyncMock()
    return client


class TestAioImapProtocolClient:
    """Tests for the aioimaplib-backed client."""

    @pytest.fixture
    def config(self):
        return ImapConnectionConfig(host="imap.example.org", port=993, user="u", password="p")

    @pytest.mark.asyncio
    async def test_fetches_newest_messages(self, settings, config):
        imap = mock_imap(
            [b"1 2 3 4", b"SEARCH completed"],
            [b"1 FETCH (UID 3 BODY[] {10}", bytearray(SIMPLE_MESSAGE), b")",
             b"2 FETCH (UID 4 BODY[] {10}", bytearray(MULTIPART_MESSAGE), b")"],
        )
        with patch("inboxsync.providers.email.imap_client.aioimaplib.IMAP4_SSL", return_value=imap):
            records = await AioImapProtocolClient(settings).fetch_messages(config, 2)

        imap.examine.assert_awaited_once_with("INBOX")
        imap.uid.assert_awaited_once_with("fetch", "3,4", "(UID BODY.PEEK[])")
        assert [r["uid"] for r in records] == ["3", "4"]
        imap.logout.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_plain_connection(self, settings, config):
        config.use_tls = False
        imap = mock_imap([b"SEARCH completed"], [])
        with patch("inboxsync.providers.email.imap_client.aioimaplib.IMAP4", return_value=imap) as plain:
            assert await AioImapProtocolClient(settings).fetch_messages(config, 5) == []

        plain.assert_called_once()
        imap.uid.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_login_rejected(self, settings, config):
        imap = mock_imap([], [], login_result="NO")
        with patch("inboxsync.providers.email.imap_client.aioimaplib.IMAP4_SSL", return_value=imap):
            with pytest.raises(AuthenticationError):
                await AioImapProtocolClient(settings).fetch_messages(config, 5)
        imap.logout.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_socket_failure(self, settings, config):
        imap = mock_imap([], [])
        imap.wait_hello_from_server.side_effect = OSError("connection refused")
        with patch("inboxsync.providers.email.imap_client.aioimaplib.IMAP4_SSL", return_value=imap):
            with pytest.raises(TransportError):
                await AioImapProtocolClient(settings).fetch_messages(config, 5)
