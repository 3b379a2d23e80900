"""Tests for forward_archiver.imap_client."""

from __future__ import annotations

import imaplib
from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest

from forward_archiver.config import ImapConfig
from forward_archiver.errors import MailboxDisconnectedError, MailboxError
from forward_archiver.imap_client import AsyncImapClient


@pytest.fixture
def client(imap_config: ImapConfig) -> AsyncImapClient:
    return AsyncImapClient(imap_config)


def _make_mock_imap(
    *,
    search_uids: list[bytes] | None = None,
    fetch_data: dict[bytes, bytes] | None = None,
) -> MagicMock:
    """Create a mock imaplib.IMAP4_SSL with programmed responses."""
    mock = MagicMock()
    mock.login.return_value = ("OK", [b"Logged in"])
    mock.select.return_value = ("OK", [b"1"])
    mock.close.return_value = ("OK", [b"Closed"])
    mock.logout.return_value = ("BYE", [b"Bye"])
    mock.noop.return_value = ("OK", [b""])

    uid_data = b" ".join(search_uids) if search_uids else b""
    mock.uid.side_effect = _make_uid_handler(uid_data, fetch_data or {})
    return mock


def _make_uid_handler(search_data: bytes, fetch_data: dict[bytes, bytes]):
    """Build a side_effect function for mock.uid() that handles SEARCH, FETCH and STORE."""

    def handler(command: str, *args):
        if command == "SEARCH":
            return ("OK", [search_data])
        elif command == "FETCH":
            uid = args[0].encode() if isinstance(args[0], str) else args[0]
            raw = fetch_data.get(uid, b"")
            if raw:
                return ("OK", [(b"1 (UID %s BODY[] {%d})" % (uid, len(raw)), raw), b")"])
            return ("OK", [None])
        elif command == "STORE":
            return ("OK", [b"1 (FLAGS (\\Seen))"])
        return ("OK", [b""])

    return handler


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_ssl(self, client: AsyncImapClient):
        with patch("forward_archiver.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            MockSSL.return_value = mock_conn
            await client.connect()
            MockSSL.assert_called_once_with("imap.test.com", 993)
            mock_conn.login.assert_called_once_with("testuser", "testpass")
            mock_conn.select.assert_called_once_with("INBOX")
            assert client.connected

    @pytest.mark.asyncio
    async def test_connect_non_ssl(self):
        config = ImapConfig(host="imap.test.com", port=143, use_ssl=False, username="u", password="p")
        client = AsyncImapClient(config)
        with patch("forward_archiver.imap_client.imaplib.IMAP4") as MockIMAP:
            MockIMAP.return_value = _make_mock_imap()
            await client.connect()
            MockIMAP.assert_called_once_with("imap.test.com", 143)

    @pytest.mark.asyncio
    async def test_login_failure(self, client: AsyncImapClient):
        with patch("forward_archiver.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            mock_conn.login.side_effect = imaplib.IMAP4.error("bad credentials")
            MockSSL.return_value = mock_conn
            with pytest.raises(MailboxDisconnectedError, match="bad credentials"):
                await client.connect()
            assert not client.connected

    @pytest.mark.asyncio
    async def test_socket_failure(self, client: AsyncImapClient):
        with patch("forward_archiver.imap_client.imaplib.IMAP4_SSL", side_effect=OSError("refused")):
            with pytest.raises(MailboxDisconnectedError):
                await client.connect()

    @pytest.mark.asyncio
    async def test_select_failure(self, client: AsyncImapClient):
        with patch("forward_archiver.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            mock_conn.select.return_value = ("NO", [b"no such mailbox"])
            MockSSL.return_value = mock_conn
            with pytest.raises(MailboxDisconnectedError, match="cannot select"):
                await client.connect()

    @pytest.mark.asyncio
    async def test_disconnect(self, client: AsyncImapClient):
        with patch("forward_archiver.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            MockSSL.return_value = mock_conn
            await client.connect()
            await client.disconnect()
            mock_conn.close.assert_called_once()
            mock_conn.logout.assert_called_once()
            assert not client.connected

    @pytest.mark.asyncio
    async def test_disconnect_when_not_connected(self, client: AsyncImapClient):
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_ensure_connected_only_once(self, client: AsyncImapClient):
        with patch("forward_archiver.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            MockSSL.return_value = _make_mock_imap()
            await client.ensure_connected()
            await client.ensure_connected()
            MockSSL.assert_called_once()


class TestMailboxOperations:
    @pytest.mark.asyncio
    async def test_search_unseen(self, client: AsyncImapClient):
        with patch("forward_archiver.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap(search_uids=[b"5", b"10"])
            MockSSL.return_value = mock_conn
            await client.connect()
            uids = await client.search_unseen(datetime(2025, 3, 3, tzinfo=UTC))

        assert uids == [5, 10]
        mock_conn.uid.assert_called_once_with("SEARCH", None, "(UNSEEN SINCE 03-Mar-2025)")

    @pytest.mark.asyncio
    async def test_search_empty(self, client: AsyncImapClient):
        with patch("forward_archiver.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            MockSSL.return_value = _make_mock_imap(search_uids=[])
            await client.connect()
            assert await client.search_unseen(datetime(2025, 3, 3, tzinfo=UTC)) == []

    @pytest.mark.asyncio
    async def test_search_not_connected(self, client: AsyncImapClient):
        with pytest.raises(MailboxDisconnectedError):
            await client.search_unseen(datetime(2025, 3, 3, tzinfo=UTC))

    @pytest.mark.asyncio
    async def test_fetch_envelope_peeks_headers(self, client: AsyncImapClient, plain_eml_bytes: bytes):
        header_block = plain_eml_bytes.split(b"\n\n", 1)[0] + b"\n\n"
        with patch("forward_archiver.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap(fetch_data={b"5": header_block})
            MockSSL.return_value = mock_conn
            await client.connect()
            envelope = await client.fetch_envelope(5)

        assert envelope.sender == "a@x.com"
        assert envelope.subject == "Quarterly Report"
        mock_conn.uid.assert_called_once_with("FETCH", "5", "(BODY.PEEK[HEADER])")

    @pytest.mark.asyncio
    async def test_fetch_source(self, client: AsyncImapClient, plain_eml_bytes: bytes):
        with patch("forward_archiver.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap(fetch_data={b"5": plain_eml_bytes})
            MockSSL.return_value = mock_conn
            await client.connect()
            assert await client.fetch_source(5) == plain_eml_bytes
        mock_conn.uid.assert_called_once_with("FETCH", "5", "(BODY.PEEK[])")

    @pytest.mark.asyncio
    async def test_fetch_missing_uid(self, client: AsyncImapClient):
        with patch("forward_archiver.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            MockSSL.return_value = _make_mock_imap()
            await client.connect()
            assert await client.fetch_source(99) is None
            assert await client.fetch_envelope(99) is None

    @pytest.mark.asyncio
    async def test_mark_seen(self, client: AsyncImapClient):
        with patch("forward_archiver.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            MockSSL.return_value = mock_conn
            await client.connect()
            await client.mark_seen(5)
        mock_conn.uid.assert_called_once_with("STORE", "5", "+FLAGS", "(\\Seen)")

    @pytest.mark.asyncio
    async def test_command_error_keeps_connection(self, client: AsyncImapClient):
        with patch("forward_archiver.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            mock_conn.uid.side_effect = imaplib.IMAP4.error("BAD command")
            MockSSL.return_value = mock_conn
            await client.connect()
            with pytest.raises(MailboxError):
                await client.mark_seen(5)
            assert client.connected

    @pytest.mark.asyncio
    async def test_abort_drops_connection(self, client: AsyncImapClient):
        with patch("forward_archiver.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            mock_conn.uid.side_effect = imaplib.IMAP4.abort("socket closed")
            MockSSL.return_value = mock_conn
            await client.connect()
            with pytest.raises(MailboxDisconnectedError):
                await client.fetch_source(5)
            assert not client.connected


class TestIsConnected:
    @pytest.mark.asyncio
    async def test_not_connected(self, client: AsyncImapClient):
        assert await client.is_connected() is False

    @pytest.mark.asyncio
    async def test_noop_ok(self, client: AsyncImapClient):
        with patch("forward_archiver.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            MockSSL.return_value = _make_mock_imap()
            await client.connect()
            assert await client.is_connected() is True

    @pytest.mark.asyncio
    async def test_noop_failure(self, client: AsyncImapClient):
        with patch("forward_archiver.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            mock_conn.noop.side_effect = imaplib.IMAP4.abort("gone")
            MockSSL.return_value = mock_conn
            await client.connect()
            assert await client.is_connected() is False
