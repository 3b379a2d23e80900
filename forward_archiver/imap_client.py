"""Async IMAP client wrapping stdlib imaplib with asyncio.to_thread."""

from __future__ import annotations

import asyncio
import imaplib
from collections.abc import Callable
from datetime import datetime
from typing import Any, TypeVar

import structlog

from .config import ImapConfig
from .envelope import extract_envelope
from .errors import MailboxDisconnectedError, MailboxError
from .models import Envelope

logger = structlog.get_logger()

T = TypeVar("T")


class AsyncImapClient:
    """Async-friendly IMAP client for the monitored mailbox.

    All blocking ``imaplib`` operations are wrapped with
    ``asyncio.to_thread()`` to avoid blocking the event loop. Every command
    runs under one mailbox lock, so overlapping callers never interleave
    reads on the same connection.

    A dropped connection (``IMAP4.abort`` or a socket error) surfaces as
    :class:`MailboxDisconnectedError` and leaves the client disconnected.
    """

    def __init__(self, config: ImapConfig) -> None:
        self._config = config
        self._conn: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._conn is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Connect, login, and select the configured mailbox."""
        async with self._lock:
            try:
                await asyncio.to_thread(self._connect_sync)
            except (imaplib.IMAP4.error, OSError) as exc:
                self._conn = None
                raise MailboxDisconnectedError(f"IMAP connect failed: {exc}") from exc
        logger.info(
            "imap_connected",
            host=self._config.host,
            mailbox=self._config.mailbox,
        )

    def _connect_sync(self) -> None:
        if self._config.use_ssl:
            conn = imaplib.IMAP4_SSL(self._config.host, self._config.port)
        else:
            conn = imaplib.IMAP4(self._config.host, self._config.port)
        conn.login(self._config.username, self._config.password.get_secret_value())
        status, _ = conn.select(self._config.mailbox)
        if status != "OK":
            raise imaplib.IMAP4.error(f"cannot select mailbox {self._config.mailbox}")
        self._conn = conn

    async def ensure_connected(self) -> None:
        if self._conn is None:
            await self.connect()

    async def disconnect(self) -> None:
        """Close mailbox and logout."""
        if self._conn is not None:
            async with self._lock:
                await asyncio.to_thread(self._disconnect_sync)
                self._conn = None
            logger.info("imap_disconnected")

    def _disconnect_sync(self) -> None:
        assert self._conn is not None
        try:
            self._conn.close()
        except (imaplib.IMAP4.error, OSError):
            pass
        try:
            self._conn.logout()
        except (imaplib.IMAP4.error, OSError):
            pass

    async def is_connected(self) -> bool:
        """Check connection liveness with a NOOP command."""
        if self._conn is None:
            return False
        try:
            status, _ = await self._run(lambda conn: conn.noop())
            return status == "OK"
        except MailboxError:
            return False

    # ------------------------------------------------------------------
    # Mailbox operations
    # ------------------------------------------------------------------

    async def search_unseen(self, since: datetime) -> list[int]:
        """Return UIDs of unseen items received on or after *since*.

        IMAP date search is day-granular (not timestamp-granular).
        """
        criteria = f"(UNSEEN SINCE {since.strftime('%d-%b-%Y')})"
        status, data = await self._run(lambda conn: conn.uid("SEARCH", None, criteria))
        if status != "OK":
            raise MailboxError(f"UID SEARCH failed: {status}")
        if not data or not data[0]:
            return []
        return [int(uid) for uid in data[0].split()]

    async def fetch_envelope(self, uid: int) -> Envelope | None:
        """Fetch only the header block of *uid* and extract its envelope.

        Uses ``BODY.PEEK`` so the item stays unseen.
        """
        raw = await self._fetch(uid, "(BODY.PEEK[HEADER])")
        if raw is None:
            return None
        return extract_envelope(raw)

    async def fetch_source(self, uid: int) -> bytes | None:
        """Fetch the full raw source (headers, body, attachments) of *uid*."""
        return await self._fetch(uid, "(BODY.PEEK[])")

    async def mark_seen(self, uid: int) -> None:
        status, _ = await self._run(lambda conn: conn.uid("STORE", str(uid), "+FLAGS", "(\\Seen)"))
        if status != "OK":
            raise MailboxError(f"UID STORE failed for {uid}: {status}")
        logger.debug("imap_marked_seen", uid=uid)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _fetch(self, uid: int, parts: str) -> bytes | None:
        status, data = await self._run(lambda conn: conn.uid("FETCH", str(uid), parts))
        if status != "OK":
            raise MailboxError(f"UID FETCH failed for {uid}: {status}")
        return _first_literal(data)

    async def _run(self, command: Callable[[Any], T]) -> T:
        async with self._lock:
            conn = self._conn
            if conn is None:
                raise MailboxDisconnectedError("IMAP session is not connected")
            try:
                return await asyncio.to_thread(command, conn)
            except (imaplib.IMAP4.abort, OSError) as exc:
                self._conn = None
                logger.warning("imap_connection_lost", error=str(exc))
                raise MailboxDisconnectedError(str(exc)) from exc
            except imaplib.IMAP4.error as exc:
                raise MailboxError(str(exc)) from exc


def _first_literal(data: list[Any] | None) -> bytes | None:
    """Pick the message literal out of an imaplib FETCH response."""
    for part in data or []:
        if isinstance(part, tuple) and len(part) >= 2 and isinstance(part[1], bytes):
            return part[1]
    return None
