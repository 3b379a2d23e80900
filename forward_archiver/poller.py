"""Mailbox poller: find new unseen items and hand them to the work queue."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog

from .config import ImapConfig
from .db import ProcessedItemStore
from .errors import DuplicateEntryError, MailboxDisconnectedError, MailboxError
from .imap_client import AsyncImapClient
from .models import ArchiveJob
from .work_queue import WorkQueue

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(UTC)


async def wait_or_stop(stop_event: asyncio.Event, seconds: float) -> bool:
    """Sleep up to *seconds*; return ``True`` if *stop_event* fired first."""
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except TimeoutError:
        return False
    return True


class MailboxPoller:
    """Owns its own mailbox session and polls it on a fixed interval.

    Per new UID the order is: envelope fetch, enqueue, ``queued`` row,
    then the ``\\Seen`` flag. A crash before the row is written leaves the
    item unseen for the next cycle; a crash after it is absorbed by the
    row check. Poll-cycle errors are logged and never end the loop.
    """

    def __init__(
        self,
        config: ImapConfig,
        mailbox: AsyncImapClient,
        items: ProcessedItemStore,
        queue: WorkQueue,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config
        self._mailbox = mailbox
        self._items = items
        self._queue = queue
        self._clock = clock
        self._stop_event = asyncio.Event()
        self._ever_connected = False
        self._last_poll_time: datetime | None = None
        self._items_queued = 0
        self._poll_errors = 0
        self._reconnects = 0

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Poll until :meth:`stop` is called."""
        logger.info("poller_started", host=self._config.host, mailbox=self._config.mailbox)
        try:
            while not self._stop_event.is_set():
                if not self._mailbox.connected:
                    await self._reconnect()
                    continue

                try:
                    await self.poll_once()
                except MailboxDisconnectedError:
                    logger.warning("poll_cycle_disconnected")
                    continue
                except Exception:
                    self._poll_errors += 1
                    logger.exception("poll_cycle_failed")

                await wait_or_stop(self._stop_event, self._config.poll_interval_seconds)
        finally:
            await self._mailbox.disconnect()
            logger.info("poller_stopped", items_queued=self._items_queued)

    def stop(self) -> None:
        self._stop_event.set()

    async def _reconnect(self) -> None:
        """Connect, backing off through the configured delays.

        The first connect of the process is immediate; every later attempt
        waits. The delay schedule restarts after a successful connect.
        """
        delays = self._config.reconnect_delays_seconds or [5.0]
        attempt = 0
        immediate = not self._ever_connected
        while not self._stop_event.is_set():
            if not immediate:
                delay = delays[min(attempt, len(delays) - 1)]
                attempt += 1
                logger.info("imap_reconnect_scheduled", delay_seconds=delay, attempt=attempt)
                if await wait_or_stop(self._stop_event, delay):
                    return
            immediate = False
            try:
                await self._mailbox.connect()
            except MailboxError as exc:
                logger.warning("imap_connect_failed", error=str(exc), attempt=attempt)
                continue
            if self._ever_connected:
                self._reconnects += 1
            self._ever_connected = True
            return

    # ------------------------------------------------------------------
    # Poll cycle
    # ------------------------------------------------------------------

    async def poll_once(self) -> int:
        """Run one poll cycle; return how many items were enqueued."""
        since = self._clock() - timedelta(days=self._config.search_days)
        uids = await self._mailbox.search_unseen(since)
        self._last_poll_time = self._clock()
        logger.debug("poll_search_complete", unseen=len(uids))

        enqueued = 0
        for uid in uids:
            if await self._items.exists(uid):
                # Recorded earlier but never flagged; flag it so later searches skip it.
                logger.debug("poll_item_already_known", uid=uid)
                await self._mailbox.mark_seen(uid)
                continue

            envelope = await self._mailbox.fetch_envelope(uid)
            if envelope is None:
                logger.warning("poll_envelope_missing", uid=uid)
                continue

            await self._queue.enqueue(ArchiveJob(uid=uid))
            try:
                await self._items.record_queued(uid, envelope)
            except DuplicateEntryError:
                logger.info("poll_item_recorded_concurrently", uid=uid)
            await self._mailbox.mark_seen(uid)

            enqueued += 1
            self._items_queued += 1
            logger.info("item_queued", uid=uid, sender=envelope.sender, subject=envelope.subject)

        return enqueued

    async def health_check(self) -> dict[str, object]:
        connected = await self._mailbox.is_connected()
        return {
            "imap_connected": connected,
            "imap_host": self._config.host,
            "imap_mailbox": self._config.mailbox,
            "last_poll_time": (
                self._last_poll_time.isoformat() if self._last_poll_time else None
            ),
            "items_queued": self._items_queued,
            "poll_errors": self._poll_errors,
            "reconnects": self._reconnects,
        }
