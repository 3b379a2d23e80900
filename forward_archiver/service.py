"""ArchiverService: wires every component and runs poller and workers until shutdown."""

from __future__ import annotations

import asyncio
import signal
import time

import structlog

from .config import ArchiverConfig
from .credits import CreditAllocator
from .crypto import CredentialVault
from .db import Database, ProcessedItemStore
from .directory import AllowList, SenderDirectory
from .folders import FolderCache, FolderLock, LocalFolderLock, NullFolderLock
from .imap_client import AsyncImapClient
from .models import HealthSnapshot, WorkerStatus
from .notifications import Notifier, SmtpNotifier
from .poller import MailboxPoller
from .processor import ItemProcessor, WorkerPool
from .settle import build_settle_policy
from .storage_client import HttpStorageNetworkClient, StorageNetworkClient, load_wallet
from .usage import UsageLedger
from .vaults import VaultProvisioner
from .wallets import WalletService
from .work_queue import InMemoryWorkQueue, KafkaWorkQueue, WorkQueue

logger = structlog.get_logger()


def install_signal_handlers(shutdown_event: asyncio.Event) -> None:
    """Set *shutdown_event* on SIGTERM or SIGINT. Call from the running loop."""
    loop = asyncio.get_running_loop()

    def _handle(sig: signal.Signals) -> None:
        logger.info("shutdown_signal_received", signal=sig.name)
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _handle, sig)


def build_queue(config: ArchiverConfig) -> WorkQueue:
    if config.queue_backend == "memory":
        return InMemoryWorkQueue()
    return KafkaWorkQueue(config.kafka)


class ArchiverService:
    """The archiver process.

    The poller and the worker pool are independent services with their own
    mailbox sessions; they only meet through the work queue. Collaborators
    can be injected (tests, alternative backends); everything else is built
    from *config*.

    Shutdown order: stop the poller, let workers finish in-flight jobs, then
    close the queue, the workers' mailbox session, the storage client and
    the database.
    """

    def __init__(
        self,
        config: ArchiverConfig,
        *,
        database: Database | None = None,
        storage: StorageNetworkClient | None = None,
        notifier: Notifier | None = None,
        queue: WorkQueue | None = None,
        poller_mailbox: AsyncImapClient | None = None,
        worker_mailbox: AsyncImapClient | None = None,
    ) -> None:
        self.config = config
        self.status = WorkerStatus.STARTING
        self.start_time = time.monotonic()
        self._shutdown_event = asyncio.Event()

        self.db = database or Database(config.database)
        self.storage = storage or HttpStorageNetworkClient(config.storage)
        self.notifier = notifier or SmtpNotifier(config.smtp)
        self.queue = queue or build_queue(config)
        self._poller_mailbox = poller_mailbox or AsyncImapClient(config.imap)
        self._worker_mailbox = worker_mailbox or AsyncImapClient(config.imap)

        credentials = CredentialVault(config.encryption_key.get_secret_value())
        settle = build_settle_policy(config.settle, self.storage)
        folder_lock: FolderLock = LocalFolderLock() if config.worker_concurrency > 1 else NullFolderLock()
        master_wallet = load_wallet(config.storage.master_wallet_path) if config.storage.master_wallet_path else None

        self.items = ProcessedItemStore(self.db)
        self.directory = SenderDirectory(self.db, AllowList.parse(config.allowed_senders))
        self.usage = UsageLedger(self.db, config.billing)
        self.vaults = VaultProvisioner(self.db, self.storage, credentials, settle)
        self.folders = FolderCache(self.db, self.storage, settle, folder_lock)
        self.wallets = WalletService(self.db, self.storage, credentials, config.wallet)
        self.credits = CreditAllocator(
            self.db, self.storage, self.usage, config.wallet, master_wallet=master_wallet
        )

        self.processor = ItemProcessor(
            config,
            mailbox=self._worker_mailbox,
            items=self.items,
            directory=self.directory,
            usage=self.usage,
            vaults=self.vaults,
            folders=self.folders,
            wallets=self.wallets,
            credits=self.credits,
            storage=self.storage,
            settle=settle,
            notifier=self.notifier,
        )
        self.poller = MailboxPoller(config.imap, self._poller_mailbox, self.items, self.queue)
        self.workers = WorkerPool(self.queue, self.processor, concurrency=config.worker_concurrency)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Start all subsystems and run until SIGTERM/SIGINT or :meth:`shutdown`."""
        install_signal_handlers(self._shutdown_event)
        self.start_time = time.monotonic()
        logger.info(
            "archiver_starting",
            archiver=self.config.name,
            queue_backend=self.config.queue_backend,
            wallet_mode=self.config.wallet.mode,
            concurrency=self.config.worker_concurrency,
        )

        await self.db.create_all()
        await self.storage.start()
        await self.queue.start()

        self.status = WorkerStatus.RUNNING
        try:
            async with asyncio.TaskGroup() as tg:
                tg.create_task(self.poller.run())
                tg.create_task(self.workers.run())
                tg.create_task(self._await_shutdown())
        except* Exception:
            self.status = WorkerStatus.DEGRADED
            logger.exception("archiver_task_group_error", archiver=self.config.name)
        finally:
            self.status = WorkerStatus.STOPPING
            await self.queue.stop()
            await self._worker_mailbox.disconnect()
            await self.storage.stop()
            await self.db.dispose()
            self.status = WorkerStatus.STOPPED
            logger.info("archiver_stopped", archiver=self.config.name)

    def shutdown(self) -> None:
        self._shutdown_event.set()

    async def _await_shutdown(self) -> None:
        await self._shutdown_event.wait()
        logger.info("archiver_draining", in_flight=self.workers.in_flight)
        self.poller.stop()
        self.workers.stop()

    async def health_check(self) -> dict[str, object]:
        details: dict[str, object] = {}
        details.update(await self.poller.health_check())
        details.update(self.workers.health_check())
        details["queue_backend"] = self.config.queue_backend
        details["wallet_mode"] = self.config.wallet.mode
        snapshot = HealthSnapshot(
            name=self.config.name,
            status=self.status,
            uptime_seconds=time.monotonic() - self.start_time,
            details=details,
        )
        return snapshot.model_dump(mode="json")
