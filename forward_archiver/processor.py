"""Item processor: the per-job archival pipeline and the worker pool running it.

Pipeline per job (each step's failure aborts the rest and goes to the retry
layer, unless noted)::

    mark processing -> fetch source -> sender checks (terminal)
    -> admission (blocked = completed) -> wallet credit -> size ceiling
    (exceeded = completed) -> temp file -> vault -> welcome mail
    -> year/month folders -> leaf container -> upload -> usage
    -> confirmation -> cleanup -> mark completed
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass

import structlog

from .archive import (
    ArchiveFile,
    archive_filename,
    item_date,
    leaf_container_name,
    remove_archive_file,
    write_archive_file,
)
from .config import ArchiverConfig
from .credits import CreditAllocator
from .db import ProcessedItemStore
from .directory import SenderDirectory, verify_sender_authentication
from .envelope import extract_envelope
from .errors import (
    ItemNotFoundError,
    NonRetryableError,
    QuotaExceededError,
    SenderAuthenticationError,
    SenderNotAuthorizedError,
)
from .folders import FolderCache
from .imap_client import AsyncImapClient
from .logging import bind_job_context, clear_job_context
from .models import ArchiveJob, ArchiveReference, ItemStatus
from .notifications import Notifier
from .retry import job_retrying
from .settle import SettlePolicy
from .storage_client import StorageNetworkClient
from .usage import UsageLedger
from .vaults import VaultProvisioner
from .wallets import WalletService
from .work_queue import Delivery, WorkQueue

logger = structlog.get_logger()


@dataclass
class JobOutcome:
    uid: int
    status: ItemStatus
    attempts: int
    error: str | None = None
    note: str | None = None
    # Set when the item had already reached a terminal state before this delivery.
    redelivered: bool = False


class ItemProcessor:
    """Runs the archival pipeline for one job, retrying per ``RetryConfig``."""

    def __init__(
        self,
        config: ArchiverConfig,
        *,
        mailbox: AsyncImapClient,
        items: ProcessedItemStore,
        directory: SenderDirectory,
        usage: UsageLedger,
        vaults: VaultProvisioner,
        folders: FolderCache,
        wallets: WalletService,
        credits: CreditAllocator,
        storage: StorageNetworkClient,
        settle: SettlePolicy,
        notifier: Notifier,
    ) -> None:
        self._config = config
        self._mailbox = mailbox
        self._items = items
        self._directory = directory
        self._usage = usage
        self._vaults = vaults
        self._folders = folders
        self._wallets = wallets
        self._credits = credits
        self._storage = storage
        self._settle = settle
        self._notifier = notifier

    async def process(self, job: ArchiveJob) -> JobOutcome:
        """Run *job* to a terminal outcome.

        Never raises for pipeline errors: the last error of an exhausted (or
        non-retryable) job comes back as a ``failed`` outcome.
        """
        attempt_number = 0
        try:
            async for attempt in job_retrying(self._config.retry):
                with attempt:
                    attempt_number = attempt.retry_state.attempt_number
                    return await self._attempt(job.uid, attempt_number)
        except Exception as exc:
            logger.error(
                "job_failed_permanently",
                uid=job.uid,
                attempts=attempt_number,
                error=str(exc),
                retryable=not isinstance(exc, NonRetryableError),
            )
            return JobOutcome(job.uid, ItemStatus.FAILED, attempt_number, error=str(exc))
        raise AssertionError("unreachable: retry loop exited without outcome")

    # ------------------------------------------------------------------
    # One attempt
    # ------------------------------------------------------------------

    async def _attempt(self, uid: int, attempt: int) -> JobOutcome:
        bind_job_context(uid=uid, attempt=attempt)
        archive: ArchiveFile | None = None
        existing = await self._items.get(uid)
        if existing is not None and existing.status == ItemStatus.COMPLETED.value:
            logger.info("job_already_completed")
            clear_job_context()
            return JobOutcome(uid, ItemStatus.COMPLETED, attempt, note="already completed", redelivered=True)
        if (
            existing is not None
            and existing.status == ItemStatus.FAILED.value
            and existing.attempts >= self._config.retry.max_attempts
        ):
            logger.info("job_already_failed", attempts=existing.attempts)
            clear_job_context()
            return JobOutcome(
                uid,
                ItemStatus.FAILED,
                existing.attempts,
                error=existing.error_message,
                note="already failed",
                redelivered=True,
            )

        item = await self._items.mark_processing(uid)
        sender, subject = item.sender, item.subject or ""
        try:
            await self._mailbox.ensure_connected()
            raw = await self._mailbox.fetch_source(uid)
            if raw is None:
                raise ItemNotFoundError(uid)

            envelope = extract_envelope(raw)
            sender, subject = envelope.sender, envelope.subject
            await self._items.update_envelope(uid, envelope)
            logger.info("item_fetched", sender=sender, subject=subject, size_bytes=len(raw))

            if self._config.enforce_sender_authentication:
                verify_sender_authentication(raw, sender)
            user = await self._directory.resolve(sender)
            log = logger.bind(user_id=str(user.id))

            try:
                await self._usage.check_admission(user)
            except QuotaExceededError as exc:
                summary = await self._usage.summary(user.id)
                await self._notify(self._notifier.send_quota_exceeded(sender, exc.reason, summary), "quota_exceeded")
                note = f"Upload blocked: {exc.reason}"
                await self._items.mark_completed(uid, note=note)
                return JobOutcome(uid, ItemStatus.COMPLETED, attempt, note=note)

            wallet = await self._wallets.get_or_create(user)
            if wallet is not None:
                await self._credits.ensure_credit(user, wallet, self._credits.estimated_item_winc)

            size = len(raw)
            limit = self._config.max_archive_bytes
            if size > limit:
                note = f"archive skipped: {size} bytes exceeds {limit} byte ceiling"
                log.warning("archive_size_exceeded", size_bytes=size, limit_bytes=limit)
                await self._notify(
                    self._notifier.send_size_exceeded(sender, subject, size, limit), "size_exceeded"
                )
                await self._items.mark_completed(uid, note=note)
                return JobOutcome(uid, ItemStatus.COMPLETED, attempt, note=note)

            moment = item_date(raw)
            archive = await write_archive_file(
                self._config.temp_dir, uid, archive_filename(moment, subject), raw
            )
            del raw

            provisioned = await self._vaults.get_or_create_private(user)
            vault = provisioned.vault
            password = self._vaults.password_for(vault)
            jwk = wallet.jwk if wallet is not None else None

            if not vault.welcome_sent:
                summary = await self._usage.summary(user.id)
                if await self._notify(
                    self._notifier.send_welcome(sender, vault.vault_id, vault.share_key, summary), "welcome"
                ):
                    await self._vaults.mark_welcome_sent(vault)

            year_id = await self._folders.resolve_year(
                user.id, vault.vault_id, vault.root_container_id, moment.year, password=password, wallet=jwk
            )
            month_id = await self._folders.resolve_month(
                user.id, vault.vault_id, year_id, moment.year, moment.month, password=password, wallet=jwk
            )

            current = await self._items.get(uid)
            if current is not None and current.container_id and current.container_name:
                leaf_id, leaf_name = current.container_id, current.container_name
                log.info("leaf_container_reused", container_id=leaf_id)
            else:
                leaf_name = leaf_container_name(moment, subject)
                leaf_id = await self._storage.create_container(
                    vault.vault_id, leaf_name, month_id, password=password, wallet=jwk
                )
                await self._items.set_container(uid, leaf_id, leaf_name)
                log.info("leaf_container_created", container_id=leaf_id, name=leaf_name)
                await self._settle.wait(vault.vault_id, leaf_id)

            if current is not None and current.archive_entity_id:
                ref = ArchiveReference(
                    vault_id=vault.vault_id,
                    container_id=leaf_id,
                    container_name=leaf_name,
                    entity_id=current.archive_entity_id,
                    file_name=archive.file_name,
                    access_key=current.archive_access_key,
                )
                log.info("archive_upload_reused", entity_id=ref.entity_id)
            else:
                result = await self._storage.upload_file(
                    vault.vault_id,
                    leaf_id,
                    archive.path,
                    file_name=archive.file_name,
                    content_type=archive.content_type,
                    password=password,
                    wallet=jwk,
                )
                ref = ArchiveReference(
                    vault_id=vault.vault_id,
                    container_id=leaf_id,
                    container_name=leaf_name,
                    entity_id=result.entity_id,
                    transaction_id=result.transaction_id,
                    file_name=archive.file_name,
                    access_key=result.access_key,
                )
                await self._items.set_archive(uid, ref)

            size_bytes = archive.size_bytes
            await self._items.record_upload(
                user.id,
                ref,
                size_bytes=size_bytes,
                content_type=archive.content_type,
                message_id=envelope.message_id,
                on_insert=lambda session: self._usage.record_item(user.id, size_bytes, session=session),
            )

            summary = await self._usage.summary(user.id)
            await self._notify(self._notifier.send_confirmation(sender, ref, subject, summary), "confirmation")

            await remove_archive_file(archive.path)
            archive = None
            await self._items.mark_completed(uid)
            log.info("item_archived", entity_id=ref.entity_id, container=leaf_name)
            return JobOutcome(uid, ItemStatus.COMPLETED, attempt)

        except Exception as exc:
            await self._items.mark_failed(uid, str(exc))
            logger.warning("item_attempt_failed", error=str(exc), error_type=type(exc).__name__)
            if self._is_final_failure(exc, attempt) and self._directory.is_allowed(sender):
                await self._notify(self._notifier.send_failure(sender, subject, str(exc), attempt), "failure")
            raise
        finally:
            if archive is not None:
                await remove_archive_file(archive.path)
            clear_job_context()

    def _is_final_failure(self, exc: Exception, attempt: int) -> bool:
        # Sender-check failures are never reported back to the sender.
        if isinstance(exc, (SenderNotAuthorizedError, SenderAuthenticationError)):
            return False
        if isinstance(exc, NonRetryableError):
            return True
        return attempt >= self._config.retry.max_attempts

    async def _notify(self, send: Awaitable[None], kind: str) -> bool:
        """Deliver a notification; a failed delivery is logged, not raised."""
        try:
            await send
        except Exception as exc:
            logger.warning("notification_failed", kind=kind, error=str(exc))
            return False
        return True


class WorkerPool:
    """Bounded-concurrency consumers of the work queue.

    :meth:`stop` lets every worker finish its current job before exiting;
    there is no mid-job cancellation.
    """

    def __init__(
        self,
        queue: WorkQueue,
        processor: ItemProcessor,
        *,
        concurrency: int = 1,
        receive_timeout: float = 1.0,
    ) -> None:
        self._queue = queue
        self._processor = processor
        self._concurrency = concurrency
        self._receive_timeout = receive_timeout
        self._stop_event = asyncio.Event()
        self.completed = 0
        self.failed = 0
        self.in_flight = 0

    async def run(self) -> None:
        logger.info("worker_pool_started", concurrency=self._concurrency)
        async with asyncio.TaskGroup() as tg:
            for index in range(self._concurrency):
                tg.create_task(self._worker(index))
        logger.info("worker_pool_stopped", completed=self.completed, failed=self.failed)

    def stop(self) -> None:
        self._stop_event.set()

    async def _worker(self, index: int) -> None:
        while not self._stop_event.is_set():
            delivery = await self._queue.get(self._receive_timeout)
            if delivery is None:
                continue
            self.in_flight += 1
            try:
                await self._handle(delivery)
            finally:
                self.in_flight -= 1

    async def _handle(self, delivery: Delivery) -> None:
        try:
            outcome = await self._processor.process(delivery.job)
        except Exception as exc:
            # Bookkeeping itself failed (e.g. store unavailable); retain the job.
            logger.exception("job_handling_error", uid=delivery.job.uid)
            outcome = JobOutcome(delivery.job.uid, ItemStatus.FAILED, 0, error=str(exc))

        if outcome.status == ItemStatus.FAILED:
            self.failed += 1
            if outcome.redelivered:
                logger.info("job_already_dead_lettered", uid=delivery.job.uid, attempts=outcome.attempts)
            else:
                await self._queue.dead_letter(
                    delivery, error=outcome.error or "unknown error", attempts=outcome.attempts
                )
        else:
            self.completed += 1
        await self._queue.ack(delivery)

    def health_check(self) -> dict[str, object]:
        return {
            "concurrency": self._concurrency,
            "jobs_in_flight": self.in_flight,
            "jobs_completed": self.completed,
            "jobs_failed": self.failed,
        }
