"""ProcessedItem persistence shared by the poller and the processor."""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import DuplicateEntryError
from ..models import ArchiveReference, Envelope, ItemStatus
from .engine import Database
from .models import ProcessedItem, UploadRecord

logger = structlog.get_logger()


class ProcessedItemStore:
    """Row-level reads and writes for :class:`ProcessedItem`.

    The mailbox UID is the deduplication key; a UID with a row is never
    enqueued again by the poller.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    async def get(self, uid: int) -> ProcessedItem | None:
        async with self._db.session() as session:
            result = await session.execute(select(ProcessedItem).where(ProcessedItem.uid == uid))
            return result.scalar_one_or_none()

    async def exists(self, uid: int) -> bool:
        return await self.get(uid) is not None

    async def record_queued(self, uid: int, envelope: Envelope) -> ProcessedItem:
        """Insert the ``queued`` row for a freshly enqueued item.

        Raises :class:`DuplicateEntryError` if a row for *uid* already exists.
        """
        item = ProcessedItem(
            uid=uid,
            message_id=envelope.message_id,
            sender=envelope.sender,
            subject=envelope.subject,
            status=ItemStatus.QUEUED.value,
        )
        async with self._db.session() as session:
            session.add(item)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateEntryError(f"processed item for UID {uid} already exists") from exc
        return item

    async def mark_processing(self, uid: int, *, sender: str = "unknown") -> ProcessedItem:
        """Move the row to ``processing`` and count the attempt.

        A job whose row was never written (crash between enqueue and insert)
        gets one created here.
        """
        async with self._db.session() as session:
            result = await session.execute(select(ProcessedItem).where(ProcessedItem.uid == uid))
            item = result.scalar_one_or_none()
            if item is None:
                item = ProcessedItem(uid=uid, sender=sender, attempts=0)
                session.add(item)
            item.status = ItemStatus.PROCESSING.value
            item.attempts = (item.attempts or 0) + 1
            await session.commit()
            return item

    async def update_envelope(self, uid: int, envelope: Envelope) -> None:
        await self._update(
            uid,
            sender=envelope.sender,
            subject=envelope.subject,
            message_id=envelope.message_id,
        )

    async def set_container(self, uid: int, container_id: str, container_name: str) -> None:
        """Persist the leaf container as soon as it exists, so a retry reuses it."""
        await self._update(uid, container_id=container_id, container_name=container_name)

    async def set_archive(self, uid: int, ref: ArchiveReference) -> None:
        await self._update(
            uid,
            container_id=ref.container_id,
            container_name=ref.container_name,
            archive_entity_id=ref.entity_id,
            archive_access_key=ref.access_key,
        )

    async def mark_completed(self, uid: int, *, note: str | None = None) -> None:
        await self._update(
            uid,
            status=ItemStatus.COMPLETED.value,
            error_message=note,
            processed_at=datetime.now(UTC),
        )

    async def mark_failed(self, uid: int, error: str) -> None:
        await self._update(
            uid,
            status=ItemStatus.FAILED.value,
            error_message=error,
            processed_at=datetime.now(UTC),
        )

    async def _update(self, uid: int, **values: object) -> None:
        async with self._db.session() as session:
            result = await session.execute(select(ProcessedItem).where(ProcessedItem.uid == uid))
            item = result.scalar_one_or_none()
            if item is None:
                logger.warning("processed_item_missing", uid=uid, fields=sorted(values))
                return
            for key, value in values.items():
                setattr(item, key, value)
            await session.commit()

    async def record_upload(
        self,
        user_id: uuid.UUID,
        ref: ArchiveReference,
        *,
        size_bytes: int,
        content_type: str,
        message_id: str | None,
        on_insert: Callable[[AsyncSession], Awaitable[object]] | None = None,
    ) -> bool:
        """Append the :class:`UploadRecord` for *ref* unless it already exists.

        Keyed on the network entity id, so a retried job that already
        uploaded records (and bills) the object exactly once. *on_insert* runs
        in the same transaction as the insert, so a failure there leaves no
        row behind. Returns ``True`` when a row was written.
        """
        async with self._db.session() as session:
            result = await session.execute(select(UploadRecord.id).where(UploadRecord.entity_id == ref.entity_id))
            if result.first() is not None:
                return False
            session.add(
                UploadRecord(
                    user_id=user_id,
                    vault_id=ref.vault_id,
                    container_id=ref.container_id,
                    message_id=message_id,
                    file_name=ref.file_name,
                    size_bytes=size_bytes,
                    content_type=content_type,
                    entity_id=ref.entity_id,
                    transaction_id=ref.transaction_id,
                    access_key=ref.access_key,
                )
            )
            if on_insert is not None:
                await on_insert(session)
            await session.commit()
        return True
