"""Work queue carrying 'process item N' jobs from the poller to the workers.

Two backends share one interface: :class:`KafkaWorkQueue` (durable,
at-least-once; offsets are committed only after a job is finished) and
:class:`InMemoryWorkQueue` (single process, for development and tests).
"""

from __future__ import annotations

import abc
import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

import structlog
from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from pydantic import ValidationError

from .config import KafkaConfig
from .models import ArchiveJob, DeadLetterEnvelope

logger = structlog.get_logger()


@dataclass
class Delivery:
    """One received job plus the backend's handle for acknowledging it."""

    job: ArchiveJob
    token: Any = field(default=None, repr=False)


class WorkQueue(abc.ABC):
    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    @abc.abstractmethod
    async def enqueue(self, job: ArchiveJob) -> bool:
        """Publish *job*. Returns ``False`` if the backend dropped it as a duplicate."""

    @abc.abstractmethod
    async def get(self, timeout: float) -> Delivery | None:
        """Next job, or ``None`` if none arrived within *timeout* seconds."""

    @abc.abstractmethod
    async def ack(self, delivery: Delivery) -> None:
        """The job is finished (completed, or terminally failed and dead-lettered)."""

    @abc.abstractmethod
    async def dead_letter(self, delivery: Delivery, *, error: str, attempts: int) -> None:
        """Retain a permanently failed job for inspection."""


class InMemoryWorkQueue(WorkQueue):
    """asyncio.Queue backend. A UID already waiting in the queue is not added twice."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[ArchiveJob] = asyncio.Queue()
        self._pending: set[int] = set()
        self.failed: list[DeadLetterEnvelope] = []

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def enqueue(self, job: ArchiveJob) -> bool:
        if job.uid in self._pending:
            logger.debug("job_already_pending", uid=job.uid)
            return False
        self._pending.add(job.uid)
        await self._queue.put(job)
        return True

    async def get(self, timeout: float) -> Delivery | None:
        try:
            job = await asyncio.wait_for(self._queue.get(), timeout)
        except TimeoutError:
            return None
        return Delivery(job=job)

    async def ack(self, delivery: Delivery) -> None:
        self._pending.discard(delivery.job.uid)
        self._queue.task_done()

    async def dead_letter(self, delivery: Delivery, *, error: str, attempts: int) -> None:
        self.failed.append(DeadLetterEnvelope(job=delivery.job, error=error, attempts=attempts))
        logger.error("job_dead_lettered", uid=delivery.job.uid, error=error, attempts=attempts)


class KafkaWorkQueue(WorkQueue):
    """aiokafka backend.

    Jobs are keyed by UID. Auto-commit is off; each partition's committed
    offset only moves past a record once every earlier record fetched from
    that partition has been acknowledged, so a crash redelivers unfinished
    jobs instead of losing them.
    """

    def __init__(self, config: KafkaConfig) -> None:
        self._config = config
        self._producer: AIOKafkaProducer | None = None
        self._consumer: AIOKafkaConsumer | None = None
        self._fetch_lock = asyncio.Lock()
        self._in_flight: defaultdict[TopicPartition, set[int]] = defaultdict(set)
        self._acked_high: dict[TopicPartition, int] = {}

    async def start(self) -> None:
        self._producer = AIOKafkaProducer(
            bootstrap_servers=self._config.bootstrap_servers,
            acks=self._config.producer_acks,
        )
        self._consumer = AIOKafkaConsumer(
            self._config.jobs_topic,
            bootstrap_servers=self._config.bootstrap_servers,
            group_id=self._config.consumer_group,
            enable_auto_commit=False,
            auto_offset_reset=self._config.auto_offset_reset,
        )
        await self._producer.start()
        await self._consumer.start()
        logger.info(
            "kafka_work_queue_started",
            servers=self._config.bootstrap_servers,
            topic=self._config.jobs_topic,
        )

    async def stop(self) -> None:
        if self._consumer is not None:
            await self._consumer.stop()
            self._consumer = None
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None
        logger.info("kafka_work_queue_stopped")

    async def enqueue(self, job: ArchiveJob) -> bool:
        assert self._producer is not None, "Producer not started"
        await self._producer.send_and_wait(
            self._config.jobs_topic,
            value=job.model_dump_json().encode("utf-8"),
            key=str(job.uid).encode("utf-8"),
        )
        logger.debug("job_enqueued", topic=self._config.jobs_topic, uid=job.uid)
        return True

    async def get(self, timeout: float) -> Delivery | None:
        assert self._consumer is not None, "Consumer not started"
        async with self._fetch_lock:
            batch = await self._consumer.getmany(timeout_ms=int(timeout * 1000), max_records=1)
            for tp, records in batch.items():
                for record in records:
                    self._in_flight[tp].add(record.offset)
                    try:
                        job = ArchiveJob.model_validate_json(record.value)
                    except ValidationError:
                        logger.warning("job_invalid_payload", partition=tp.partition, offset=record.offset)
                        await self._commit(tp, record.offset)
                        continue
                    return Delivery(job=job, token=(tp, record.offset))
        return None

    async def ack(self, delivery: Delivery) -> None:
        tp, offset = delivery.token
        await self._commit(tp, offset)

    async def dead_letter(self, delivery: Delivery, *, error: str, attempts: int) -> None:
        assert self._producer is not None, "Producer not started"
        envelope = DeadLetterEnvelope(job=delivery.job, error=error, attempts=attempts)
        await self._producer.send_and_wait(
            self._config.dead_letter_topic,
            value=envelope.model_dump_json().encode("utf-8"),
            key=str(delivery.job.uid).encode("utf-8"),
        )
        logger.error(
            "job_dead_lettered",
            topic=self._config.dead_letter_topic,
            uid=delivery.job.uid,
            error=error,
            attempts=attempts,
        )

    async def _commit(self, tp: TopicPartition, offset: int) -> None:
        assert self._consumer is not None
        in_flight = self._in_flight[tp]
        in_flight.discard(offset)
        self._acked_high[tp] = max(self._acked_high.get(tp, 0), offset + 1)
        position = min(in_flight) if in_flight else self._acked_high[tp]
        await self._consumer.commit({tp: position})
