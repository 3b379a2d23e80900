"""Settle policies: wait for the storage network's index after a write."""

from __future__ import annotations

import abc
import asyncio
import time

import structlog

from .config import SettleConfig
from .storage_client import StorageNetworkClient

logger = structlog.get_logger()


class SettlePolicy(abc.ABC):
    """Called after every vault/container write, before the new entity is referenced."""

    @abc.abstractmethod
    async def wait(self, vault_id: str, entity_id: str) -> None: ...


class FixedDelaySettle(SettlePolicy):
    def __init__(self, delay_seconds: float) -> None:
        self._delay = delay_seconds

    async def wait(self, vault_id: str, entity_id: str) -> None:
        if self._delay > 0:
            logger.debug("settle_wait", vault_id=vault_id, entity_id=entity_id, seconds=self._delay)
            await asyncio.sleep(self._delay)


class PollUntilIndexedSettle(SettlePolicy):
    """Query the index until the entity is visible or the timeout passes.

    A timeout is logged, not raised: the cache row is already written and
    is authoritative for later lookups.
    """

    def __init__(self, storage: StorageNetworkClient, *, interval_seconds: float, timeout_seconds: float) -> None:
        self._storage = storage
        self._interval = interval_seconds
        self._timeout = timeout_seconds

    async def wait(self, vault_id: str, entity_id: str) -> None:
        deadline = time.monotonic() + self._timeout
        attempts = 0
        while True:
            attempts += 1
            if await self._storage.is_indexed(vault_id, entity_id):
                logger.debug("settle_indexed", vault_id=vault_id, entity_id=entity_id, attempts=attempts)
                return
            if time.monotonic() + self._interval > deadline:
                logger.warning(
                    "settle_timeout",
                    vault_id=vault_id,
                    entity_id=entity_id,
                    attempts=attempts,
                    timeout_seconds=self._timeout,
                )
                return
            await asyncio.sleep(self._interval)


def build_settle_policy(config: SettleConfig, storage: StorageNetworkClient) -> SettlePolicy:
    if config.policy == "poll":
        return PollUntilIndexedSettle(
            storage,
            interval_seconds=config.poll_interval_seconds,
            timeout_seconds=config.poll_timeout_seconds,
        )
    return FixedDelaySettle(config.delay_seconds)
