"""Folder cache: year/month containers inside a vault.

The local ``folder_cache`` table is authoritative once a row exists; the
storage network's index is only consulted by the settle policy. Resolution
is read-cache, create-on-miss, re-read-on-conflict. That is safe for a
single writer; concurrent writers need a :class:`FolderLock` that actually
excludes (``LocalFolderLock`` inside one process, a distributed lock across
processes).
"""

from __future__ import annotations

import abc
import asyncio
import uuid
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .db import Database, FolderCacheEntry
from .models import FolderKind
from .settle import SettlePolicy
from .storage_client import StorageNetworkClient, Wallet

logger = structlog.get_logger()


def folder_key(user_id: uuid.UUID, vault_id: str, kind: FolderKind, year: int, month: int | None = None) -> str:
    return f"{user_id}:{vault_id}:{kind.value}:{year:04d}:{month or 0:02d}"


class FolderLock(abc.ABC):
    """Mutual exclusion keyed by folder (user, vault, year[, month])."""

    @abc.abstractmethod
    def hold(self, key: str) -> AbstractAsyncContextManager[None]: ...


class NullFolderLock(FolderLock):
    """No exclusion; correct only with one processing worker."""

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        yield


class LocalFolderLock(FolderLock):
    """Per-key :class:`asyncio.Lock`, for several workers in one process."""

    def __init__(self) -> None:
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        async with self._locks[key]:
            yield


class FolderCache:
    def __init__(
        self,
        db: Database,
        storage: StorageNetworkClient,
        settle: SettlePolicy,
        lock: FolderLock | None = None,
    ) -> None:
        self._db = db
        self._storage = storage
        self._settle = settle
        self._lock = lock or NullFolderLock()

    async def resolve_year(
        self,
        user_id: uuid.UUID,
        vault_id: str,
        root_container_id: str,
        year: int,
        *,
        password: str | None = None,
        wallet: Wallet | None = None,
    ) -> str:
        """Container id of the ``YYYY`` folder under the vault root."""
        return await self._resolve(
            user_id,
            vault_id,
            FolderKind.YEAR,
            year,
            None,
            parent_id=root_container_id,
            password=password,
            wallet=wallet,
        )

    async def resolve_month(
        self,
        user_id: uuid.UUID,
        vault_id: str,
        year_container_id: str,
        year: int,
        month: int,
        *,
        password: str | None = None,
        wallet: Wallet | None = None,
    ) -> str:
        """Container id of the ``MM`` folder under the year folder."""
        return await self._resolve(
            user_id,
            vault_id,
            FolderKind.MONTH,
            year,
            month,
            parent_id=year_container_id,
            password=password,
            wallet=wallet,
        )

    async def lookup(
        self, user_id: uuid.UUID, vault_id: str, kind: FolderKind, year: int, month: int | None = None
    ) -> FolderCacheEntry | None:
        key = folder_key(user_id, vault_id, kind, year, month)
        async with self._db.session() as session:
            result = await session.execute(select(FolderCacheEntry).where(FolderCacheEntry.cache_key == key))
            return result.scalar_one_or_none()

    async def _resolve(
        self,
        user_id: uuid.UUID,
        vault_id: str,
        kind: FolderKind,
        year: int,
        month: int | None,
        *,
        parent_id: str,
        password: str | None,
        wallet: Wallet | None,
    ) -> str:
        key = folder_key(user_id, vault_id, kind, year, month)
        name = f"{year:04d}" if kind is FolderKind.YEAR else f"{month:02d}"
        log = logger.bind(user_id=str(user_id), vault_id=vault_id, kind=kind.value, folder=name)

        async with self._lock.hold(key):
            cached = await self.lookup(user_id, vault_id, kind, year, month)
            if cached is not None:
                log.debug("folder_cache_hit", container_id=cached.container_id)
                return cached.container_id

            try:
                container_id = await self._storage.create_container(
                    vault_id, name, parent_id, password=password, wallet=wallet
                )
            except Exception:
                cached = await self.lookup(user_id, vault_id, kind, year, month)
                if cached is not None:
                    log.info("folder_cache_race_recovered", container_id=cached.container_id)
                    return cached.container_id
                raise

            entry = FolderCacheEntry(
                cache_key=key,
                user_id=user_id,
                vault_id=vault_id,
                kind=kind.value,
                name=name,
                year=year,
                month=month,
                parent_container_id=parent_id,
                container_id=container_id,
            )
            async with self._db.session() as session:
                session.add(entry)
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    winner = await self.lookup(user_id, vault_id, kind, year, month)
                    if winner is None:
                        raise
                    log.warning(
                        "folder_cache_insert_race",
                        orphaned_container_id=container_id,
                        container_id=winner.container_id,
                    )
                    return winner.container_id

            log.info("folder_created", container_id=container_id, parent_id=parent_id)
            await self._settle.wait(vault_id, container_id)
            return container_id
