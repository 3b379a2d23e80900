"""Vault provisioner: one private vault per user, created lazily."""

from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from dataclasses import dataclass

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from .crypto import CredentialVault, generate_vault_password
from .db import Database, User, Vault
from .models import PrivateAccess, PublicAccess, VaultAccess, VaultType
from .settle import SettlePolicy
from .storage_client import StorageNetworkClient

logger = structlog.get_logger()


@dataclass
class ProvisionedVault:
    vault: Vault
    created: bool


def _password_context(user_id: uuid.UUID, vault_type: VaultType) -> str:
    return f"vault:{user_id}:{vault_type.value}"


class VaultProvisioner:
    """Creates or returns a user's vault.

    Persisted state is re-checked before every creation, under a per-user
    lock; a unique-key race on insert falls back to the row that won.
    """

    def __init__(
        self,
        db: Database,
        storage: StorageNetworkClient,
        credentials: CredentialVault,
        settle: SettlePolicy,
    ) -> None:
        self._db = db
        self._storage = storage
        self._credentials = credentials
        self._settle = settle
        self._locks: defaultdict[uuid.UUID, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get(self, user_id: uuid.UUID, vault_type: VaultType = VaultType.PRIVATE) -> Vault | None:
        async with self._db.session() as session:
            result = await session.execute(
                select(Vault).where(Vault.user_id == user_id, Vault.vault_type == vault_type.value)
            )
            return result.scalar_one_or_none()

    async def get_or_create_private(self, user: User) -> ProvisionedVault:
        async with self._locks[user.id]:
            existing = await self.get(user.id, VaultType.PRIVATE)
            if existing is not None:
                return ProvisionedVault(existing, created=False)
            return await self._create_private(user)

    async def _create_private(self, user: User) -> ProvisionedVault:
        password = generate_vault_password()
        log = logger.bind(user_id=str(user.id))
        log.info("vault_creating", vault_type=VaultType.PRIVATE.value)

        created = await self._storage.create_vault(f"{user.id}-private", password=password)
        share_key = await self._storage.derive_share_key(created.vault_id, password)

        vault = Vault(
            user_id=user.id,
            vault_type=VaultType.PRIVATE.value,
            vault_id=created.vault_id,
            root_container_id=created.root_container_id,
            password_encrypted=self._credentials.encrypt(
                password, context=_password_context(user.id, VaultType.PRIVATE)
            ),
            share_key=share_key,
            welcome_sent=False,
        )
        async with self._db.session() as session:
            session.add(vault)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                winner = await self.get(user.id, VaultType.PRIVATE)
                if winner is None:
                    raise
                log.warning(
                    "vault_creation_race",
                    orphaned_vault_id=created.vault_id,
                    vault_id=winner.vault_id,
                )
                return ProvisionedVault(winner, created=False)

        log.info("vault_created", vault_id=vault.vault_id, root_container_id=vault.root_container_id)
        await self._settle.wait(vault.vault_id, vault.root_container_id)
        return ProvisionedVault(vault, created=True)

    async def mark_welcome_sent(self, vault: Vault) -> None:
        async with self._db.session() as session:
            await session.execute(update(Vault).where(Vault.id == vault.id).values(welcome_sent=True))
            await session.commit()
        vault.welcome_sent = True

    def password_for(self, vault: Vault) -> str | None:
        """Decrypted vault password, or ``None`` for a public vault."""
        if vault.password_encrypted is None:
            return None
        return self._credentials.decrypt(
            vault.password_encrypted,
            context=_password_context(vault.user_id, VaultType(vault.vault_type)),
        )

    @staticmethod
    def access_for(vault: Vault) -> VaultAccess:
        if vault.vault_type == VaultType.PUBLIC.value or vault.password_encrypted is None:
            return PublicAccess()
        return PrivateAccess(encrypted_password=vault.password_encrypted, share_key=vault.share_key)
