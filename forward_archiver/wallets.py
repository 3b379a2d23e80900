"""Per-user wallets for multi-wallet mode."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from sqlalchemy import select

from .config import WalletConfig
from .crypto import CredentialVault
from .db import Database, User
from .storage_client import StorageNetworkClient, Wallet

logger = structlog.get_logger()


@dataclass
class UserWallet:
    address: str
    jwk: Wallet


class WalletService:
    """Generates, stores (encrypted) and loads a user's dedicated wallet.

    In ``single`` mode every upload is paid by the master wallet and
    :meth:`get_or_create` returns ``None``.
    """

    def __init__(
        self,
        db: Database,
        storage: StorageNetworkClient,
        credentials: CredentialVault,
        config: WalletConfig,
    ) -> None:
        self._db = db
        self._storage = storage
        self._credentials = credentials
        self._config = config

    @property
    def multi_wallet(self) -> bool:
        return self._config.mode == "multi"

    async def get_or_create(self, user: User) -> UserWallet | None:
        if not self.multi_wallet:
            return None

        existing = await self.get(user.id)
        if existing is not None:
            return existing

        logger.info("wallet_creating", user_id=str(user.id))
        generated = await self._storage.create_wallet()
        async with self._db.session() as session:
            row = await session.get(User, user.id)
            assert row is not None, f"user {user.id} vanished"
            row.wallet_address = generated.address
            row.wallet_key_encrypted = self._credentials.encrypt(
                json.dumps(generated.jwk), context=f"wallet:{user.id}"
            )
            row.wallet_seed_encrypted = self._credentials.encrypt(
                generated.seed_phrase, context=f"seed:{user.id}"
            )
            await session.commit()

        user.wallet_address = generated.address
        logger.info("wallet_created", user_id=str(user.id), address=generated.address)
        return UserWallet(address=generated.address, jwk=generated.jwk)

    async def get(self, user_id: uuid.UUID) -> UserWallet | None:
        row = await self._load(user_id)
        if row is None or not row.wallet_address or not row.wallet_key_encrypted:
            return None
        jwk = json.loads(self._credentials.decrypt(row.wallet_key_encrypted, context=f"wallet:{user_id}"))
        return UserWallet(address=row.wallet_address, jwk=jwk)

    async def export_seed_phrase(self, user_id: uuid.UUID) -> str | None:
        """Decrypt the recovery phrase and record that it left the system."""
        async with self._db.session() as session:
            row = await session.get(User, user_id)
            if row is None or not row.wallet_seed_encrypted:
                return None
            seed = self._credentials.decrypt(row.wallet_seed_encrypted, context=f"seed:{user_id}")
            row.seed_phrase_exported_at = datetime.now(UTC)
            await session.commit()
        logger.info("seed_phrase_exported", user_id=str(user_id))
        return seed

    async def _load(self, user_id: uuid.UUID) -> User | None:
        async with self._db.session() as session:
            result = await session.execute(select(User).where(User.id == user_id))
            return result.scalar_one_or_none()
