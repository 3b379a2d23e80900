"""Credit allocator: just-in-time credit lending to per-user wallets."""

from __future__ import annotations

import math
from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy import update

from .config import WalletConfig
from .db import CreditGrant, Database, User
from .errors import CreditAllocationError
from .models import GrantStatus
from .storage_client import StorageNetworkClient, Wallet
from .usage import UsageLedger
from .wallets import UserWallet

logger = structlog.get_logger()

WINC_PER_CREDIT = 10**12
BYTES_PER_GIB = 1024**3


def winc_for_bytes(size_bytes: int) -> int:
    """Storage price in winc, at one credit per GiB."""
    return math.ceil(size_bytes / BYTES_PER_GIB * WINC_PER_CREDIT)


class CreditAllocator:
    """Keeps a user's wallet funded from the master wallet.

    The lent amount covers the user's remaining free allowance at the
    estimated item size, and expires after ``grant_expiry_days``.
    """

    def __init__(
        self,
        db: Database,
        storage: StorageNetworkClient,
        usage: UsageLedger,
        config: WalletConfig,
        *,
        master_wallet: Wallet | None = None,
    ) -> None:
        self._db = db
        self._storage = storage
        self._usage = usage
        self._config = config
        self._master_wallet = master_wallet

    @property
    def estimated_item_winc(self) -> int:
        return winc_for_bytes(self._config.estimated_item_bytes)

    async def ensure_credit(self, user: User, wallet: UserWallet, required_winc: int) -> CreditGrant | None:
        """Lend credit if the wallet's balance is below *required_winc*.

        Returns the new grant, or ``None`` when the balance already covers it.
        A user with no free allowance left is lent one item's worth.
        """
        log = logger.bind(user_id=str(user.id), address=wallet.address)
        balance = await self._storage.get_balance(wallet.jwk)
        log.info("credit_balance_checked", balance_winc=balance, required_winc=required_winc)
        if balance >= required_winc:
            return None

        summary = await self._usage.summary(user.id)
        items = max(summary.free_items_remaining, 1)
        amount = winc_for_bytes(items * self._config.estimated_item_bytes)

        expiry = timedelta(days=self._config.grant_expiry_days)
        grant_id = await self._storage.share_credit(
            self._master_wallet,
            wallet.address,
            amount,
            expires_in_seconds=int(expiry.total_seconds()),
        )

        grant = CreditGrant(
            user_id=user.id,
            grant_id=grant_id,
            approved_amount=amount,
            status=GrantStatus.ACTIVE.value,
            expires_at=datetime.now(UTC) + expiry,
        )
        async with self._db.session() as session:
            session.add(grant)
            await session.commit()

        log.info("credit_shared", grant_id=grant_id, amount_winc=amount, credits=amount / WINC_PER_CREDIT)
        return grant

    async def revoke(self, user: User) -> int:
        """Revoke every active grant for *user*; returns how many were marked."""
        if not user.wallet_address:
            raise CreditAllocationError(f"User {user.email} has no wallet")

        await self._storage.revoke_credit(self._master_wallet, user.wallet_address)
        async with self._db.session() as session:
            result = await session.execute(
                update(CreditGrant)
                .where(CreditGrant.user_id == user.id, CreditGrant.status == GrantStatus.ACTIVE.value)
                .values(status=GrantStatus.REVOKED.value, revoked_at=datetime.now(UTC))
            )
            await session.commit()
        logger.info("credit_revoked", user_id=str(user.id), grants=result.rowcount)
        return result.rowcount
