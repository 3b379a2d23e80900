"""Usage ledger: monthly item counters, cost accrual and admission control."""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import UTC, datetime

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import BillingConfig
from .db import Database, UsagePeriod, User
from .errors import QuotaExceededError
from .models import Plan, UsageSummary

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(UTC)


def period_bounds(moment: datetime) -> tuple[datetime, datetime]:
    """Calendar month containing *moment*, as ``[start, end)`` in UTC."""
    moment = moment.astimezone(UTC)
    start = datetime(moment.year, moment.month, 1, tzinfo=UTC)
    if moment.month == 12:
        end = datetime(moment.year + 1, 1, 1, tzinfo=UTC)
    else:
        end = datetime(moment.year, moment.month + 1, 1, tzinfo=UTC)
    return start, end


class UsageLedger:
    """Per-user monthly usage, one :class:`UsagePeriod` row per calendar month.

    A period is opened lazily the first time a user is seen in a month;
    earlier periods are simply never selected again.
    """

    def __init__(
        self,
        db: Database,
        config: BillingConfig,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._db = db
        self._config = config
        self._clock = clock

    async def current_period(self, user_id: uuid.UUID) -> UsagePeriod:
        async with self._db.session() as session:
            period = await self._get_or_create(session, user_id)
            await session.commit()
            return period

    async def check_admission(self, user: User) -> UsageSummary:
        """Return the current summary if *user* may archive another item.

        Raises :class:`QuotaExceededError` only under the ``block`` policy,
        for free-plan users who have used their whole allowance. Everyone
        else is admitted and billed per item beyond the allowance.
        """
        summary = await self.summary(user.id)
        if (
            self._config.over_quota_policy == "block"
            and user.plan == Plan.FREE.value
            and summary.items_this_month >= self._config.free_items_per_month
        ):
            reason = (
                f"Monthly limit reached: {summary.items_this_month} of "
                f"{self._config.free_items_per_month} free items used"
            )
            logger.info("upload_blocked", user_id=str(user.id), reason=reason)
            raise QuotaExceededError(reason)
        return summary

    async def record_item(
        self,
        user_id: uuid.UUID,
        size_bytes: int,
        *,
        session: AsyncSession | None = None,
    ) -> float:
        """Count one archived item of *size_bytes*; return the cost it accrued.

        With *session* the increment joins the caller's transaction and the
        caller commits. The period is expected to be open already (the
        admission check opens it), since losing a race to open it rolls the
        session back.
        """
        if session is None:
            async with self._db.session() as own:
                cost = await self.record_item(user_id, size_bytes, session=own)
                await own.commit()
            return cost

        period = await self._get_or_create(session, user_id)
        period.item_count += 1
        period.bytes_uploaded += size_bytes
        cost = self._config.cost_per_item if period.item_count > self._config.free_items_per_month else 0.0
        period.cost_usd += cost
        await session.flush()

        logger.info(
            "usage_recorded",
            user_id=str(user_id),
            items=period.item_count,
            cost_usd=period.cost_usd,
            size_bytes=size_bytes,
        )
        return cost

    async def summary(self, user_id: uuid.UUID) -> UsageSummary:
        period = await self.current_period(user_id)
        free = self._config.free_items_per_month
        return UsageSummary(
            items_this_month=period.item_count,
            free_items_used=min(period.item_count, free),
            free_items_remaining=max(0, free - period.item_count),
            paid_items_this_month=max(0, period.item_count - free),
            cost_this_month=round(period.cost_usd, 2),
            bytes_this_month=period.bytes_uploaded,
        )

    async def _get_or_create(self, session: AsyncSession, user_id: uuid.UUID) -> UsagePeriod:
        start, end = period_bounds(self._clock())
        stmt = select(UsagePeriod).where(
            UsagePeriod.user_id == user_id,
            UsagePeriod.year == start.year,
            UsagePeriod.month == start.month,
        )
        period = (await session.execute(stmt)).scalar_one_or_none()
        if period is not None:
            return period

        period = UsagePeriod(
            user_id=user_id,
            year=start.year,
            month=start.month,
            period_start=start,
            period_end=end,
            item_count=0,
            bytes_uploaded=0,
            cost_usd=0.0,
            billed=False,
        )
        session.add(period)
        try:
            await session.flush()
        except IntegrityError:
            # Another writer opened the period first; nothing else is pending here.
            await session.rollback()
            period = (await session.execute(stmt)).scalar_one()
        else:
            logger.info("usage_period_opened", user_id=str(user_id), year=start.year, month=start.month)
        return period
