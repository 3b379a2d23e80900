"""Sender directory: allow-list enforcement and lazy user records."""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .db import Database, User
from .envelope import authentication_results, normalize_address
from .errors import SenderAuthenticationError, SenderNotAuthorizedError
from .models import Plan

logger = structlog.get_logger()


@dataclass(frozen=True)
class AllowList:
    """Exact addresses plus ``*@domain`` wildcards, compared lower-case."""

    addresses: frozenset[str] = field(default_factory=frozenset)
    domains: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def parse(cls, raw: str) -> AllowList:
        addresses: set[str] = set()
        domains: set[str] = set()
        for entry in raw.split(","):
            entry = entry.strip().lower()
            if not entry:
                continue
            if entry.startswith("*@"):
                domains.add(entry[2:])
            else:
                addresses.add(entry)
        return cls(frozenset(addresses), frozenset(domains))

    def matches(self, address: str) -> bool:
        address = normalize_address(address)
        if not address:
            return False
        if address in self.addresses:
            return True
        _, _, domain = address.rpartition("@")
        return bool(domain) and domain in self.domains

    def __len__(self) -> int:
        return len(self.addresses) + len(self.domains)


class SenderDirectory:
    """Resolves a mail address to its :class:`User`, creating it on first sight."""

    def __init__(self, db: Database, allow_list: AllowList) -> None:
        self._db = db
        self._allow_list = allow_list

    def is_allowed(self, address: str) -> bool:
        return self._allow_list.matches(address)

    async def resolve(self, address: str) -> User:
        """Return the user for *address*.

        Raises :class:`SenderNotAuthorizedError` if the address is not on the
        allow-list; no row is written in that case.
        """
        email = normalize_address(address)
        if not self._allow_list.matches(email):
            logger.warning("sender_not_authorized", sender=email or address)
            raise SenderNotAuthorizedError(email or address)

        user = await self.get(email)
        if user is not None:
            return user

        async with self._db.session() as session:
            user = User(email=email, plan=Plan.FREE.value)
            session.add(user)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await self.get(email)
                if existing is None:
                    raise
                return existing
        logger.info("user_created", user_id=str(user.id), email=email)
        return user

    async def get(self, address: str) -> User | None:
        async with self._db.session() as session:
            result = await session.execute(select(User).where(User.email == normalize_address(address)))
            return result.scalar_one_or_none()


def verify_sender_authentication(raw_bytes: bytes, sender: str) -> dict[str, str]:
    """Require ``dkim=pass`` or ``spf=pass`` on the item.

    Returns the parsed verdicts; raises :class:`SenderAuthenticationError`
    when neither mechanism passed (including a missing header).
    """
    verdicts = authentication_results(raw_bytes)
    if not verdicts:
        raise SenderAuthenticationError(sender, "no Authentication-Results header")
    if verdicts.get("dkim") == "pass" or verdicts.get("spf") == "pass":
        logger.debug("sender_authenticated", sender=sender, **verdicts)
        return verdicts
    summary = ", ".join(f"{k}={v}" for k, v in sorted(verdicts.items()))
    raise SenderAuthenticationError(sender, summary)
