"""Outcome notifications sent back to senders.

Bodies are plain text; rich templating lives outside this package. Each
archived item produces at most one outcome mail (confirmation, quota,
size-exceeded or final failure); the welcome mail is sent once per vault.
"""

from __future__ import annotations

import abc
from email.message import EmailMessage

import aiosmtplib
import structlog

from .config import SmtpConfig
from .models import ArchiveReference, UsageSummary

logger = structlog.get_logger()

VIEWER_URL = "https://app.ardrive.io/#/file/{entity_id}/view"


def archive_link(ref: ArchiveReference) -> str:
    link = VIEWER_URL.format(entity_id=ref.entity_id)
    if ref.access_key:
        link += f"?fileKey={ref.access_key}"
    return link


def format_usage(usage: UsageSummary) -> str:
    lines = [
        "Usage this month:",
        f"  Items: {usage.items_this_month} ({usage.free_items_used} free, {usage.paid_items_this_month} paid)",
        f"  Free items remaining: {usage.free_items_remaining}",
    ]
    if usage.cost_this_month > 0:
        lines.append(f"  Cost this month: ${usage.cost_this_month:.2f}")
    return "\n".join(lines)


class Notifier(abc.ABC):
    @abc.abstractmethod
    async def send_confirmation(
        self, to: str, ref: ArchiveReference, subject: str, usage: UsageSummary
    ) -> None: ...

    @abc.abstractmethod
    async def send_welcome(self, to: str, vault_id: str, share_key: str | None, usage: UsageSummary) -> None: ...

    @abc.abstractmethod
    async def send_quota_exceeded(self, to: str, reason: str, usage: UsageSummary) -> None: ...

    @abc.abstractmethod
    async def send_failure(self, to: str, subject: str, error: str, attempts: int) -> None: ...

    @abc.abstractmethod
    async def send_size_exceeded(self, to: str, subject: str, size_bytes: int, limit_bytes: int) -> None: ...


class SmtpNotifier(Notifier):
    """:class:`Notifier` that delivers over SMTP with aiosmtplib.

    Delivery errors propagate; callers decide whether a lost notification
    matters.
    """

    def __init__(self, config: SmtpConfig) -> None:
        self._config = config

    async def send_confirmation(self, to: str, ref: ArchiveReference, subject: str, usage: UsageSummary) -> None:
        shown = subject or "No Subject"
        body = (
            f'Your email "{shown}" has been archived permanently.\n\n'
            f"File: {ref.file_name}\n"
            f"Folder: {ref.container_name}\n"
            f"Link: {archive_link(ref)}\n\n"
            f"{format_usage(usage)}\n"
        )
        await self._send(to, f"Email Archived: {shown}", body)

    async def send_welcome(self, to: str, vault_id: str, share_key: str | None, usage: UsageSummary) -> None:
        lines = [
            "Welcome! Your private archive vault has been created.",
            "",
            f"Vault ID: {vault_id}",
        ]
        if share_key:
            lines += [
                f"Vault key: {share_key}",
                "",
                "Keep this key safe. Anyone holding it can read your archive.",
            ]
        lines += ["", format_usage(usage)]
        await self._send(to, "Your archive vault is ready", "\n".join(lines) + "\n")

    async def send_quota_exceeded(self, to: str, reason: str, usage: UsageSummary) -> None:
        body = f"Your email was not archived.\n\nReason: {reason}\n\n{format_usage(usage)}\n"
        await self._send(to, "Upload Limit Reached", body)

    async def send_failure(self, to: str, subject: str, error: str, attempts: int) -> None:
        shown = subject or "No Subject"
        body = (
            f'We could not archive your email "{shown}".\n\n'
            f"Error: {error}\n"
            f"Attempts: {attempts}\n\n"
            "Please try forwarding it again later.\n"
        )
        await self._send(to, f"Upload Failed: {shown}", body)

    async def send_size_exceeded(self, to: str, subject: str, size_bytes: int, limit_bytes: int) -> None:
        shown = subject or "No Subject"
        body = (
            f'Your email "{shown}" is {size_bytes / 1024 / 1024:.1f} MB, '
            f"over the {limit_bytes / 1024 / 1024:.0f} MB limit, and was not archived.\n"
        )
        await self._send(to, f"File Size Exceeded: {shown}", body)

    async def _send(self, to: str, subject: str, body: str) -> None:
        message = EmailMessage()
        message["From"] = self._config.from_address
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)

        password = self._config.password.get_secret_value() if self._config.password else None
        await aiosmtplib.send(
            message,
            hostname=self._config.host,
            port=self._config.port,
            username=self._config.username,
            password=password,
            use_tls=self._config.use_tls,
            start_tls=self._config.start_tls if not self._config.use_tls else False,
        )
        logger.info("notification_sent", to=to, subject=subject)
