"""Shared test fixtures for the forward_archiver test suite."""

from __future__ import annotations

import itertools
from collections.abc import AsyncIterator
from datetime import datetime
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path

import pytest
import pytest_asyncio

from forward_archiver.config import (
    ArchiverConfig,
    BillingConfig,
    DatabaseConfig,
    ImapConfig,
    KafkaConfig,
    RetryConfig,
    SettleConfig,
    SmtpConfig,
    StorageConfig,
    WalletConfig,
)
from forward_archiver.crypto import CredentialVault
from forward_archiver.db import Database, ProcessedItemStore
from forward_archiver.envelope import extract_envelope
from forward_archiver.errors import MailboxDisconnectedError
from forward_archiver.models import ArchiveReference, Envelope, UsageSummary
from forward_archiver.notifications import Notifier
from forward_archiver.storage_client import (
    CreatedVault,
    GeneratedWallet,
    StorageNetworkClient,
    UploadResult,
    Wallet,
)

TEST_KEY = "ab" * 32


# ------------------------------------------------------------------
# Config fixtures
# ------------------------------------------------------------------


@pytest.fixture
def imap_config() -> ImapConfig:
    return ImapConfig(
        host="imap.test.com",
        port=993,
        use_ssl=True,
        username="testuser",
        password="testpass",
        mailbox="INBOX",
        poll_interval_seconds=0.01,
        reconnect_delays_seconds=[0.01, 0.02],
    )


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(
        max_attempts=3,
        initial_wait_seconds=0.01,
        max_wait_seconds=0.01,
        multiplier=0.01,
    )


@pytest.fixture
def billing_config() -> BillingConfig:
    return BillingConfig(free_items_per_month=10, cost_per_item=0.10, over_quota_policy="bill")


@pytest.fixture
def archiver_config(imap_config: ImapConfig, retry_config: RetryConfig, tmp_path: Path) -> ArchiverConfig:
    return ArchiverConfig(
        name="archiver-test",
        allowed_senders="a@x.com,*@trusted.org",
        encryption_key=TEST_KEY,
        temp_dir=str(tmp_path / "scratch"),
        queue_backend="memory",
        imap=imap_config,
        database=DatabaseConfig(url="sqlite+aiosqlite://"),
        kafka=KafkaConfig(bootstrap_servers="localhost:9092"),
        retry=retry_config,
        storage=StorageConfig(base_url="http://bridge.test:7070"),
        settle=SettleConfig(policy="fixed", delay_seconds=0),
        billing=BillingConfig(),
        wallet=WalletConfig(mode="single"),
        smtp=SmtpConfig(host="smtp.test.com", from_address="archive@test.com"),
    )


@pytest.fixture
def credentials() -> CredentialVault:
    return CredentialVault(TEST_KEY)


@pytest_asyncio.fixture
async def db() -> AsyncIterator[Database]:
    database = Database(DatabaseConfig(url="sqlite+aiosqlite://"))
    await database.create_all()
    yield database
    await database.dispose()


@pytest.fixture
def items(db: Database) -> ProcessedItemStore:
    return ProcessedItemStore(db)


# ------------------------------------------------------------------
# Fakes
# ------------------------------------------------------------------


class FakeStorageClient(StorageNetworkClient):
    """In-memory storage network that records every call.

    ``fail_next`` maps an operation name to a list of exceptions raised
    (in order) by the next calls to that operation.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.calls: list[tuple[str, dict]] = []
        self.fail_next: dict[str, list[Exception]] = {}
        self.containers: dict[str, dict] = {}
        self.uploads: dict[str, dict] = {}
        self.balance = 0
        self.indexed: set[str] = set()

    def _maybe_fail(self, op: str) -> None:
        pending = self.fail_next.get(op)
        if pending:
            raise pending.pop(0)

    def count(self, op: str) -> int:
        return sum(1 for name, _ in self.calls if name == op)

    def calls_to(self, op: str) -> list[dict]:
        return [kwargs for name, kwargs in self.calls if name == op]

    async def create_vault(self, name: str, *, password: str | None = None) -> CreatedVault:
        self.calls.append(("create_vault", {"name": name, "password": password}))
        self._maybe_fail("create_vault")
        n = next(self._ids)
        return CreatedVault(vault_id=f"vault-{n}", root_container_id=f"root-{n}")

    async def create_container(
        self,
        vault_id: str,
        name: str,
        parent_id: str,
        *,
        password: str | None = None,
        wallet: Wallet | None = None,
    ) -> str:
        self.calls.append(
            ("create_container", {"vault_id": vault_id, "name": name, "parent_id": parent_id, "wallet": wallet})
        )
        self._maybe_fail("create_container")
        container_id = f"container-{next(self._ids)}"
        self.containers[container_id] = {"name": name, "parent_id": parent_id, "vault_id": vault_id}
        return container_id

    async def upload_file(
        self,
        vault_id: str,
        container_id: str,
        path: Path,
        *,
        file_name: str,
        content_type: str,
        password: str | None = None,
        wallet: Wallet | None = None,
    ) -> UploadResult:
        content = path.read_bytes()
        self.calls.append(
            (
                "upload_file",
                {
                    "vault_id": vault_id,
                    "container_id": container_id,
                    "file_name": file_name,
                    "content_type": content_type,
                    "size": len(content),
                },
            )
        )
        self._maybe_fail("upload_file")
        entity_id = f"file-{next(self._ids)}"
        self.uploads[entity_id] = {"container_id": container_id, "content": content}
        return UploadResult(entity_id=entity_id, transaction_id=f"tx-{entity_id}", access_key=f"key-{entity_id}")

    async def derive_share_key(self, vault_id: str, password: str) -> str:
        self.calls.append(("derive_share_key", {"vault_id": vault_id}))
        return f"share-{vault_id}"

    async def is_indexed(self, vault_id: str, entity_id: str) -> bool:
        self.calls.append(("is_indexed", {"vault_id": vault_id, "entity_id": entity_id}))
        return entity_id in self.indexed

    async def get_balance(self, wallet: Wallet) -> int:
        self.calls.append(("get_balance", {"wallet": wallet}))
        return self.balance

    async def share_credit(
        self,
        from_wallet: Wallet | None,
        to_address: str,
        amount_winc: int,
        *,
        expires_in_seconds: int,
    ) -> str:
        self.calls.append(
            (
                "share_credit",
                {"to_address": to_address, "amount_winc": amount_winc, "expires_in_seconds": expires_in_seconds},
            )
        )
        self._maybe_fail("share_credit")
        return f"grant-{next(self._ids)}"

    async def revoke_credit(self, from_wallet: Wallet | None, address: str) -> None:
        self.calls.append(("revoke_credit", {"address": address}))

    async def create_wallet(self) -> GeneratedWallet:
        self.calls.append(("create_wallet", {}))
        n = next(self._ids)
        return GeneratedWallet(
            address=f"addr-{n}",
            jwk={"kty": "RSA", "n": f"modulus-{n}", "e": "AQAB"},
            seed_phrase=f"seed words {n}",
        )


class RecordingNotifier(Notifier):
    """Collects every notification as ``(kind, to, payload)``."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict]] = []
        self.fail_with: Exception | None = None

    def kinds(self) -> list[str]:
        return [kind for kind, _, _ in self.sent]

    def _record(self, kind: str, to: str, **payload: object) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((kind, to, payload))

    async def send_confirmation(self, to: str, ref: ArchiveReference, subject: str, usage: UsageSummary) -> None:
        self._record("confirmation", to, ref=ref, subject=subject, usage=usage)

    async def send_welcome(self, to: str, vault_id: str, share_key: str | None, usage: UsageSummary) -> None:
        self._record("welcome", to, vault_id=vault_id, share_key=share_key, usage=usage)

    async def send_quota_exceeded(self, to: str, reason: str, usage: UsageSummary) -> None:
        self._record("quota_exceeded", to, reason=reason, usage=usage)

    async def send_failure(self, to: str, subject: str, error: str, attempts: int) -> None:
        self._record("failure", to, subject=subject, error=error, attempts=attempts)

    async def send_size_exceeded(self, to: str, subject: str, size_bytes: int, limit_bytes: int) -> None:
        self._record("size_exceeded", to, subject=subject, size_bytes=size_bytes, limit_bytes=limit_bytes)


class FakeMailbox:
    """Stands in for :class:`AsyncImapClient`, backed by a dict of raw sources."""

    def __init__(self, messages: dict[int, bytes] | None = None) -> None:
        self.messages: dict[int, bytes] = dict(messages or {})
        self.seen: set[int] = set()
        self.connected = False
        self.connect_calls = 0
        self.connect_failures: list[Exception] = []
        self.fetch_failures: list[Exception] = []
        self.search_failures: list[Exception] = []
        self.searches: list[datetime] = []

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_failures:
            raise self.connect_failures.pop(0)
        self.connected = True

    async def ensure_connected(self) -> None:
        if not self.connected:
            await self.connect()

    async def disconnect(self) -> None:
        self.connected = False

    async def is_connected(self) -> bool:
        return self.connected

    async def search_unseen(self, since: datetime) -> list[int]:
        if not self.connected:
            raise MailboxDisconnectedError("IMAP session is not connected")
        self.searches.append(since)
        if self.search_failures:
            raise self.search_failures.pop(0)
        return sorted(uid for uid in self.messages if uid not in self.seen)

    async def fetch_envelope(self, uid: int) -> Envelope | None:
        raw = self.messages.get(uid)
        return extract_envelope(raw) if raw is not None else None

    async def fetch_source(self, uid: int) -> bytes | None:
        if self.fetch_failures:
            raise self.fetch_failures.pop(0)
        return self.messages.get(uid)

    async def mark_seen(self, uid: int) -> None:
        self.seen.add(uid)


@pytest.fixture
def storage() -> FakeStorageClient:
    return FakeStorageClient()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


# ------------------------------------------------------------------
# Sample EML builders
# ------------------------------------------------------------------


def _build_plain_email(
    *,
    subject: str = "Quarterly Report",
    from_addr: str = "Alice <a@x.com>",
    to_addr: str = "archive@forward.test",
    body: str = "Hello, World!",
    message_id: str = "<test-001@x.com>",
    date: str = "Sun, 01 Jun 2025 12:00:00 +0000",
    auth_results: str | None = None,
) -> bytes:
    """Build a simple plain-text email as raw bytes."""
    msg = MIMEText(body, "plain")
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_addr
    msg["Message-ID"] = message_id
    msg["Date"] = date
    if auth_results:
        msg["Authentication-Results"] = auth_results
    return msg.as_bytes()


def _build_email_with_attachment(
    *,
    subject: str = "Invoice",
    from_addr: str = "a@x.com",
    date: str = "Mon, 10 Mar 2025 09:30:00 +0000",
    attachment_size: int = 2 * 1024 * 1024,
) -> bytes:
    """Build a multipart email carrying one binary attachment of *attachment_size* bytes."""
    msg = MIMEMultipart("mixed")
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = "archive@forward.test"
    msg["Message-ID"] = "<attach-001@x.com>"
    msg["Date"] = date
    msg.attach(MIMEText("See attached.", "plain"))

    part = MIMEBase("application", "octet-stream")
    part.set_payload(b"\x00" * attachment_size)
    encoders.encode_base64(part)
    part.add_header("Content-Disposition", "attachment", filename="scan.bin")
    msg.attach(part)
    return msg.as_bytes()


@pytest.fixture
def plain_eml_bytes() -> bytes:
    return _build_plain_email()
