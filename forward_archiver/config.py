"""Archiver configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars.
Each concern reads its own prefix (``IMAP_``, ``KAFKA_``, ``STORAGE_`` ...);
``ArchiverConfig`` nests them all.
"""

from __future__ import annotations

import re
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings

_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")


class ImapConfig(BaseSettings):
    """Monitored mailbox connection and polling settings."""

    model_config = {"env_prefix": "IMAP_"}

    host: str = Field(description="IMAP server hostname")
    port: int = Field(default=993, description="IMAP server port")
    use_ssl: bool = Field(default=True, description="Use SSL/TLS connection")
    username: str = Field(description="IMAP login username")
    password: SecretStr = Field(description="IMAP login password")
    mailbox: str = Field(default="INBOX", description="IMAP mailbox/folder to poll")
    poll_interval_seconds: float = Field(
        default=30.0,
        description="Seconds between IMAP poll cycles",
    )
    search_days: int = Field(
        default=7,
        ge=1,
        description="Look-back window (days) for the unseen-item search",
    )
    reconnect_delays_seconds: list[float] = Field(
        default_factory=lambda: [5.0, 10.0, 30.0, 60.0],
        description="Escalating reconnect delays; the last value is the cap",
    )


class DatabaseConfig(BaseSettings):
    """Relational store settings."""

    model_config = {"env_prefix": "DATABASE_"}

    url: str = Field(
        default="sqlite+aiosqlite:///./data/forward.db",
        description="Async SQLAlchemy URL",
    )
    echo: bool = Field(default=False, description="Echo SQL statements to the log")


class KafkaConfig(BaseSettings):
    """Kafka connection and topic settings for the durable work queue."""

    model_config = {"env_prefix": "KAFKA_"}

    bootstrap_servers: str = Field(
        default="localhost:9092",
        description="Comma-separated Kafka bootstrap servers",
    )
    jobs_topic: str = Field(
        default="archive-jobs",
        description="Topic carrying 'process item N' jobs",
    )
    dead_letter_topic: str = Field(
        default="archive-jobs-dead-letter",
        description="Topic retaining jobs that failed permanently",
    )
    consumer_group: str = Field(
        default="forward-archiver",
        description="Kafka consumer group ID for the processing worker",
    )
    producer_acks: str = Field(
        default="all",
        description="Producer acknowledgement level",
    )
    auto_offset_reset: str = Field(
        default="earliest",
        description="Where a fresh consumer group starts reading",
    )


class RetryConfig(BaseSettings):
    """Retry / backoff settings for archive jobs, driven by Tenacity."""

    model_config = {"env_prefix": "RETRY_"}

    max_attempts: int = Field(default=3, ge=1, description="Total attempts per job")
    initial_wait_seconds: float = Field(
        default=5.0,
        description="Initial backoff wait in seconds",
    )
    max_wait_seconds: float = Field(
        default=125.0,
        description="Maximum backoff wait in seconds",
    )
    multiplier: float = Field(default=5.0, description="Exponential backoff multiplier")


class StorageConfig(BaseSettings):
    """Permanent storage network bridge settings."""

    model_config = {"env_prefix": "STORAGE_"}

    base_url: str = Field(
        default="http://localhost:7070",
        description="Base URL of the storage network HTTP bridge",
    )
    timeout_seconds: float = Field(default=120.0, description="HTTP request timeout")
    master_wallet_path: str | None = Field(
        default=None,
        description="Path to the master wallet key file (JWK) forwarded to the bridge",
    )


class SettleConfig(BaseSettings):
    """How long to wait for the storage network's index after a write."""

    model_config = {"env_prefix": "SETTLE_"}

    policy: Literal["fixed", "poll"] = Field(
        default="fixed",
        description="fixed: flat sleep; poll: query the index until visible or timeout",
    )
    delay_seconds: float = Field(default=6.0, ge=0, description="Fixed settle delay")
    poll_interval_seconds: float = Field(
        default=2.0,
        gt=0,
        description="Delay between index queries in poll mode",
    )
    poll_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Give up waiting for the index after this many seconds",
    )


class BillingConfig(BaseSettings):
    """Free allowance and per-item pricing."""

    model_config = {"env_prefix": "BILLING_"}

    free_items_per_month: int = Field(default=10, ge=0, description="Free items per month")
    cost_per_item: float = Field(default=0.10, ge=0, description="USD per billable item")
    over_quota_policy: Literal["bill", "block"] = Field(
        default="bill",
        description="What happens to free-plan items beyond the allowance",
    )


class WalletConfig(BaseSettings):
    """Wallet funding mode for uploads."""

    model_config = {"env_prefix": "WALLET_"}

    mode: Literal["single", "multi"] = Field(
        default="single",
        description="single: master wallet pays; multi: per-user wallet with lent credit",
    )
    estimated_item_bytes: int = Field(
        default=3 * 1024 * 1024,
        gt=0,
        description="Average archived item size used to size credit grants",
    )
    grant_expiry_days: int = Field(default=30, ge=1, description="Credit grant lifetime")


class SmtpConfig(BaseSettings):
    """Outbound mail settings for sender notifications."""

    model_config = {"env_prefix": "SMTP_"}

    host: str = Field(default="smtp.gmail.com", description="SMTP server hostname")
    port: int = Field(default=587, description="SMTP server port")
    use_tls: bool = Field(default=False, description="Implicit TLS (port 465)")
    start_tls: bool = Field(default=True, description="Upgrade with STARTTLS")
    username: str | None = Field(default=None, description="SMTP login username")
    password: SecretStr | None = Field(default=None, description="SMTP login password")
    from_address: str = Field(
        default="forward@localhost",
        description="From address on notification mails",
    )


class ArchiverConfig(BaseSettings):
    """Root configuration for an archiver instance.

    Nested configs are populated from their own env-var prefixes.
    """

    model_config = {"env_prefix": "ARCHIVER_"}

    name: str = Field(default="forward-archiver", description="Instance name used in logs")
    allowed_senders: str = Field(
        description="Comma-separated allow-list; exact addresses or *@domain wildcards",
    )
    encryption_key: SecretStr = Field(
        description="64 hex chars (32 bytes) used to encrypt vault passwords and wallet keys",
    )
    enforce_sender_authentication: bool = Field(
        default=False,
        description="Require dkim=pass or spf=pass in Authentication-Results",
    )
    max_archive_bytes: int = Field(
        default=50 * 1024 * 1024,
        gt=0,
        description="Items larger than this are not archived",
    )
    temp_dir: str = Field(default="./tmp", description="Scratch directory for archive files")
    worker_concurrency: int = Field(
        default=1,
        ge=1,
        description="Concurrent processing workers (1 keeps the folder cache single-writer)",
    )
    queue_backend: Literal["kafka", "memory"] = Field(
        default="kafka",
        description="Durable Kafka queue or in-process queue",
    )
    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=True, description="JSON log lines (False for console)")

    imap: ImapConfig = Field(default_factory=ImapConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    kafka: KafkaConfig = Field(default_factory=KafkaConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    settle: SettleConfig = Field(default_factory=SettleConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)
    wallet: WalletConfig = Field(default_factory=WalletConfig)
    smtp: SmtpConfig = Field(default_factory=SmtpConfig)

    @field_validator("encryption_key")
    @classmethod
    def _check_encryption_key(cls, value: SecretStr) -> SecretStr:
        if not _HEX_KEY.match(value.get_secret_value()):
            raise ValueError("encryption_key must be exactly 64 hex characters (32 bytes)")
        return value
