"""Tests for forward_archiver.config."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from forward_archiver.config import (
    ArchiverConfig,
    BillingConfig,
    ImapConfig,
    RetryConfig,
    SettleConfig,
    SmtpConfig,
    WalletConfig,
)

from tests.conftest import TEST_KEY


@pytest.fixture
def imap_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("IMAP_HOST", "imap.env.com")
    monkeypatch.setenv("IMAP_USERNAME", "env-user")
    monkeypatch.setenv("IMAP_PASSWORD", "env-pass")


class TestImapConfig:
    def test_defaults(self, imap_env: None):
        config = ImapConfig()
        assert config.host == "imap.env.com"
        assert config.port == 993
        assert config.use_ssl is True
        assert config.mailbox == "INBOX"
        assert config.poll_interval_seconds == 30.0
        assert config.search_days == 7
        assert config.reconnect_delays_seconds == [5.0, 10.0, 30.0, 60.0]
        assert config.password.get_secret_value() == "env-pass"

    def test_env_overrides(self, imap_env: None, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("IMAP_PORT", "143")
        monkeypatch.setenv("IMAP_USE_SSL", "false")
        monkeypatch.setenv("IMAP_RECONNECT_DELAYS_SECONDS", "[1, 2]")
        config = ImapConfig()
        assert config.port == 143
        assert config.use_ssl is False
        assert config.reconnect_delays_seconds == [1.0, 2.0]

    def test_missing_host_rejected(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("IMAP_HOST", raising=False)
        with pytest.raises(ValidationError):
            ImapConfig(username="u", password="p")


class TestSmallConfigs:
    def test_retry_defaults(self):
        config = RetryConfig()
        assert config.max_attempts == 3
        assert config.initial_wait_seconds == 5.0
        assert config.max_wait_seconds == 125.0

    def test_retry_rejects_zero_attempts(self):
        with pytest.raises(ValidationError):
            RetryConfig(max_attempts=0)

    def test_settle_defaults(self):
        config = SettleConfig()
        assert config.policy == "fixed"
        assert config.delay_seconds == 6.0

    def test_settle_rejects_unknown_policy(self):
        with pytest.raises(ValidationError):
            SettleConfig(policy="hope")

    def test_billing_defaults(self):
        config = BillingConfig()
        assert config.free_items_per_month == 10
        assert config.cost_per_item == 0.10
        assert config.over_quota_policy == "bill"

    def test_wallet_defaults(self):
        config = WalletConfig()
        assert config.mode == "single"
        assert config.estimated_item_bytes == 3 * 1024 * 1024
        assert config.grant_expiry_days == 30

    def test_smtp_defaults_use_starttls(self):
        config = SmtpConfig()
        assert config.port == 587
        assert config.use_tls is False
        assert config.start_tls is True
        assert config.password is None


class TestArchiverConfig:
    def test_from_env(self, imap_env: None, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("ARCHIVER_ALLOWED_SENDERS", "a@x.com,*@trusted.org")
        monkeypatch.setenv("ARCHIVER_ENCRYPTION_KEY", TEST_KEY)
        monkeypatch.setenv("ARCHIVER_WORKER_CONCURRENCY", "4")
        monkeypatch.setenv("BILLING_FREE_ITEMS_PER_MONTH", "25")
        config = ArchiverConfig()
        assert config.allowed_senders == "a@x.com,*@trusted.org"
        assert config.worker_concurrency == 4
        assert config.max_archive_bytes == 50 * 1024 * 1024
        assert config.queue_backend == "kafka"
        assert config.imap.host == "imap.env.com"
        assert config.billing.free_items_per_month == 25

    def test_encryption_key_must_be_64_hex(self, imap_env: None):
        with pytest.raises(ValidationError, match="64 hex"):
            ArchiverConfig(allowed_senders="a@x.com", encryption_key="abc123")

    def test_encryption_key_rejects_non_hex(self, imap_env: None):
        with pytest.raises(ValidationError):
            ArchiverConfig(allowed_senders="a@x.com", encryption_key="zz" * 32)

    def test_encryption_key_is_secret(self, imap_env: None):
        config = ArchiverConfig(allowed_senders="a@x.com", encryption_key=TEST_KEY)
        assert TEST_KEY not in repr(config)
        assert config.encryption_key.get_secret_value() == TEST_KEY

    def test_concurrency_must_be_positive(self, imap_env: None):
        with pytest.raises(ValidationError):
            ArchiverConfig(allowed_senders="a@x.com", encryption_key=TEST_KEY, worker_concurrency=0)

    def test_unknown_queue_backend_rejected(self, imap_env: None):
        with pytest.raises(ValidationError):
            ArchiverConfig(allowed_senders="a@x.com", encryption_key=TEST_KEY, queue_backend="redis")
