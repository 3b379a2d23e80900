"""Forward Archiver: mailbox to permanent-storage archival pipeline.

Public API re-exported here for convenience::

    from forward_archiver import ArchiverConfig, ArchiverService
"""

from .config import (
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
from .credits import CreditAllocator, winc_for_bytes
from .crypto import CredentialVault, generate_vault_password
from .db import Database, ProcessedItemStore
from .directory import AllowList, SenderDirectory, verify_sender_authentication
from .folders import FolderCache, FolderLock, LocalFolderLock, NullFolderLock
from .imap_client import AsyncImapClient
from .logging import setup_logging
from .models import (
    ArchiveJob,
    ArchiveReference,
    DeadLetterEnvelope,
    Envelope,
    ItemStatus,
    PrivateAccess,
    PublicAccess,
    UsageSummary,
    VaultAccess,
    WorkerStatus,
)
from .notifications import Notifier, SmtpNotifier
from .poller import MailboxPoller
from .processor import ItemProcessor, JobOutcome, WorkerPool
from .retry import job_retrying
from .service import ArchiverService
from .settle import FixedDelaySettle, PollUntilIndexedSettle, SettlePolicy
from .storage_client import HttpStorageNetworkClient, StorageNetworkClient
from .usage import UsageLedger
from .vaults import VaultProvisioner
from .wallets import WalletService
from .work_queue import InMemoryWorkQueue, KafkaWorkQueue, WorkQueue

__all__ = [
    "AllowList",
    "ArchiveJob",
    "ArchiveReference",
    "ArchiverConfig",
    "ArchiverService",
    "AsyncImapClient",
    "BillingConfig",
    "CredentialVault",
    "CreditAllocator",
    "Database",
    "DatabaseConfig",
    "DeadLetterEnvelope",
    "Envelope",
    "FixedDelaySettle",
    "FolderCache",
    "FolderLock",
    "HttpStorageNetworkClient",
    "ImapConfig",
    "InMemoryWorkQueue",
    "ItemProcessor",
    "ItemStatus",
    "JobOutcome",
    "KafkaConfig",
    "KafkaWorkQueue",
    "LocalFolderLock",
    "MailboxPoller",
    "Notifier",
    "NullFolderLock",
    "PollUntilIndexedSettle",
    "PrivateAccess",
    "ProcessedItemStore",
    "PublicAccess",
    "RetryConfig",
    "SenderDirectory",
    "SettleConfig",
    "SettlePolicy",
    "SmtpConfig",
    "SmtpNotifier",
    "StorageConfig",
    "StorageNetworkClient",
    "UsageLedger",
    "UsageSummary",
    "VaultAccess",
    "VaultProvisioner",
    "WalletConfig",
    "WalletService",
    "WorkQueue",
    "WorkerPool",
    "WorkerStatus",
    "generate_vault_password",
    "job_retrying",
    "setup_logging",
    "verify_sender_authentication",
    "winc_for_bytes",
]
