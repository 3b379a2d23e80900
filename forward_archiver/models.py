"""Value objects passed between the archiver's services."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field


class ItemStatus(str, Enum):
    """Lifecycle of a mailbox item.

    ``queued -> processing -> completed | failed``; ``failed`` re-enters
    ``processing`` on retry until the attempt ceiling.
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class VaultType(str, Enum):
    PRIVATE = "private"
    PUBLIC = "public"


class FolderKind(str, Enum):
    YEAR = "year"
    MONTH = "month"


class Plan(str, Enum):
    FREE = "free"
    PAID = "paid"


class GrantStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


class WorkerStatus(str, Enum):
    """Runtime status of the archiver service."""

    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    STOPPED = "stopped"


class ArchiveJob(BaseModel):
    """A 'process item N' job. Carries only the mailbox UID."""

    uid: int = Field(description="Mailbox UID of the item to archive")
    queued_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the poller enqueued the job (UTC)",
    )


class Envelope(BaseModel):
    """Header-only view of a mailbox item."""

    sender: str = Field(description="Normalized From address, or 'unknown'")
    subject: str = Field(default="", description="Decoded Subject header")
    message_id: str | None = Field(default=None, description="Message-ID header")


class DeadLetterEnvelope(BaseModel):
    """A job retained for inspection after it failed permanently."""

    job: ArchiveJob = Field(description="The job that could not be completed")
    error: str = Field(description="Final error message")
    attempts: int = Field(description="Attempts made before giving up")
    failed_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the job was dead-lettered (UTC)",
    )


class UsageSummary(BaseModel):
    """Month-to-date usage shown to senders in notifications."""

    items_this_month: int
    free_items_used: int
    free_items_remaining: int
    paid_items_this_month: int
    cost_this_month: float
    bytes_this_month: int


class PublicAccess(BaseModel):
    kind: Literal["public"] = "public"


class PrivateAccess(BaseModel):
    """Password-protected vault. The password only leaves storage encrypted."""

    kind: Literal["private"] = "private"
    encrypted_password: str
    share_key: str | None = None


VaultAccess = Annotated[PublicAccess | PrivateAccess, Field(discriminator="kind")]


class ArchiveReference(BaseModel):
    """Where an archived item landed on the storage network."""

    vault_id: str
    container_id: str
    container_name: str
    entity_id: str
    transaction_id: str | None = None
    file_name: str
    access_key: str | None = None


class HealthSnapshot(BaseModel):
    """Point-in-time health details for operators."""

    name: str
    status: WorkerStatus
    uptime_seconds: float
    details: dict[str, Any] = Field(default_factory=dict)
