"""Exception hierarchy for the archiver.

Anything deriving from :class:`NonRetryableError` ends a job on the first
attempt; every other :class:`Exception` goes back to the retry layer.
"""

from __future__ import annotations


class ArchiverError(Exception):
    """Base class for archiver errors."""


class NonRetryableError(ArchiverError):
    """Retrying cannot change the outcome."""


class SenderNotAuthorizedError(NonRetryableError):
    """The sender is not on the allow-list."""

    def __init__(self, sender: str) -> None:
        super().__init__(f"Sender not authorized: {sender}")
        self.sender = sender


class SenderAuthenticationError(NonRetryableError):
    """The item failed DKIM/SPF checks, so the From address cannot be trusted."""

    def __init__(self, sender: str, reason: str) -> None:
        super().__init__(f"Sender authentication failed for {sender}: {reason}")
        self.sender = sender
        self.reason = reason


class QuotaExceededError(ArchiverError):
    """Admission was refused by the usage ledger."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class MailboxError(ArchiverError):
    """A mailbox protocol command failed."""


class MailboxDisconnectedError(MailboxError):
    """The mailbox session is closed or was never opened."""


class ItemNotFoundError(MailboxError):
    """No item with the given UID could be fetched."""

    def __init__(self, uid: int) -> None:
        super().__init__(f"Could not fetch item with UID {uid}")
        self.uid = uid


class StorageNetworkError(ArchiverError):
    """The storage network bridge rejected or failed a request."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CreditAllocationError(NonRetryableError):
    """Credit could not be lent to a user's wallet."""


class CredentialError(ArchiverError):
    """A stored secret could not be decrypted or failed authentication."""


class DuplicateEntryError(ArchiverError):
    """A row with the same unique key already exists."""
