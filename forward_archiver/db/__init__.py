"""Relational store: engine, ORM models and processed-item bookkeeping."""

from .engine import Database
from .items import ProcessedItemStore
from .models import (
    Base,
    CreditGrant,
    FolderCacheEntry,
    ProcessedItem,
    UploadRecord,
    UsagePeriod,
    User,
    Vault,
)

__all__ = [
    "Base",
    "CreditGrant",
    "Database",
    "FolderCacheEntry",
    "ProcessedItem",
    "ProcessedItemStore",
    "UploadRecord",
    "UsagePeriod",
    "User",
    "Vault",
]
