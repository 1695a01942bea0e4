"""
Storage Services Package

Provides abstract interfaces and concrete implementations for the event
log, the snapshot table and the live account tables. The in-memory backend
is complete; Google Sheets can hold the event log and the snapshots.
"""

from richflow.services.storage.interface import (
    AccountStorageInterface,
    EventStorageInterface,
    LedgerStorageInterface,
    LiveEntry,
    NotFoundError,
    SnapshotStorageInterface,
    StorageConnectionError,
    StorageError,
    UnitOfWork,
    UserNotFoundError,
)
from richflow.services.storage.memory import (
    InMemoryLedgerStorage,
    InMemoryUnitOfWork,
    utc_now,
)
from richflow.services.storage.google_sheets import (
    GoogleSheetsClient,
    GoogleSheetsEventStorage,
    GoogleSheetsMirroredStorage,
    GoogleSheetsSnapshotStorage,
)

__all__ = [
    # Interfaces
    "AccountStorageInterface",
    "EventStorageInterface",
    "LedgerStorageInterface",
    "LiveEntry",
    "SnapshotStorageInterface",
    "UnitOfWork",
    # Exceptions
    "NotFoundError",
    "StorageConnectionError",
    "StorageError",
    "UserNotFoundError",
    # In-memory implementation
    "InMemoryLedgerStorage",
    "InMemoryUnitOfWork",
    "utc_now",
    # Google Sheets implementation
    "GoogleSheetsClient",
    "GoogleSheetsEventStorage",
    "GoogleSheetsMirroredStorage",
    "GoogleSheetsSnapshotStorage",
]
