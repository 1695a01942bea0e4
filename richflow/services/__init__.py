"""
Services package.

Storage backends live in `richflow.services.storage`; the producer facade
that mutates live entities and logs their events is
`richflow.services.recorder.FinancialRecorder`.
"""

from richflow.services.storage import (
    GoogleSheetsClient,
    GoogleSheetsEventStorage,
    GoogleSheetsMirroredStorage,
    GoogleSheetsSnapshotStorage,
    InMemoryLedgerStorage,
    LedgerStorageInterface,
    NotFoundError,
    StorageConnectionError,
    StorageError,
    UserNotFoundError,
)

__all__ = [
    # Storage services
    "GoogleSheetsClient",
    "GoogleSheetsEventStorage",
    "GoogleSheetsMirroredStorage",
    "GoogleSheetsSnapshotStorage",
    "InMemoryLedgerStorage",
    "LedgerStorageInterface",
    "NotFoundError",
    "StorageConnectionError",
    "StorageError",
    "UserNotFoundError",
]
