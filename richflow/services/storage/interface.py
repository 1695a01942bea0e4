"""
Abstract Storage Interface

DESIGN DECISION: We define abstract interfaces for storage operations.
This allows us to:
1. Swap Google Sheets for a real database later
2. Use in-memory storage for testing
3. Keep the replay engine decoupled from storage implementation

Three concerns are kept apart:
- the event log (append-only, never updated or deleted)
- the snapshot table (at most one checkpoint per user per month)
- the live account tables (users and their current entities)

A full ledger backend implements all three plus a unit of work, so that
an entity mutation and the event documenting it commit together.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Optional, Union

from richflow.models.events import Event, EventQuery, NewEvent
from richflow.models.state import (
    BalanceEntry,
    Currency,
    ExpenseEntry,
    FinancialState,
    IncomeLineEntry,
    SnapshotRecord,
    UserAccount,
)


LiveEntry = Union[BalanceEntry, IncomeLineEntry, ExpenseEntry]


class EventStorageInterface(ABC):
    """
    Abstract interface for the event log.

    There is no update or delete operation.
    """

    @abstractmethod
    async def append_event(
        self,
        event: NewEvent,
        unit_of_work: Optional["UnitOfWork"] = None,
    ) -> Event:
        """
        Persist one event, assigning its id and timestamp.

        Args:
            event: The event as submitted by the producer
            unit_of_work: Transaction the append belongs to. When given,
                the event becomes visible only when it commits.

        Returns:
            The stored, immutable event
        """
        pass

    @abstractmethod
    async def list_events(
        self,
        user_id: int,
        query: EventQuery,
    ) -> list[Event]:
        """
        List a user's events, most recent first, filtered and paginated.
        """
        pass

    @abstractmethod
    async def count_events(
        self,
        user_id: int,
        query: EventQuery,
    ) -> int:
        """Count events matching the filters (pagination ignored)."""
        pass

    @abstractmethod
    async def events_between(
        self,
        user_id: int,
        after: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[Event]:
        """
        Events with `after < timestamp <= until`, chronologically ascending.

        Either bound may be None (unbounded on that side).
        """
        pass

    @abstractmethod
    async def first_currency_change(self, user_id: int) -> Optional[Event]:
        """
        The earliest USER UPDATE event whose before_value carries a
        currencyCode, or None.
        """
        pass


class SnapshotStorageInterface(ABC):
    """
    Abstract interface for monthly checkpoints.

    Inserts skip duplicates: a second snapshot for a (user, month) that
    already has one is silently ignored.
    """

    @abstractmethod
    async def insert_snapshots(
        self,
        snapshots: list[SnapshotRecord],
        unit_of_work: Optional["UnitOfWork"] = None,
    ) -> int:
        """
        Insert snapshots, skipping any whose month is already taken.

        Returns:
            Number of snapshots actually written
        """
        pass

    @abstractmethod
    async def latest_snapshot(
        self,
        user_id: int,
        at_or_before: Optional[datetime] = None,
        strictly_before: Optional[datetime] = None,
    ) -> Optional[SnapshotRecord]:
        """
        The most recent snapshot, optionally bounded above.

        Args:
            at_or_before: Only consider snapshots with date <= this
            strictly_before: Only consider snapshots with date < this
        """
        pass

    @abstractmethod
    async def snapshot_months(self, user_id: int) -> set[tuple[int, int]]:
        """(year, month) pairs that already have a snapshot."""
        pass


class AccountStorageInterface(ABC):
    """
    Abstract interface for the live account tables.

    These hold the authoritative *current* state; history lives only in
    the event log.
    """

    @abstractmethod
    async def get_user(self, user_id: int) -> Optional[UserAccount]:
        """Retrieve a user, or None if unknown."""
        pass

    @abstractmethod
    async def read_live_state(self, user_id: int) -> FinancialState:
        """
        Build the user's current FinancialState straight from the live
        tables, without touching the event log.

        Raises:
            UserNotFoundError: If the user does not exist
        """
        pass


class UnitOfWork(ABC):
    """
    A transaction over a ledger backend.

    Entity mutations and event appends staged through the same unit of
    work become visible together on commit, or not at all.
    """

    @abstractmethod
    async def create_user(self, name: str, currency: Currency) -> UserAccount:
        pass

    @abstractmethod
    async def get_user(self, user_id: int) -> Optional[UserAccount]:
        """The staged user record, or None."""
        pass

    @abstractmethod
    async def set_user_currency(self, user_id: int, currency: Currency) -> UserAccount:
        pass

    @abstractmethod
    async def put_asset(self, user_id: int, entry: BalanceEntry) -> None:
        pass

    @abstractmethod
    async def put_liability(self, user_id: int, entry: BalanceEntry) -> None:
        pass

    @abstractmethod
    async def put_income_line(self, user_id: int, entry: IncomeLineEntry) -> None:
        pass

    @abstractmethod
    async def put_expense(self, user_id: int, entry: ExpenseEntry) -> None:
        pass

    @abstractmethod
    async def remove_entity(self, user_id: int, entity_type: str, entity_id: int) -> bool:
        """Remove a live entity. Returns False if it did not exist."""
        pass

    @abstractmethod
    async def set_cash_savings(self, user_id: int, amount: float) -> int:
        """Set the user's cash savings. Returns the cash record id."""
        pass

    @abstractmethod
    async def next_entity_id(self) -> int:
        """Allocate an id for a new live entity."""
        pass

    @abstractmethod
    async def get_entity(self, user_id: int, entity_type: str, entity_id: int) -> Optional[LiveEntry]:
        """Current staged fields of one live entity, or None."""
        pass

    @abstractmethod
    async def get_cash_savings(self, user_id: int) -> Optional[tuple[int, float]]:
        """(cash record id, amount), or None if the user has no cash record."""
        pass


class LedgerStorageInterface(
    EventStorageInterface,
    SnapshotStorageInterface,
    AccountStorageInterface,
):
    """A complete backend: events, snapshots, live tables and transactions."""

    @abstractmethod
    def unit_of_work(self) -> AbstractAsyncContextManager[UnitOfWork]:
        """
        Open a transaction.

        Usage:
            async with storage.unit_of_work() as uow:
                await uow.put_asset(user_id, entry)
                await storage.append_event(event, unit_of_work=uow)
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class UserNotFoundError(NotFoundError):
    """The requested user does not exist."""
    pass


class StorageConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass
