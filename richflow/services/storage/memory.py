"""
In-Memory Ledger Storage

The reference implementation of LedgerStorageInterface. It backs the test
suite and any embedded use of the engine where persistence is handled
elsewhere.

Transactions are implemented by staging: a unit of work operates on a
fork of the tables and swaps it in on commit. Appends made through the
unit of work are invisible to readers until then, and an exception
inside the block discards everything, so the event log and the live
tables can never diverge.

Every container is kept per user. A fork shares them with the committed
tables and copies a user's containers only on its first write to that
user, so a transaction costs what it touches, not the size of the ledger.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Optional

import structlog

from richflow.models.events import ActionType, EntityType, Event, EventQuery, NewEvent
from richflow.models.state import (
    BalanceEntry,
    Currency,
    ExpenseEntry,
    FinancialState,
    IncomeLineEntry,
    SnapshotRecord,
    UserAccount,
)
from richflow.services.storage.interface import (
    LedgerStorageInterface,
    StorageError,
    UnitOfWork,
    UserNotFoundError,
)


logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Tables:
    """Everything a unit of work can change, keyed by user id."""

    users: dict[int, UserAccount] = field(default_factory=dict)
    assets: dict[int, dict[int, BalanceEntry]] = field(default_factory=dict)
    liabilities: dict[int, dict[int, BalanceEntry]] = field(default_factory=dict)
    income_lines: dict[int, dict[int, IncomeLineEntry]] = field(default_factory=dict)
    expenses: dict[int, dict[int, ExpenseEntry]] = field(default_factory=dict)
    # user_id -> (cash record id, amount)
    cash: dict[int, tuple[int, float]] = field(default_factory=dict)
    # user_id -> that user's log in append order
    events: dict[int, list[Event]] = field(default_factory=dict)
    snapshots: dict[int, dict[tuple[int, int], SnapshotRecord]] = field(default_factory=dict)
    next_user_id: int = 1
    next_entity_id: int = 1
    next_event_id: int = 1
    # Users whose containers belong to this fork alone
    owned: set[int] = field(default_factory=set)

    def fork(self) -> "_Tables":
        # Entries are frozen models, so sharing containers until the first
        # write is safe
        return _Tables(
            users=dict(self.users),
            assets=dict(self.assets),
            liabilities=dict(self.liabilities),
            income_lines=dict(self.income_lines),
            expenses=dict(self.expenses),
            cash=dict(self.cash),
            events=dict(self.events),
            snapshots=dict(self.snapshots),
            next_user_id=self.next_user_id,
            next_entity_id=self.next_entity_id,
            next_event_id=self.next_event_id,
        )

    def own(self, user_id: int) -> None:
        """Copy one user's containers before this fork writes to them."""
        if user_id in self.owned:
            return
        for family in (self.assets, self.liabilities, self.income_lines, self.expenses, self.snapshots):
            family[user_id] = dict(family.get(user_id, {}))
        self.events[user_id] = list(self.events.get(user_id, []))
        self.owned.add(user_id)

    def user_events(self, user_id: int) -> list[Event]:
        return self.events.get(user_id, [])

    def append_event(self, event: NewEvent, timestamp: datetime) -> Event:
        self.own(event.user_id)
        stored = event.stamp(self.next_event_id, timestamp)
        self.next_event_id += 1
        self.events[event.user_id].append(stored)
        return stored

    def insert_snapshots(self, snapshots: list[SnapshotRecord]) -> int:
        written = 0
        for snapshot in snapshots:
            if snapshot.month_key in self.snapshots.get(snapshot.user_id, {}):
                continue
            self.own(snapshot.user_id)
            self.snapshots[snapshot.user_id][snapshot.month_key] = snapshot
            written += 1
        return written

    def require_user(self, user_id: int) -> UserAccount:
        user = self.users.get(user_id)
        if user is None:
            raise UserNotFoundError(f"User not found: {user_id}")
        return user


class InMemoryUnitOfWork(UnitOfWork):
    """Staged view of the tables for one transaction."""

    def __init__(self, tables: _Tables, clock: Clock):
        self._tables = tables
        self._clock = clock

    @property
    def tables(self) -> _Tables:
        return self._tables

    async def create_user(self, name: str, currency: Currency) -> UserAccount:
        tables = self._tables
        user = UserAccount(
            id=tables.next_user_id,
            name=name,
            created_at=self._clock(),
            currency=currency,
        )
        tables.next_user_id += 1
        tables.users[user.id] = user
        tables.own(user.id)
        return user

    async def get_user(self, user_id: int) -> Optional[UserAccount]:
        return self._tables.users.get(user_id)

    async def set_user_currency(self, user_id: int, currency: Currency) -> UserAccount:
        user = self._tables.require_user(user_id)
        updated = user.model_copy(update={"currency": currency})
        self._tables.users[user_id] = updated
        return updated

    async def put_asset(self, user_id: int, entry: BalanceEntry) -> None:
        self._writable(user_id).assets[user_id][entry.id] = entry

    async def put_liability(self, user_id: int, entry: BalanceEntry) -> None:
        self._writable(user_id).liabilities[user_id][entry.id] = entry

    async def put_income_line(self, user_id: int, entry: IncomeLineEntry) -> None:
        self._writable(user_id).income_lines[user_id][entry.id] = entry

    async def put_expense(self, user_id: int, entry: ExpenseEntry) -> None:
        self._writable(user_id).expenses[user_id][entry.id] = entry

    async def remove_entity(self, user_id: int, entity_type: str, entity_id: int) -> bool:
        family = self._family(entity_type)
        self._writable(user_id)
        return family[user_id].pop(entity_id, None) is not None

    async def set_cash_savings(self, user_id: int, amount: float) -> int:
        self._tables.require_user(user_id)
        existing = self._tables.cash.get(user_id)
        if existing is None:
            record_id = await self.next_entity_id()
        else:
            record_id = existing[0]
        self._tables.cash[user_id] = (record_id, float(amount))
        return record_id

    async def next_entity_id(self) -> int:
        entity_id = self._tables.next_entity_id
        self._tables.next_entity_id += 1
        return entity_id

    async def get_entity(self, user_id: int, entity_type: str, entity_id: int):
        self._tables.require_user(user_id)
        return self._family(entity_type).get(user_id, {}).get(entity_id)

    async def get_cash_savings(self, user_id: int) -> Optional[tuple[int, float]]:
        self._tables.require_user(user_id)
        return self._tables.cash.get(user_id)

    def _writable(self, user_id: int) -> _Tables:
        self._tables.require_user(user_id)
        self._tables.own(user_id)
        return self._tables

    def _family(self, entity_type: str) -> dict:
        families = {
            EntityType.ASSET.value: self._tables.assets,
            EntityType.LIABILITY.value: self._tables.liabilities,
            EntityType.INCOME.value: self._tables.income_lines,
            EntityType.EXPENSE.value: self._tables.expenses,
        }
        if entity_type not in families:
            raise StorageError(f"Entity type has no live table: {entity_type}")
        return families[entity_type]


class InMemoryLedgerStorage(LedgerStorageInterface):
    """
    In-memory implementation of the full ledger backend.

    Args:
        clock: Source of event timestamps and user creation times.
               Defaults to the current UTC time.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or utc_now
        self._tables = _Tables()
        self._lock = asyncio.Lock()

    async def _ensure_loaded(self) -> None:
        """Hook for backends that restore the tables before first use."""

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[InMemoryUnitOfWork]:
        await self._ensure_loaded()
        async with self._lock:
            uow = InMemoryUnitOfWork(self._tables.fork(), self._clock)
            try:
                yield uow
                await self._before_commit(self._tables, uow.tables)
            except Exception:
                logger.warning("unit_of_work_rolled_back")
                raise
            self._tables = uow.tables
            self._tables.owned = set()

    async def _before_commit(self, current: _Tables, staged: _Tables) -> None:
        """
        Called with the committed and staged tables right before the swap.
        Raising here rolls the unit of work back.
        """

    # ------------------------------------------------------------------
    # Event log
    # ------------------------------------------------------------------

    async def append_event(
        self,
        event: NewEvent,
        unit_of_work: Optional[UnitOfWork] = None,
    ) -> Event:
        if unit_of_work is not None:
            return self._staged(unit_of_work).append_event(event, self._clock())
        async with self.unit_of_work() as uow:
            return uow.tables.append_event(event, self._clock())

    async def list_events(self, user_id: int, query: EventQuery) -> list[Event]:
        await self._ensure_loaded()
        matching = [e for e in self._tables.user_events(user_id) if query.matches(e)]
        # Newest first
        matching.sort(key=lambda e: e.sort_key, reverse=True)
        return matching[query.offset:query.offset + query.limit]

    async def count_events(self, user_id: int, query: EventQuery) -> int:
        await self._ensure_loaded()
        return sum(1 for e in self._tables.user_events(user_id) if query.matches(e))

    async def events_between(
        self,
        user_id: int,
        after: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[Event]:
        await self._ensure_loaded()
        window = [
            e for e in self._tables.user_events(user_id)
            if (after is None or e.timestamp > after)
            and (until is None or e.timestamp <= until)
        ]
        window.sort(key=lambda e: e.sort_key)
        return window

    async def first_currency_change(self, user_id: int) -> Optional[Event]:
        await self._ensure_loaded()
        candidates = [
            e for e in self._tables.user_events(user_id)
            if e.entity_type == EntityType.USER.value
            and e.action_type == ActionType.UPDATE
            and e.before_value
            and e.before_value.get("currencyCode")
        ]
        return min(candidates, key=lambda e: e.sort_key, default=None)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def insert_snapshots(
        self,
        snapshots: list[SnapshotRecord],
        unit_of_work: Optional[UnitOfWork] = None,
    ) -> int:
        # Membership is checked under the lock, so concurrent backfills
        # cannot both insert the same month.
        if unit_of_work is not None:
            return self._staged(unit_of_work).insert_snapshots(snapshots)
        async with self.unit_of_work() as uow:
            return uow.tables.insert_snapshots(snapshots)

    async def latest_snapshot(
        self,
        user_id: int,
        at_or_before: Optional[datetime] = None,
        strictly_before: Optional[datetime] = None,
    ) -> Optional[SnapshotRecord]:
        await self._ensure_loaded()
        candidates = [
            s for s in self._tables.snapshots.get(user_id, {}).values()
            if (at_or_before is None or s.date <= at_or_before)
            and (strictly_before is None or s.date < strictly_before)
        ]
        return max(candidates, key=lambda s: s.date, default=None)

    async def snapshot_months(self, user_id: int) -> set[tuple[int, int]]:
        await self._ensure_loaded()
        return set(self._tables.snapshots.get(user_id, {}).keys())

    # ------------------------------------------------------------------
    # Live tables
    # ------------------------------------------------------------------

    async def get_user(self, user_id: int) -> Optional[UserAccount]:
        await self._ensure_loaded()
        return self._tables.users.get(user_id)

    async def read_live_state(self, user_id: int) -> FinancialState:
        await self._ensure_loaded()
        tables = self._tables
        user = tables.require_user(user_id)
        cash = tables.cash.get(user_id)
        return FinancialState(
            assets=dict(tables.assets.get(user_id, {})),
            liabilities=dict(tables.liabilities.get(user_id, {})),
            income_lines=dict(tables.income_lines.get(user_id, {})),
            expenses=dict(tables.expenses.get(user_id, {})),
            cash_savings=cash[1] if cash else 0.0,
            currency=user.currency,
        )

    def _staged(self, unit_of_work: UnitOfWork) -> _Tables:
        if not isinstance(unit_of_work, InMemoryUnitOfWork):
            raise StorageError("Unit of work belongs to a different backend")
        return unit_of_work.tables
