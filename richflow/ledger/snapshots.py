"""
Snapshot Manager

DESIGN DECISION: A snapshot is a cached prefix of the event fold.
Checkpoints are taken at the first instant (UTC) of every calendar month,
so any point-in-time query replays at most one month of events on top of
a snapshot, however old the account is.

Three ways a snapshot comes into existence:
1. GENESIS - an empty state written with the account itself
2. EXPLICIT - create_snapshot() materializes the state at a given time
3. BACKFILL - ensure_monthly_checkpoints() fills every missing month

All inserts skip duplicates per (user, month), so repeated or concurrent
backfills are harmless.
"""

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Iterator, Optional

from dateutil.relativedelta import relativedelta

from richflow.audit import LedgerAuditLogger
from richflow.ledger.event_store import EventStore
from richflow.ledger.reducers import create_empty_state, reduce
from richflow.models.events import ensure_utc
from richflow.models.state import (
    BalanceEntry,
    Currency,
    ExpenseEntry,
    FinancialState,
    IncomeLineEntry,
    SnapshotRecord,
    UserAccount,
)
from richflow.services.storage import (
    LedgerStorageInterface,
    UnitOfWork,
    UserNotFoundError,
    utc_now,
)

if TYPE_CHECKING:
    from richflow.ledger.query import PointInTimeQueryEngine


# =============================================================================
# Serialization
# =============================================================================

_KEYED_FAMILIES = {
    "assets": BalanceEntry,
    "liabilities": BalanceEntry,
    "income_lines": IncomeLineEntry,
    "expenses": ExpenseEntry,
}


def serialize_state(state: FinancialState) -> dict[str, Any]:
    """
    Encode a state as JSON-compatible data.

    Each keyed container becomes a list of [key, fields] pairs sorted by
    key, so equal states always serialize to identical documents.
    """
    data: dict[str, Any] = {}
    for family in _KEYED_FAMILIES:
        entries = getattr(state, family)
        data[family] = [
            [key, entries[key].model_dump()]
            for key in sorted(entries)
        ]
    data["cash_savings"] = state.cash_savings
    data["currency"] = state.currency.model_dump()
    return data


def hydrate_state(data: dict[str, Any]) -> FinancialState:
    """Inverse of serialize_state()."""
    families = {
        family: {
            int(key): model.model_validate(fields)
            for key, fields in data.get(family, [])
        }
        for family, model in _KEYED_FAMILIES.items()
    }
    return FinancialState(
        **families,
        cash_savings=float(data.get("cash_savings", 0.0)),
        currency=Currency.model_validate(data["currency"]),
    )


# =============================================================================
# Month arithmetic
# =============================================================================

def first_of_month(value: datetime) -> datetime:
    value = ensure_utc(value)
    return datetime(value.year, value.month, 1, tzinfo=timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic; the day is clamped to the month's end."""
    return value + relativedelta(months=months)


def month_starts(start: datetime, end: datetime) -> Iterator[datetime]:
    """First instants of every month from start's month through end, inclusive."""
    cursor = first_of_month(start)
    while cursor <= end:
        yield cursor
        cursor = add_months(cursor, 1)


# =============================================================================
# Manager
# =============================================================================

class SnapshotManager:
    """
    Writes checkpoints.

    Args:
        storage: Backend holding snapshots and the live account tables
        event_store: Read path for replay
        query_engine: Resolves historical currency and explicit snapshot states
        clock: Source of "now"
    """

    def __init__(
        self,
        storage: LedgerStorageInterface,
        event_store: EventStore,
        query_engine: "PointInTimeQueryEngine",
        clock: Optional[Callable[[], datetime]] = None,
        audit_logger: Optional[LedgerAuditLogger] = None,
    ):
        self._storage = storage
        self._events = event_store
        self._query = query_engine
        self._clock = clock or utc_now
        self._audit = audit_logger or LedgerAuditLogger()

    async def create_genesis_snapshot(
        self,
        user: UserAccount,
        unit_of_work: UnitOfWork,
    ) -> bool:
        """
        Write the empty base-case snapshot inside the account-creation
        transaction. Every account therefore has at least one snapshot.
        """
        record = SnapshotRecord(
            user_id=user.id,
            date=user.created_at,
            data=serialize_state(create_empty_state(user.currency)),
        )
        written = await self._storage.insert_snapshots([record], unit_of_work=unit_of_work)
        self._audit.snapshot_created(user.id, record.date, written == 1)
        return written == 1

    async def create_snapshot(self, user_id: int, at: Optional[datetime] = None) -> bool:
        """
        Materialize the state at `at` (default: now) and store it.

        Returns False when the month already had a snapshot.

        Raises:
            ValueError: If `at` is in the future; such a snapshot would
                miss every event appended before its date.
        """
        now = self._clock()
        at = ensure_utc(at) if at else now
        if at > now:
            raise ValueError(f"Cannot snapshot a future date: {at.isoformat()}")
        state = await self._query.get_state_at(user_id, at)
        record = SnapshotRecord(user_id=user_id, date=at, data=serialize_state(state))
        written = await self._storage.insert_snapshots([record])
        self._audit.snapshot_created(user_id, at, written == 1)
        return written == 1

    async def ensure_monthly_checkpoints(self, user_id: int) -> int:
        """
        Self-healing backfill of monthly checkpoints.

        Walks every month from account creation through the current month
        and writes a snapshot for each one that lacks one, including gaps
        left before an explicitly dated snapshot. Missing months are
        materialized incrementally from the best earlier snapshot, never by
        a full replay when such a snapshot exists.

        Returns:
            Number of snapshots written (0 when nothing was missing)

        Raises:
            UserNotFoundError: If the user does not exist
        """
        user = await self._storage.get_user(user_id)
        if user is None:
            raise UserNotFoundError(f"User not found: {user_id}")

        now = self._clock()
        existing = await self._storage.snapshot_months(user_id)
        missing = [
            month for month in month_starts(user.created_at, now)
            if (month.year, month.month) not in existing
        ]
        if not missing:
            return 0

        base = await self._storage.latest_snapshot(user_id, strictly_before=missing[0])
        if base is not None:
            state = hydrate_state(base.data)
            events = await self._events.replay_window(user_id, after=base.date, until=missing[-1])
        else:
            currency = await self._query.resolve_initial_currency(user)
            state = create_empty_state(currency)
            events = await self._events.replay_window(user_id, until=missing[-1])

        records = []
        index = 0
        for target in missing:
            while index < len(events) and events[index].timestamp <= target:
                state = reduce(state, events[index])
                index += 1
            records.append(
                SnapshotRecord(user_id=user_id, date=target, data=serialize_state(state))
            )

        written = await self._storage.insert_snapshots(records)
        self._audit.checkpoints_backfilled(
            user_id=user_id,
            missing=len(missing),
            created=written,
            base_snapshot_date=base.date if base else None,
            replayed_events=index,
        )
        return written


