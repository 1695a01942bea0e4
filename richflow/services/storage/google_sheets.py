"""
Google Sheets Storage Implementation

DESIGN DECISION: Google Sheets can hold the event log and the monthly
checkpoints because:
1. Users can inspect their own history directly in Sheets
2. No database setup required
3. Both tables are append-only, which suits a spreadsheet well

TRADEOFFS:
- Not suitable for high-volume data (fine for a personal ledger)
- No transactions, so a Sheets event log cannot join a unit of work with
  the live tables. GoogleSheetsMirroredStorage keeps the transactional
  tables in memory, copies each commit to Sheets and rebuilds the tables
  from the sheets when a new process starts.
- Limited query capabilities (we filter in Python)

The implementation follows the abstract interfaces, so the engine does not
know which backend it is reading from.
"""

import asyncio
import json
from datetime import datetime
from typing import Callable, Optional

import gspread
import structlog
from google.oauth2.service_account import Credentials
from tenacity import retry, stop_after_attempt, wait_exponential

from richflow.config import get_settings
from richflow.models.events import ActionType, EntityType, Event, EventQuery, NewEvent
from richflow.models.state import Currency, SnapshotRecord, UserAccount
from richflow.services.storage.interface import (
    EventStorageInterface,
    SnapshotStorageInterface,
    StorageConnectionError,
    StorageError,
    UnitOfWork,
)
from richflow.services.storage.memory import InMemoryLedgerStorage, _Tables, utc_now


logger = structlog.get_logger(__name__)


# Column mappings for Events sheet
EVENT_COLUMNS = [
    "id",
    "timestamp",
    "user_id",
    "entity_id",
    "action_type",
    "entity_type",
    "entity_subtype",
    "before_value_json",
    "after_value_json",
]

# Column mappings for Snapshots sheet
SNAPSHOT_COLUMNS = [
    "user_id",
    "date",
    "month",
    "data_json",
]


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and provides retry logic for API calls.
    """

    def __init__(self):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._settings = get_settings().google_sheets

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise StorageConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise StorageConnectionError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(
                    self._settings.spreadsheet_id
                )
            except gspread.SpreadsheetNotFound:
                raise StorageConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def get_events_sheet(self) -> gspread.Worksheet:
        """Get or create the Events worksheet."""
        return self._get_or_create(
            self._settings.events_sheet_name, EVENT_COLUMNS, rows=5000
        )

    def get_snapshots_sheet(self) -> gspread.Worksheet:
        """Get or create the Snapshots worksheet."""
        return self._get_or_create(
            self._settings.snapshots_sheet_name, SNAPSHOT_COLUMNS, rows=1000
        )

    def _get_or_create(self, title: str, columns: list[str], rows: int) -> gspread.Worksheet:
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            # Create the sheet with headers
            sheet = spreadsheet.add_worksheet(
                title=title,
                rows=rows,
                cols=len(columns),
            )
            sheet.append_row(columns)
        return sheet


def _safe_getter(row: list) -> Callable[[int], str]:
    """Handle missing columns gracefully."""
    def safe_get(index: int, default: str = "") -> str:
        try:
            return row[index] if row[index] else default
        except IndexError:
            return default
    return safe_get


def event_to_row(event: Event) -> list:
    """Convert an Event to a spreadsheet row."""
    return [
        str(event.id),
        event.timestamp.isoformat(),
        str(event.user_id),
        str(event.entity_id),
        event.action_type.value,
        event.entity_type,
        event.entity_subtype or "",
        json.dumps(event.before_value) if event.before_value is not None else "",
        json.dumps(event.after_value) if event.after_value is not None else "",
    ]


def row_to_event(row: list) -> Event:
    """Convert a spreadsheet row to an Event."""
    safe_get = _safe_getter(row)
    return Event(
        id=int(safe_get(0)),
        timestamp=datetime.fromisoformat(safe_get(1)),
        user_id=int(safe_get(2)),
        entity_id=int(safe_get(3)),
        action_type=ActionType(safe_get(4)),
        entity_type=safe_get(5),
        entity_subtype=safe_get(6) or None,
        before_value=json.loads(safe_get(7)) if safe_get(7) else None,
        after_value=json.loads(safe_get(8)) if safe_get(8) else None,
    )


def snapshot_to_row(snapshot: SnapshotRecord) -> list:
    """Convert a SnapshotRecord to a spreadsheet row."""
    year, month = snapshot.month_key
    return [
        str(snapshot.user_id),
        snapshot.date.isoformat(),
        f"{year:04d}-{month:02d}",
        json.dumps(snapshot.data),
    ]


def row_to_snapshot(row: list) -> SnapshotRecord:
    """Convert a spreadsheet row to a SnapshotRecord."""
    safe_get = _safe_getter(row)
    return SnapshotRecord(
        user_id=int(safe_get(0)),
        date=datetime.fromisoformat(safe_get(1)),
        data=json.loads(safe_get(3)),
    )


class GoogleSheetsEventStorage(EventStorageInterface):
    """
    Google Sheets implementation of the event log.

    Events are append-only rows; value snapshots are JSON-serialized.
    The row position doubles as the event id.
    """

    def __init__(
        self,
        client: Optional[GoogleSheetsClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._client = client or GoogleSheetsClient()
        self._clock = clock or utc_now

    def _load_events(self, user_id: Optional[int] = None) -> list[Event]:
        """Parse the event rows of one user, or of everyone when user_id is None."""
        sheet = self._client.get_events_sheet()
        all_rows = sheet.get_all_values()[1:]  # Skip header

        events = []
        for row in all_rows:
            if not row or not row[0]:  # Skip empty rows
                continue
            if user_id is not None and len(row) > 2 and row[2] != str(user_id):
                continue
            try:
                events.append(row_to_event(row))
            except (ValueError, TypeError) as e:
                logger.warning("malformed_event_row_skipped", row_id=row[0], error=str(e))
        return events

    async def append_event(
        self,
        event: NewEvent,
        unit_of_work: Optional[UnitOfWork] = None,
    ) -> Event:
        """Append an event row."""
        if unit_of_work is not None:
            raise StorageError("Google Sheets event storage cannot join a unit of work")
        return await self._append_event_row(event)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def _append_event_row(self, event: NewEvent) -> Event:
        try:
            sheet = self._client.get_events_sheet()
            # Header occupies row 1, so the total row count is the next id
            next_id = len(sheet.get_all_values())
            stored = event.stamp(next_id, self._clock())
            sheet.append_row(event_to_row(stored), value_input_option="RAW")
            return stored
        except Exception as e:
            raise StorageError(f"Failed to append event: {e}")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def append_stored_events(self, events: list[Event]) -> None:
        """
        Append events that already carry their id and timestamp.

        Ids already present are skipped, so a retry after a write that
        landed but reported failure does not duplicate rows.
        """
        if not events:
            return
        try:
            sheet = self._client.get_events_sheet()
            present = {row[0] for row in sheet.get_all_values()[1:] if row}
            rows = [event_to_row(e) for e in events if str(e.id) not in present]
            if rows:
                sheet.append_rows(rows, value_input_option="RAW")
        except Exception as e:
            raise StorageError(f"Failed to append events: {e}")

    async def all_events(self) -> list[Event]:
        """Every user's events in sheet order."""
        try:
            return self._load_events()
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to read events: {e}")

    async def list_events(self, user_id: int, query: EventQuery) -> list[Event]:
        """List events, newest first."""
        try:
            events = [e for e in self._load_events(user_id) if query.matches(e)]
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to list events: {e}")

        events.sort(key=lambda e: e.sort_key, reverse=True)
        return events[query.offset:query.offset + query.limit]

    async def count_events(self, user_id: int, query: EventQuery) -> int:
        try:
            return sum(1 for e in self._load_events(user_id) if query.matches(e))
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to count events: {e}")

    async def events_between(
        self,
        user_id: int,
        after: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[Event]:
        """Replay window, oldest first."""
        try:
            events = [
                e for e in self._load_events(user_id)
                if (after is None or e.timestamp > after)
                and (until is None or e.timestamp <= until)
            ]
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to read event window: {e}")

        events.sort(key=lambda e: e.sort_key)
        return events

    async def first_currency_change(self, user_id: int) -> Optional[Event]:
        window = await self.events_between(user_id)
        for event in window:
            if (
                event.entity_type == EntityType.USER.value
                and event.action_type == ActionType.UPDATE
                and event.before_value
                and event.before_value.get("currencyCode")
            ):
                return event
        return None


class GoogleSheetsSnapshotStorage(SnapshotStorageInterface):
    """
    Google Sheets implementation of checkpoint storage.

    One row per (user, month). Duplicate months are skipped on insert.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _load_snapshots(self, user_id: Optional[int] = None) -> list[SnapshotRecord]:
        sheet = self._client.get_snapshots_sheet()
        all_rows = sheet.get_all_values()[1:]

        snapshots = []
        for row in all_rows:
            if not row or not row[0]:
                continue
            if user_id is not None and row[0] != str(user_id):
                continue
            try:
                snapshots.append(row_to_snapshot(row))
            except (ValueError, TypeError) as e:
                logger.warning("malformed_snapshot_row_skipped", user_id=user_id, error=str(e))
        return snapshots

    async def insert_snapshots(
        self,
        snapshots: list[SnapshotRecord],
        unit_of_work: Optional[UnitOfWork] = None,
    ) -> int:
        """Append snapshot rows for months that have none yet."""
        if unit_of_work is not None:
            raise StorageError("Google Sheets snapshot storage cannot join a unit of work")
        if not snapshots:
            return 0
        return await self._append_snapshot_rows(snapshots)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def _append_snapshot_rows(self, snapshots: list[SnapshotRecord]) -> int:
        try:
            sheet = self._client.get_snapshots_sheet()
            taken = {
                (row[0], row[2])
                for row in sheet.get_all_values()[1:]
                if len(row) > 2
            }
            rows = []
            for snapshot in snapshots:
                row = snapshot_to_row(snapshot)
                key = (row[0], row[2])
                if key in taken:
                    continue
                taken.add(key)
                rows.append(row)
            if rows:
                sheet.append_rows(rows, value_input_option="RAW")
            return len(rows)
        except Exception as e:
            raise StorageError(f"Failed to insert snapshots: {e}")

    async def latest_snapshot(
        self,
        user_id: int,
        at_or_before: Optional[datetime] = None,
        strictly_before: Optional[datetime] = None,
    ) -> Optional[SnapshotRecord]:
        try:
            candidates = [
                s for s in self._load_snapshots(user_id)
                if (at_or_before is None or s.date <= at_or_before)
                and (strictly_before is None or s.date < strictly_before)
            ]
        except Exception as e:
            raise StorageError(f"Failed to read snapshots: {e}")
        return max(candidates, key=lambda s: s.date, default=None)

    async def snapshot_months(self, user_id: int) -> set[tuple[int, int]]:
        try:
            return {s.month_key for s in self._load_snapshots(user_id)}
        except Exception as e:
            raise StorageError(f"Failed to read snapshots: {e}")

    async def all_snapshots(self) -> list[SnapshotRecord]:
        try:
            return self._load_snapshots()
        except Exception as e:
            raise StorageError(f"Failed to read snapshots: {e}")


def _user_from_event(event: Event) -> UserAccount:
    after = event.after_value or {}
    defaults = get_settings().ledger
    code = str(after.get("currencyCode") or defaults.default_currency_symbol)
    return UserAccount(
        id=event.user_id,
        name=str(after.get("name") or ""),
        created_at=event.timestamp,
        currency=Currency(symbol=code, name=str(after.get("currencyName") or code)),
    )


def restore_tables(events: list[Event], snapshots: list[SnapshotRecord]) -> _Tables:
    """
    Rebuild the in-memory tables from mirrored rows.

    Users come from their USER CREATE events, live tables from folding
    each user's log. A row repeated by a retried write is read once.
    Rows of users without a CREATE event belong to a registration that
    was rolled back and are left out. Counters resume past every id seen,
    orphans included.
    """
    from richflow.ledger.reducers import create_empty_state, fold_events

    unique: dict[int, Event] = {}
    for event in events:
        unique.setdefault(event.id, event)
    log = sorted(unique.values(), key=lambda e: e.id)

    tables = _Tables()
    for event in log:
        if event.entity_type == EntityType.USER.value and event.action_type == ActionType.CREATE:
            tables.users.setdefault(event.user_id, _user_from_event(event))

    for event in log:
        if event.user_id in tables.users:
            tables.events.setdefault(event.user_id, []).append(event)

    for user_id, user in tables.users.items():
        user_log = tables.events.get(user_id, [])
        state = fold_events(create_empty_state(user.currency), user_log)
        tables.users[user_id] = user.model_copy(update={"currency": state.currency})
        tables.assets[user_id] = dict(state.assets)
        tables.liabilities[user_id] = dict(state.liabilities)
        tables.income_lines[user_id] = dict(state.income_lines)
        tables.expenses[user_id] = dict(state.expenses)
        cash_ids = [e.entity_id for e in user_log if e.entity_type == EntityType.CASH_SAVINGS.value]
        if cash_ids:
            tables.cash[user_id] = (cash_ids[-1], state.cash_savings)

    for snapshot in snapshots:
        if snapshot.user_id in tables.users:
            months = tables.snapshots.setdefault(snapshot.user_id, {})
            months.setdefault(snapshot.month_key, snapshot)

    tables.next_event_id = max(unique, default=0) + 1
    tables.next_user_id = max(
        [e.user_id for e in log] + [s.user_id for s in snapshots], default=0
    ) + 1
    tables.next_entity_id = max(
        (e.entity_id for e in log if e.entity_type != EntityType.USER.value), default=0
    ) + 1
    return tables


class GoogleSheetsMirroredStorage(InMemoryLedgerStorage):
    """
    In-memory ledger whose committed events and snapshots are copied to
    Google Sheets.

    The in-memory tables stay the transactional source of truth. The copy
    is written just before each commit, so a Sheets failure rolls the
    unit of work back instead of leaving the sheet behind the ledger.

    The sheets are read back on first use. Snapshot rows are written
    before event rows, and restore only keeps users that have a CREATE
    event, so rows left by a failed commit never come back as state.
    """

    def __init__(
        self,
        client: Optional[GoogleSheetsClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        super().__init__(clock=clock)
        client = client or GoogleSheetsClient()
        self._event_sheet = GoogleSheetsEventStorage(client, clock)
        self._snapshot_sheet = GoogleSheetsSnapshotStorage(client)
        self._loaded = False
        self._load_lock = asyncio.Lock()

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        async with self._load_lock:
            if self._loaded:
                return
            events = await self._event_sheet.all_events()
            snapshots = await self._snapshot_sheet.all_snapshots()
            self._tables = restore_tables(events, snapshots)
            self._loaded = True
            logger.info(
                "ledger_restored",
                users=len(self._tables.users),
                events=len(events),
                snapshots=len(snapshots),
            )

    async def _before_commit(self, current: _Tables, staged: _Tables) -> None:
        new_events = sorted(
            (
                event
                for user_id in staged.owned
                for event in staged.user_events(user_id)[len(current.user_events(user_id)):]
            ),
            key=lambda e: e.id,
        )
        new_snapshots = [
            snapshot
            for user_id in staged.owned
            for month, snapshot in staged.snapshots.get(user_id, {}).items()
            if month not in current.snapshots.get(user_id, {})
        ]
        try:
            if new_snapshots:
                await self._snapshot_sheet.insert_snapshots(new_snapshots)
            await self._event_sheet.append_stored_events(new_events)
        except Exception:
            # Some rows may have landed; their ids are retired with the commit
            current.next_user_id = staged.next_user_id
            current.next_entity_id = staged.next_entity_id
            current.next_event_id = staged.next_event_id
            raise
        logger.info(
            "ledger_mirrored",
            events=len(new_events),
            snapshots=len(new_snapshots),
        )
