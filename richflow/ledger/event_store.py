"""
Event Store

The single write path into the event log and the read paths the replay
engine needs.

DESIGN DECISION: Appends carry no semantic validation. Producers validate
user input, mutate the live tables, then call append with the exact
before/after values they persisted, passing the same unit of work so the
log and the tables commit together.

There is no update or delete here or anywhere below.
"""

from datetime import datetime
from typing import Any, Optional, Union

import structlog

from richflow.audit import LedgerAuditLogger
from richflow.config import get_settings
from richflow.models.events import (
    ActionType,
    EntityType,
    Event,
    EventQuery,
    IncomeType,
    NewEvent,
    ensure_utc,
)
from richflow.services.storage import EventStorageInterface, UnitOfWork


logger = structlog.get_logger(__name__)

FieldSnapshot = Optional[dict[str, Any]]


class EventStore:
    """
    Append-only ledger of domain events.

    Usage:
        store = EventStore(storage)
        async with storage.unit_of_work() as uow:
            await uow.put_asset(user_id, entry)
            await store.append(
                ActionType.CREATE, EntityType.ASSET, user_id, entry.id,
                after_value=entry.model_dump(), unit_of_work=uow,
            )
    """

    def __init__(
        self,
        storage: EventStorageInterface,
        audit_logger: Optional[LedgerAuditLogger] = None,
    ):
        self._storage = storage
        self._audit = audit_logger or LedgerAuditLogger()
        self._settings = get_settings().ledger

    async def append(
        self,
        action_type: ActionType,
        entity_type: Union[EntityType, str],
        user_id: int,
        entity_id: int,
        *,
        entity_subtype: Optional[str] = None,
        before_value: FieldSnapshot = None,
        after_value: FieldSnapshot = None,
        unit_of_work: Optional[UnitOfWork] = None,
    ) -> Event:
        """
        Record one change. The store assigns id and timestamp.

        Args:
            unit_of_work: Transaction of the entity mutation this event
                documents. Omit only for events with no live-table change.
        """
        event = await self._storage.append_event(
            NewEvent(
                action_type=action_type,
                entity_type=entity_type,
                entity_subtype=entity_subtype,
                before_value=before_value,
                after_value=after_value,
                user_id=user_id,
                entity_id=entity_id,
            ),
            unit_of_work=unit_of_work,
        )
        self._audit.event_appended(event)
        return event

    async def query(
        self,
        user_id: int,
        query: Optional[EventQuery] = None,
    ) -> list[Event]:
        """
        List events most-recent-first.

        Replay code must not fold this list directly; use replay_window,
        or sort chronologically first.
        """
        if query is None:
            query = EventQuery(limit=self._settings.default_page_size)
        return await self._storage.list_events(user_id, query)

    async def count(
        self,
        user_id: int,
        query: Optional[EventQuery] = None,
    ) -> int:
        return await self._storage.count_events(user_id, query or EventQuery())

    async def events_for_entity(
        self,
        user_id: int,
        entity_type: Union[EntityType, str],
        entity_id: int,
        limit: Optional[int] = None,
    ) -> list[Event]:
        """History of a single entity, most recent first."""
        query = EventQuery(
            entity_type=entity_type,
            entity_id=entity_id,
            limit=limit or self._settings.default_page_size,
        )
        return await self._storage.list_events(user_id, query)

    async def replay_window(
        self,
        user_id: int,
        after: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[Event]:
        """
        Events with `after < timestamp <= until`, ascending by (timestamp, id).

        This is the only read path replay uses.
        """
        events = await self._storage.events_between(
            user_id,
            after=ensure_utc(after) if after else None,
            until=ensure_utc(until) if until else None,
        )
        if len(events) > self._settings.replay_fetch_limit:
            logger.warning(
                "large_replay_window",
                user_id=user_id,
                events=len(events),
                threshold=self._settings.replay_fetch_limit,
            )
        return events

    async def first_currency_change(self, user_id: int) -> Optional[Event]:
        return await self._storage.first_currency_change(user_id)

    # ------------------------------------------------------------------
    # Per-entity helpers used by producers
    # ------------------------------------------------------------------

    async def log_income_event(
        self,
        action_type: ActionType,
        user_id: int,
        income_id: int,
        income_type: Union[IncomeType, str],
        before_value: FieldSnapshot = None,
        after_value: FieldSnapshot = None,
        unit_of_work: Optional[UnitOfWork] = None,
    ) -> Event:
        subtype = income_type.value if isinstance(income_type, IncomeType) else income_type
        return await self.append(
            action_type, EntityType.INCOME, user_id, income_id,
            entity_subtype=subtype,
            before_value=before_value,
            after_value=after_value,
            unit_of_work=unit_of_work,
        )

    async def log_expense_event(
        self,
        action_type: ActionType,
        user_id: int,
        expense_id: int,
        before_value: FieldSnapshot = None,
        after_value: FieldSnapshot = None,
        unit_of_work: Optional[UnitOfWork] = None,
    ) -> Event:
        return await self.append(
            action_type, EntityType.EXPENSE, user_id, expense_id,
            before_value=before_value,
            after_value=after_value,
            unit_of_work=unit_of_work,
        )

    async def log_asset_event(
        self,
        action_type: ActionType,
        user_id: int,
        asset_id: int,
        before_value: FieldSnapshot = None,
        after_value: FieldSnapshot = None,
        unit_of_work: Optional[UnitOfWork] = None,
    ) -> Event:
        return await self.append(
            action_type, EntityType.ASSET, user_id, asset_id,
            before_value=before_value,
            after_value=after_value,
            unit_of_work=unit_of_work,
        )

    async def log_liability_event(
        self,
        action_type: ActionType,
        user_id: int,
        liability_id: int,
        before_value: FieldSnapshot = None,
        after_value: FieldSnapshot = None,
        unit_of_work: Optional[UnitOfWork] = None,
    ) -> Event:
        return await self.append(
            action_type, EntityType.LIABILITY, user_id, liability_id,
            before_value=before_value,
            after_value=after_value,
            unit_of_work=unit_of_work,
        )

    async def log_cash_savings_event(
        self,
        action_type: ActionType,
        user_id: int,
        cash_savings_id: int,
        before_value: FieldSnapshot = None,
        after_value: FieldSnapshot = None,
        unit_of_work: Optional[UnitOfWork] = None,
    ) -> Event:
        return await self.append(
            action_type, EntityType.CASH_SAVINGS, user_id, cash_savings_id,
            before_value=before_value,
            after_value=after_value,
            unit_of_work=unit_of_work,
        )

    async def log_user_event(
        self,
        action_type: ActionType,
        user_id: int,
        before_value: FieldSnapshot = None,
        after_value: FieldSnapshot = None,
        unit_of_work: Optional[UnitOfWork] = None,
    ) -> Event:
        # A user's own events use the user id as the entity id
        return await self.append(
            action_type, EntityType.USER, user_id, user_id,
            before_value=before_value,
            after_value=after_value,
            unit_of_work=unit_of_work,
        )
