"""
Tests for the event store: append, listing, filters and replay windows.
"""

from datetime import date

import pytest

from richflow.ledger.event_store import EventStore
from richflow.models.events import ActionType, EntityType, EventQuery
from tests.helpers import utc


class TestAppend:
    """Tests for event append."""

    @pytest.mark.asyncio
    async def test_store_assigns_id_and_timestamp(self, storage, clock):
        store = EventStore(storage)
        first = await store.append(
            ActionType.CREATE, EntityType.ASSET, 1, 10,
            after_value={"id": 10, "name": "Car", "value": 9000.0},
        )
        clock.advance(minutes=5)
        second = await store.append(ActionType.DELETE, EntityType.ASSET, 1, 10)

        assert (first.id, second.id) == (1, 2)
        assert first.timestamp == utc(2024, 1, 15, 9, 0)
        assert second.timestamp == utc(2024, 1, 15, 9, 5)
        assert first.entity_type == "ASSET"

    @pytest.mark.asyncio
    async def test_append_accepts_unknown_entity_types(self, storage):
        store = EventStore(storage)
        event = await store.append(ActionType.CREATE, "GOAL", 1, 3, after_value={"name": "Retire"})
        assert event.entity_type == "GOAL"

    @pytest.mark.asyncio
    async def test_rolled_back_append_is_invisible(self, storage):
        """Test events appended in a failed unit of work never appear."""
        store = EventStore(storage)

        with pytest.raises(RuntimeError):
            async with storage.unit_of_work() as uow:
                await store.append(ActionType.CREATE, EntityType.ASSET, 1, 10, unit_of_work=uow)
                raise RuntimeError("abort")

        assert await store.count(1) == 0
        # The id was not consumed either
        event = await store.append(ActionType.CREATE, EntityType.ASSET, 1, 10)
        assert event.id == 1

    @pytest.mark.asyncio
    async def test_staged_append_is_hidden_until_commit(self, storage):
        store = EventStore(storage)
        async with storage.unit_of_work() as uow:
            await store.append(ActionType.CREATE, EntityType.ASSET, 1, 10, unit_of_work=uow)
            assert await store.count(1) == 0
        assert await store.count(1) == 1

    @pytest.mark.asyncio
    async def test_typed_helpers(self, storage):
        store = EventStore(storage)
        income = await store.log_income_event(ActionType.CREATE, 1, 5, "PASSIVE", after_value={"amount": 1})
        user = await store.log_user_event(ActionType.UPDATE, 1, after_value={"currencyCode": "€"})
        cash = await store.log_cash_savings_event(ActionType.UPDATE, 1, 2, after_value={"amount": 1})

        assert (income.entity_type, income.entity_subtype) == ("INCOME", "PASSIVE")
        assert (user.entity_type, user.entity_id) == ("USER", 1)
        assert cash.entity_type == "CASH_SAVINGS"


class TestListing:
    """Tests for query / count / events_for_entity."""

    async def populate(self, storage, clock):
        store = EventStore(storage)
        clock.set(2024, 3, 1, 12, 0)
        await store.log_asset_event(ActionType.CREATE, 1, 10, after_value={"name": "Brokerage Account", "value": 1})
        await store.log_expense_event(ActionType.CREATE, 1, 11, after_value={"name": "Groceries", "amount": 1})
        clock.set(2024, 3, 31, 23, 0)
        await store.log_asset_event(ActionType.UPDATE, 1, 10, after_value={"name": "Brokerage Account", "value": 2})
        clock.set(2024, 4, 2, 8, 0)
        await store.log_liability_event(ActionType.CREATE, 1, 12, after_value={"name": "Mortgage", "value": 1})
        # Another user's event must never leak
        await store.log_asset_event(ActionType.CREATE, 2, 13, after_value={"name": "Brokerage", "value": 1})
        return store

    @pytest.mark.asyncio
    async def test_most_recent_first(self, storage, clock):
        store = await self.populate(storage, clock)
        events = await store.query(1)
        assert [e.entity_id for e in events] == [12, 10, 11, 10]
        assert await store.count(1) == 4

    @pytest.mark.asyncio
    async def test_pagination(self, storage, clock):
        store = await self.populate(storage, clock)
        page = await store.query(1, EventQuery(limit=2, offset=1))
        assert [e.id for e in page] == [3, 2]
        # Count ignores pagination
        assert await store.count(1, EventQuery(limit=2, offset=1)) == 4

    @pytest.mark.asyncio
    async def test_search_is_case_insensitive(self, storage, clock):
        store = await self.populate(storage, clock)
        assert await store.count(1, EventQuery(search="BROKERAGE")) == 2
        assert await store.count(1, EventQuery(search="liability")) == 1

    @pytest.mark.asyncio
    async def test_date_filters_cover_whole_days(self, storage, clock):
        store = await self.populate(storage, clock)
        march = EventQuery(start_date=date(2024, 3, 1), end_date=date(2024, 3, 31))
        assert await store.count(1, march) == 3

    @pytest.mark.asyncio
    async def test_entity_filters(self, storage, clock):
        store = await self.populate(storage, clock)
        assert await store.count(1, EventQuery(entity_type=EntityType.ASSET)) == 2
        history = await store.events_for_entity(1, EntityType.ASSET, 10)
        assert [e.action_type for e in history] == [ActionType.UPDATE, ActionType.CREATE]


class TestReplayWindow:
    """Tests for the replay read path."""

    @pytest.mark.asyncio
    async def test_window_bounds(self, storage, clock):
        """Test the window is (after, until] in chronological order."""
        store = EventStore(storage)
        for day in (1, 2, 3, 4):
            clock.set(2024, 3, day)
            await store.log_asset_event(ActionType.CREATE, 1, day, after_value={"value": day})

        window = await store.replay_window(1, after=utc(2024, 3, 1), until=utc(2024, 3, 3))
        assert [e.entity_id for e in window] == [2, 3]

        assert [e.entity_id for e in await store.replay_window(1)] == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_ties_ordered_by_id(self, storage, clock):
        store = EventStore(storage)
        for entity_id in (7, 5, 9):
            await store.log_asset_event(ActionType.CREATE, 1, entity_id)
        window = await store.replay_window(1)
        assert [e.entity_id for e in window] == [7, 5, 9]
        assert [e.id for e in window] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_first_currency_change(self, storage, clock):
        store = EventStore(storage)
        await store.log_user_event(ActionType.CREATE, 1, after_value={"currencyCode": "$"})
        assert await store.first_currency_change(1) is None

        clock.advance(days=1)
        first = await store.log_user_event(
            ActionType.UPDATE, 1,
            before_value={"currencyCode": "$"}, after_value={"currencyCode": "€"},
        )
        clock.advance(days=1)
        await store.log_user_event(
            ActionType.UPDATE, 1,
            before_value={"currencyCode": "€"}, after_value={"currencyCode": "£"},
        )
        assert (await store.first_currency_change(1)).id == first.id

    @pytest.mark.asyncio
    async def test_large_window_is_not_truncated(self, storage, monkeypatch):
        """Test the fetch limit only warns; replay still sees every event."""
        monkeypatch.setenv("LEDGER_REPLAY_FETCH_LIMIT", "2")
        store = EventStore(storage)
        for entity_id in (1, 2, 3):
            await store.log_asset_event(ActionType.CREATE, 1, entity_id)

        assert len(await store.replay_window(1)) == 3


class TestStaging:
    """Tests for what a unit of work copies."""

    @pytest.mark.asyncio
    async def test_only_touched_users_are_copied(self, recorder, storage, clock):
        ana = await recorder.register_user("Ana")
        ben = await recorder.register_user("Ben")
        clock.advance(days=1)
        ana_log = storage._tables.events[ana.id]
        ben_log = storage._tables.events[ben.id]
        ben_assets = storage._tables.assets[ben.id]

        await recorder.add_asset(ana.id, "Car", 9000)

        assert storage._tables.events[ben.id] is ben_log
        assert storage._tables.assets[ben.id] is ben_assets
        assert storage._tables.events[ana.id] is not ana_log
        # The committed log was never written in place
        assert len(ana_log) == 3
        assert len(storage._tables.events[ana.id]) == 4
