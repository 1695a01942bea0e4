"""
Tests for snapshot serialization and the checkpoint manager.
"""

import asyncio
import json
from datetime import timedelta, timezone

import pytest
from hypothesis import given, settings, strategies as st

from richflow.ledger.reducers import create_empty_state
from richflow.ledger.snapshots import (
    add_months,
    first_of_month,
    hydrate_state,
    month_starts,
    serialize_state,
)
from richflow.models.state import (
    BalanceEntry,
    Currency,
    ExpenseEntry,
    FinancialState,
    IncomeLineEntry,
)
from richflow.services.storage import UserNotFoundError
from tests.helpers import build_history, record_replays, utc


USD = Currency(symbol="$", name="USD")

amounts = st.floats(min_value=-1e9, max_value=1e9, allow_nan=False, allow_infinity=False)
names = st.text(max_size=20)
ids = st.integers(min_value=1, max_value=10000)


@st.composite
def financial_states(draw):
    assets = draw(st.dictionaries(ids, st.tuples(names, amounts), max_size=5))
    liabilities = draw(st.dictionaries(ids, st.tuples(names, amounts), max_size=5))
    incomes = draw(st.dictionaries(
        ids,
        st.tuples(
            names,
            amounts,
            st.sampled_from(["EARNED", "PASSIVE", "PORTFOLIO", "passive"]),
            st.sampled_from([None, "EMPLOYEE", "SELF_EMPLOYED"]),
        ),
        max_size=5,
    ))
    expenses = draw(st.dictionaries(ids, st.tuples(names, amounts), max_size=5))
    return FinancialState(
        assets={k: BalanceEntry(id=k, name=n, value=v) for k, (n, v) in assets.items()},
        liabilities={k: BalanceEntry(id=k, name=n, value=v) for k, (n, v) in liabilities.items()},
        income_lines={
            k: IncomeLineEntry(id=k, name=n, amount=a, type=t, quadrant=q)
            for k, (n, a, t, q) in incomes.items()
        },
        expenses={k: ExpenseEntry(id=k, name=n, amount=a) for k, (n, a) in expenses.items()},
        cash_savings=draw(amounts),
        currency=draw(st.sampled_from([USD, Currency(symbol="€", name="EUR")])),
    )


class TestSerialization:
    """Tests for serialize_state / hydrate_state."""

    @given(financial_states())
    @settings(max_examples=100, deadline=None)
    def test_round_trip(self, state):
        """Test hydrate(serialize(s)) == s."""
        assert hydrate_state(serialize_state(state)) == state

    @given(financial_states())
    @settings(max_examples=100, deadline=None)
    def test_round_trip_through_json(self, state):
        """Test the serialized form survives a JSON document store."""
        document = json.loads(json.dumps(serialize_state(state)))
        assert hydrate_state(document) == state

    def test_serialization_is_canonical(self):
        """Test equal states serialize identically regardless of insertion order."""
        a = BalanceEntry(id=1, name="A", value=1.0)
        b = BalanceEntry(id=2, name="B", value=2.0)
        first = FinancialState(assets={1: a, 2: b}, currency=USD)
        second = FinancialState(assets={2: b, 1: a}, currency=USD)
        assert json.dumps(serialize_state(first)) == json.dumps(serialize_state(second))

    def test_empty_state_round_trip(self):
        """Test the genesis state survives serialization."""
        empty = create_empty_state(USD)
        assert hydrate_state(serialize_state(empty)) == empty


class TestMonthArithmetic:
    """Tests for month helpers."""

    def test_first_of_month(self):
        """Test truncation to the first instant of the UTC month."""
        assert first_of_month(utc(2024, 3, 17, 13, 45)) == utc(2024, 3, 1)

    def test_first_of_month_converts_to_utc(self):
        """Test an instant in another zone is truncated in UTC."""
        minus_five = timezone(timedelta(hours=-5))
        # 2024-03-31 22:00 at -05:00 is already April in UTC
        value = utc(2024, 4, 1, 3, 0).astimezone(minus_five)
        assert first_of_month(value) == utc(2024, 4, 1)

    def test_add_months_clamps_day(self):
        """Test Jan 31 + 1 month lands on the last day of February."""
        assert add_months(utc(2024, 1, 31), 1) == utc(2024, 2, 29)
        assert add_months(utc(2023, 1, 31), 1) == utc(2023, 2, 28)

    def test_add_months_negative(self):
        """Test stepping back across a year boundary."""
        assert add_months(utc(2024, 1, 15), -6) == utc(2023, 7, 15)

    def test_month_starts_inclusive(self):
        """Test every month start from start's month through end."""
        assert list(month_starts(utc(2024, 1, 15), utc(2024, 3, 1))) == [
            utc(2024, 1, 1),
            utc(2024, 2, 1),
            utc(2024, 3, 1),
        ]

    def test_month_starts_empty_when_start_month_is_after_end(self):
        """Test nothing is yielded for an empty range."""
        assert list(month_starts(utc(2024, 5, 1), utc(2024, 4, 30))) == []


class TestSnapshotManager:
    """Tests for genesis, explicit and backfilled snapshots."""

    @pytest.mark.asyncio
    async def test_genesis_snapshot_on_registration(self, recorder, storage, clock):
        """Test every new account starts with an empty snapshot."""
        user = await recorder.register_user("Ana")

        snapshot = await storage.latest_snapshot(user.id)
        assert snapshot is not None
        assert snapshot.date == clock()
        assert hydrate_state(snapshot.data) == create_empty_state(user.currency)

    @pytest.mark.asyncio
    async def test_backfill_fills_missing_months(self, recorder, service, storage, clock):
        """Test missing months through the current one are written once."""
        user = await recorder.register_user("Ana")
        clock.set(2024, 4, 10)

        created = await service.ensure_monthly_checkpoints(user.id)

        assert created == 3
        assert await storage.snapshot_months(user.id) == {
            (2024, 1), (2024, 2), (2024, 3), (2024, 4),
        }
        assert await service.ensure_monthly_checkpoints(user.id) == 0

    @pytest.mark.asyncio
    async def test_backfill_without_genesis(self, service, storage, clock):
        """Test an account with no snapshot is backfilled from its creation month."""
        async with storage.unit_of_work() as uow:
            user = await uow.create_user("Legacy", USD)
        clock.set(2024, 4, 10)

        assert await service.ensure_monthly_checkpoints(user.id) == 4
        january = await storage.latest_snapshot(user.id, at_or_before=utc(2024, 1, 31))
        assert january.date == utc(2024, 1, 1)

    @pytest.mark.asyncio
    async def test_backfilled_contents_match_history(self, recorder, service, storage, clock):
        """Test each checkpoint holds the state at its month start."""
        user = await recorder.register_user("Ana")
        clock.advance(days=1)
        asset = await recorder.add_asset(user.id, "Brokerage", 8000)
        clock.set(2024, 2, 20)
        await recorder.add_liability(user.id, "Car loan", 5000)
        clock.set(2024, 4, 10)

        await service.ensure_monthly_checkpoints(user.id)

        february = await storage.latest_snapshot(user.id, at_or_before=utc(2024, 2, 1))
        assert february.date == utc(2024, 2, 1)
        state = hydrate_state(february.data)
        assert state.assets[asset.id].value == 8000.0
        assert state.liabilities == {}

        march = await storage.latest_snapshot(user.id, at_or_before=utc(2024, 3, 1))
        state = hydrate_state(march.data)
        assert [l.value for l in state.liabilities.values()] == [5000.0]

        for month_start in (utc(2024, 2, 1), utc(2024, 3, 1), utc(2024, 4, 1)):
            snapshot = await storage.latest_snapshot(user.id, at_or_before=month_start)
            replayed = await service.query_engine.replay_from_genesis(user.id, month_start)
            assert hydrate_state(snapshot.data) == replayed

    @pytest.mark.asyncio
    async def test_concurrent_backfills_do_not_duplicate(self, recorder, service, storage, clock):
        """Test racing backfills write each month once."""
        user = await recorder.register_user("Ana")
        clock.set(2024, 4, 10)

        results = await asyncio.gather(
            service.ensure_monthly_checkpoints(user.id),
            service.ensure_monthly_checkpoints(user.id),
        )

        assert sum(results) == 3
        assert len(await storage.snapshot_months(user.id)) == 4

    @pytest.mark.asyncio
    async def test_backfill_unknown_user(self, service):
        """Test backfilling a missing user raises."""
        with pytest.raises(UserNotFoundError):
            await service.ensure_monthly_checkpoints(999)

    @pytest.mark.asyncio
    async def test_create_snapshot_once_per_month(self, recorder, service, storage, clock):
        """Test explicit snapshots skip months that already have one."""
        user = await recorder.register_user("Ana")
        clock.advance(days=5)
        # January already has the genesis snapshot
        assert await service.create_snapshot(user.id) is False

        clock.set(2024, 2, 10)
        await recorder.add_asset(user.id, "Car", 9000)
        clock.advance(hours=1)
        assert await service.create_snapshot(user.id) is True
        assert await service.create_snapshot(user.id) is False

        snapshot = await storage.latest_snapshot(user.id)
        assert snapshot.date == clock()
        assert [a.value for a in hydrate_state(snapshot.data).assets.values()] == [9000.0]

    @pytest.mark.asyncio
    async def test_create_snapshot_rejects_future(self, recorder, service, clock):
        """Test a snapshot cannot be dated after now."""
        user = await recorder.register_user("Ana")
        with pytest.raises(ValueError):
            await service.create_snapshot(user.id, clock() + timedelta(days=1))

    @pytest.mark.asyncio
    async def test_backfill_fills_gaps_before_explicit_snapshot(self, recorder, service, storage, clock):
        """Test a past-dated snapshot does not hide earlier missing months."""
        user = await build_history(recorder, clock)
        assert await service.create_snapshot(user.id, utc(2024, 5, 10)) is True

        # February through April, then June and July
        assert await service.ensure_monthly_checkpoints(user.id) == 5
        assert await storage.snapshot_months(user.id) == {(2024, month) for month in range(1, 8)}

        april = await storage.latest_snapshot(user.id, at_or_before=utc(2024, 4, 30, 23, 0))
        assert april.date == utc(2024, 4, 1)
        replayed = await service.query_engine.replay_from_genesis(user.id, utc(2024, 4, 1))
        assert hydrate_state(april.data) == replayed


class TestBackfillCost:
    """Tests for how much of the log a backfill reads."""

    @pytest.mark.asyncio
    async def test_first_backfill_starts_from_genesis_snapshot(self, recorder, service, monkeypatch, clock):
        user = await build_history(recorder, clock)
        calls = record_replays(monkeypatch, service.event_store)

        await service.ensure_monthly_checkpoints(user.id)

        assert len(calls) == 1
        after, until, _ = calls[0]
        assert after == user.created_at
        assert until == utc(2024, 7, 1)

    @pytest.mark.asyncio
    async def test_later_backfill_starts_from_latest_checkpoint(self, recorder, service, monkeypatch, clock):
        """Test only events after the last checkpoint are folded."""
        user = await build_history(recorder, clock)
        await service.ensure_monthly_checkpoints(user.id)
        clock.set(2024, 7, 20)
        await recorder.set_cash_savings(user.id, 4000)
        clock.set(2024, 9, 5)
        calls = record_replays(monkeypatch, service.event_store)

        assert await service.ensure_monthly_checkpoints(user.id) == 2

        assert calls == [(utc(2024, 7, 1), utc(2024, 9, 1), 1)]

    @pytest.mark.asyncio
    async def test_nothing_missing_reads_nothing(self, recorder, service, monkeypatch, clock):
        user = await build_history(recorder, clock)
        await service.ensure_monthly_checkpoints(user.id)
        calls = record_replays(monkeypatch, service.event_store)

        assert await service.ensure_monthly_checkpoints(user.id) == 0
        assert calls == []
