"""Test helpers shared across modules."""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from richflow.models.events import ActionType, Event


class FixedClock:
    """A settable clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, *args: int) -> datetime:
        self.now = datetime(*args, tzinfo=timezone.utc)
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def make_event(
    event_id: int,
    timestamp: datetime,
    action_type: ActionType,
    entity_type: Any,
    entity_id: int,
    after_value: Optional[dict] = None,
    before_value: Optional[dict] = None,
    entity_subtype: Optional[str] = None,
    user_id: int = 1,
) -> Event:
    return Event(
        id=event_id,
        timestamp=timestamp,
        action_type=action_type,
        entity_type=entity_type,
        entity_subtype=entity_subtype,
        before_value=before_value,
        after_value=after_value,
        user_id=user_id,
        entity_id=entity_id,
    )


async def build_history(recorder, clock):
    """
    Register a user on the clock's current day and spread activity over
    the first half of 2024. Leaves the clock at 2024-07-04 12:00.
    """
    user = await recorder.register_user("Ana")
    clock.advance(days=1)
    salary = await recorder.add_income(user.id, "Salary", 4000)
    rent = await recorder.add_expense(user.id, "Rent", 1500)
    await recorder.set_cash_savings(user.id, 2000)

    clock.set(2024, 2, 3, 10, 0)
    brokerage = await recorder.add_asset(user.id, "Brokerage", 8000)
    await recorder.add_income(user.id, "Dividends", 40, income_type="PORTFOLIO")

    clock.set(2024, 3, 20, 8, 30)
    await recorder.update_asset(user.id, brokerage.id, value=9100)
    await recorder.update_expense(user.id, rent.id, amount=1550)
    loan = await recorder.add_liability(user.id, "Car loan", 12000)

    clock.set(2024, 5, 1, 0, 0)
    await recorder.update_liability(user.id, loan.id, value=11000)
    await recorder.set_cash_savings(user.id, 3500)

    clock.set(2024, 6, 12, 17, 45)
    await recorder.delete_income(user.id, salary.id)
    await recorder.add_income(user.id, "Consulting", 5200, quadrant="SELF_EMPLOYED")

    clock.set(2024, 7, 4, 12, 0)
    return user


def record_replays(monkeypatch, event_store) -> list[tuple]:
    """
    Wrap event_store.replay_window and collect (after, until, event count)
    for every call.
    """
    calls: list[tuple] = []
    original = event_store.replay_window

    async def recording(user_id, after=None, until=None):
        events = await original(user_id, after=after, until=until)
        calls.append((after, until, len(events)))
        return events

    monkeypatch.setattr(event_store, "replay_window", recording)
    return calls
