"""
Pure State Reducers

DESIGN DECISION: State reconstruction is a left fold of the event log
through pure functions. A reducer:
1. Never mutates its input state
2. Copies only the container it changes
3. Never touches storage, the clock or any other global

This makes replay deterministic: the same ordered events from the same
initial state always produce an equal state, which is what makes
snapshots (a cached prefix of the fold) interchangeable with full replay.

MALFORMED EVENTS: An event without the fields its handler needs is a
no-op rather than an error. The log favors availability over strictness;
producers validate input before they emit.
"""

from datetime import datetime
from functools import reduce as _fold
from typing import Any, Callable, Iterable, Optional

from richflow.models.events import (
    INCOME_STATEMENT_SUBTYPE,
    ActionType,
    EntityType,
    Event,
    IncomeType,
    ensure_utc,
)
from richflow.models.state import (
    BalanceEntry,
    Currency,
    ExpenseEntry,
    FinancialState,
    IncomeLineEntry,
)


Reducer = Callable[[FinancialState, Event], FinancialState]


def create_empty_state(currency: Currency) -> FinancialState:
    """The state of every account at genesis."""
    return FinancialState(currency=currency)


def _number(value: Any) -> float:
    # Missing numeric fields count as zero; unparseable ones raise
    if value is None:
        return 0.0
    return float(value)


def _set_or_delete(
    state: FinancialState,
    event: Event,
    family: str,
    build: Callable[[int, dict], Any],
) -> FinancialState:
    """Shared CREATE/UPDATE/DELETE handling for the keyed containers."""
    if event.action_type == ActionType.DELETE:
        current = getattr(state, family)
        if event.entity_id not in current:
            return state
        updated = dict(current)
        del updated[event.entity_id]
        return state.model_copy(update={family: updated})

    if not event.after_value:
        return state

    try:
        entry = build(event.entity_id, event.after_value)
    except (TypeError, ValueError):
        return state

    updated = dict(getattr(state, family))
    updated[event.entity_id] = entry
    return state.model_copy(update={family: updated})


def _balance_entry(entity_id: int, after: dict) -> BalanceEntry:
    return BalanceEntry(
        id=entity_id,
        name=str(after.get("name") or ""),
        value=_number(after.get("value")),
    )


def asset_reducer(state: FinancialState, event: Event) -> FinancialState:
    return _set_or_delete(state, event, "assets", _balance_entry)


def liability_reducer(state: FinancialState, event: Event) -> FinancialState:
    return _set_or_delete(state, event, "liabilities", _balance_entry)


def income_reducer(state: FinancialState, event: Event) -> FinancialState:
    """
    Income lines. Events tagged INCOME_STATEMENT describe the statement
    container itself and are skipped regardless of action.
    """
    if event.entity_subtype == INCOME_STATEMENT_SUBTYPE:
        return state

    def build(entity_id: int, after: dict) -> IncomeLineEntry:
        return IncomeLineEntry(
            id=entity_id,
            name=str(after.get("name") or ""),
            amount=_number(after.get("amount")),
            type=str(after.get("type") or event.entity_subtype or IncomeType.EARNED.value),
            quadrant=after.get("quadrant") or None,
        )

    return _set_or_delete(state, event, "income_lines", build)


def expense_reducer(state: FinancialState, event: Event) -> FinancialState:
    def build(entity_id: int, after: dict) -> ExpenseEntry:
        return ExpenseEntry(
            id=entity_id,
            name=str(after.get("name") or ""),
            amount=_number(after.get("amount")),
        )

    return _set_or_delete(state, event, "expenses", build)


def cash_savings_reducer(state: FinancialState, event: Event) -> FinancialState:
    """One cash record per user: the scalar is replaced, never keyed."""
    if event.action_type not in (ActionType.CREATE, ActionType.UPDATE):
        return state
    after = event.after_value
    if not after or after.get("amount") is None:
        return state
    try:
        amount = float(after["amount"])
    except (TypeError, ValueError):
        return state
    return state.model_copy(update={"cash_savings": amount})


def user_reducer(state: FinancialState, event: Event) -> FinancialState:
    """Only currency changes affect state; other USER events are audit-only."""
    if event.action_type != ActionType.UPDATE:
        return state
    after = event.after_value
    if not after or not after.get("currencyCode"):
        return state
    code = str(after["currencyCode"])
    currency = Currency(symbol=code, name=str(after.get("currencyName") or code))
    return state.model_copy(update={"currency": currency})


HANDLERS: dict[str, Reducer] = {
    EntityType.ASSET.value: asset_reducer,
    EntityType.LIABILITY.value: liability_reducer,
    EntityType.INCOME.value: income_reducer,
    EntityType.EXPENSE.value: expense_reducer,
    EntityType.CASH_SAVINGS.value: cash_savings_reducer,
    EntityType.USER.value: user_reducer,
}


def reduce(state: FinancialState, event: Event) -> FinancialState:
    """
    Root reducer: fold one event into a state.

    Entity types without a handler leave the state unchanged so that
    logs written by newer producers still replay.
    """
    handler = HANDLERS.get(event.entity_type)
    if handler is None:
        return state
    return handler(state, event)


def sort_chronologically(events: Iterable[Event]) -> list[Event]:
    return sorted(events, key=lambda e: e.sort_key)


def fold_events(state: FinancialState, events: Iterable[Event]) -> FinancialState:
    """Fold events in chronological order, whatever order they arrive in."""
    return _fold(reduce, sort_chronologically(events), state)


def reconstruct_state(
    events: Iterable[Event],
    target: datetime,
    initial_currency: Currency,
    initial_state: Optional[FinancialState] = None,
) -> FinancialState:
    """
    Replay every event at or before `target`.

    Args:
        events: Any subset of a user's log, in any order.
        target: Inclusive upper bound.
        initial_currency: Currency in effect before the first event.
        initial_state: Start from this state instead of an empty one.
    """
    target = ensure_utc(target)
    start = initial_state or create_empty_state(initial_currency)
    return fold_events(start, (e for e in events if e.timestamp <= target))
