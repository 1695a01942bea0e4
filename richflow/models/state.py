"""
Financial State Models

FinancialState is the per-user aggregate the reducer engine produces.
It is a derived view: it is never persisted as history and can always be
recomputed from the event log (optionally starting from a snapshot).

DESIGN DECISION: Each entity family is a dict keyed by entity id.
Keys are unique, iteration order carries no meaning, and two states are
equal when their contents are equal.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from richflow.models.events import ensure_utc


class Currency(BaseModel):
    """Display currency for a state."""
    model_config = ConfigDict(frozen=True)

    symbol: str = Field(
        ...,
        min_length=1,
        description="Currency code or symbol shown next to amounts"
    )
    name: str = Field(
        ...,
        min_length=1,
        description="Human-readable currency name"
    )


class BalanceEntry(BaseModel):
    """An asset or a liability line on the balance sheet."""
    model_config = ConfigDict(frozen=True)

    id: int
    name: str = ""
    value: float = 0.0


class IncomeLineEntry(BaseModel):
    """A monthly income line."""
    model_config = ConfigDict(frozen=True)

    id: int
    name: str = ""
    amount: float = 0.0
    type: str = Field(
        default="EARNED",
        description="EARNED, PASSIVE or PORTFOLIO (case-insensitive)"
    )
    quadrant: Optional[str] = Field(
        default=None,
        description="Preferred cashflow quadrant for earned income"
    )


class ExpenseEntry(BaseModel):
    """A monthly expense line."""
    model_config = ConfigDict(frozen=True)

    id: int
    name: str = ""
    amount: float = 0.0


class FinancialState(BaseModel):
    """
    Reconstructed financial position of one user.

    Instances are treated as immutable: reducers build a new state and
    copy only the container they change.
    """
    model_config = ConfigDict(frozen=True)

    assets: dict[int, BalanceEntry] = Field(default_factory=dict)
    liabilities: dict[int, BalanceEntry] = Field(default_factory=dict)
    income_lines: dict[int, IncomeLineEntry] = Field(default_factory=dict)
    expenses: dict[int, ExpenseEntry] = Field(default_factory=dict)
    cash_savings: float = 0.0
    currency: Currency


class UserAccount(BaseModel):
    """
    The slice of a user record the engine depends on.

    Everything else about users (credentials, admin flags, sessions)
    lives outside this package.
    """

    id: int
    name: str = ""
    created_at: datetime
    currency: Currency = Field(
        ...,
        description="Current preferred currency"
    )

    @field_validator('created_at')
    @classmethod
    def normalize_created_at(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class SnapshotRecord(BaseModel):
    """
    A persisted checkpoint: serialized cumulative state as of `date`.

    At most one record exists per user per calendar month.
    """
    model_config = ConfigDict(frozen=True)

    user_id: int
    date: datetime
    data: dict[str, Any] = Field(
        ...,
        description="Output of serialize_state()"
    )

    @field_validator('date')
    @classmethod
    def normalize_date(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def month_key(self) -> tuple[int, int]:
        return (self.date.year, self.date.month)
