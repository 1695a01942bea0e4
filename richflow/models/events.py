"""
Event Models for RichFlow

An Event is the immutable record of one change to one financial entity.
Producers persist the entity and append the event in the same unit of work,
so the log is always a complete, faithful history of the live tables.

DESIGN DECISION: Events are append-only. There is no model method,
storage method or service that updates or deletes an event.
"""

from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# Structural marker emitted when a user's income statement container is
# created. It is not an income line and never enters reconstructed state.
INCOME_STATEMENT_SUBTYPE = "INCOME_STATEMENT"


class ActionType(str, Enum):
    """What happened to the entity."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class EntityType(str, Enum):
    """
    Entity kinds the reducer engine understands.

    Events carry the entity type as a plain string so that rows written by
    newer producers (with types this version does not know) still load.
    """
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    ASSET = "ASSET"
    LIABILITY = "LIABILITY"
    CASH_SAVINGS = "CASH_SAVINGS"
    USER = "USER"


class IncomeType(str, Enum):
    """Income line classification, also used as the INCOME event subtype."""
    EARNED = "EARNED"        # Active labor
    PASSIVE = "PASSIVE"      # Business / rental, no ongoing labor
    PORTFOLIO = "PORTFOLIO"  # Investment returns


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalize aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _enum_value(value: Union[Enum, str]) -> str:
    return value.value if isinstance(value, Enum) else str(value)


class Event(BaseModel):
    """
    A single immutable ledger event.

    `id` and `timestamp` are assigned by the store at append time.
    Chronological order is (timestamp, id): events sharing a timestamp
    replay in insertion order.
    """
    model_config = ConfigDict(frozen=True)

    id: int = Field(
        ...,
        ge=1,
        description="Store-assigned identity, increasing with insertion order"
    )
    timestamp: datetime = Field(
        ...,
        description="Store-assigned time of the change (UTC)"
    )
    action_type: ActionType
    entity_type: str = Field(
        ...,
        description="EntityType value; unknown values are kept verbatim"
    )
    entity_subtype: Optional[str] = Field(
        default=None,
        description="Income type, or a structural marker such as INCOME_STATEMENT"
    )
    before_value: Optional[dict[str, Any]] = Field(
        default=None,
        description="Entity fields before the change"
    )
    after_value: Optional[dict[str, Any]] = Field(
        default=None,
        description="Entity fields after the change"
    )
    user_id: int
    entity_id: int

    @field_validator('timestamp')
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @field_validator('entity_type', mode='before')
    @classmethod
    def coerce_entity_type(cls, v: Any) -> str:
        return _enum_value(v)

    @property
    def sort_key(self) -> tuple[datetime, int]:
        return (self.timestamp, self.id)

    def to_log_dict(self) -> dict:
        """Convert to a dictionary suitable for structured logging."""
        return {
            "event_id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "action_type": self.action_type.value,
            "entity_type": self.entity_type,
            "entity_subtype": self.entity_subtype,
            "user_id": self.user_id,
            "entity_id": self.entity_id,
        }

    def matches_search(self, text: str) -> bool:
        """
        Case-insensitive match on entity type, action type, or the
        `name` field of either value snapshot.
        """
        needle = text.strip().lower()
        if not needle:
            return True
        haystack = [self.entity_type, self.action_type.value]
        for snapshot in (self.after_value, self.before_value):
            if snapshot and isinstance(snapshot.get("name"), str):
                haystack.append(snapshot["name"])
        return any(needle in item.lower() for item in haystack)


class NewEvent(BaseModel):
    """
    An event as submitted by a producer, before the store assigns
    its identity and timestamp.
    """
    model_config = ConfigDict(frozen=True)

    action_type: ActionType
    entity_type: str
    entity_subtype: Optional[str] = None
    before_value: Optional[dict[str, Any]] = None
    after_value: Optional[dict[str, Any]] = None
    user_id: int
    entity_id: int

    @field_validator('entity_type', mode='before')
    @classmethod
    def coerce_entity_type(cls, v: Any) -> str:
        return _enum_value(v)

    def stamp(self, event_id: int, timestamp: datetime) -> Event:
        """Materialize the stored record."""
        return Event(
            id=event_id,
            timestamp=timestamp,
            **self.model_dump(),
        )


class EventQuery(BaseModel):
    """
    Filters for listing a user's event log.

    Listings are most-recent-first. Replay consumers must not rely on
    this order and re-sort chronologically before folding.
    """

    entity_type: Optional[str] = None
    entity_id: Optional[int] = None
    start_date: Optional[datetime] = Field(
        default=None,
        description="Inclusive lower bound on timestamp"
    )
    end_date: Optional[datetime] = Field(
        default=None,
        description="Inclusive upper bound on timestamp"
    )
    search: Optional[str] = Field(
        default=None,
        max_length=200,
        description="Free-text search over types and entity names"
    )
    limit: int = Field(
        default=100,
        ge=1,
        le=100000
    )
    offset: int = Field(
        default=0,
        ge=0
    )

    @field_validator('entity_type', mode='before')
    @classmethod
    def coerce_entity_type(cls, v: Any) -> Optional[str]:
        return None if v is None else _enum_value(v)

    @field_validator('start_date', mode='before')
    @classmethod
    def coerce_start(cls, v: Any) -> Any:
        if isinstance(v, date) and not isinstance(v, datetime):
            return datetime.combine(v, time.min, tzinfo=timezone.utc)
        return v

    @field_validator('end_date', mode='before')
    @classmethod
    def coerce_end(cls, v: Any) -> Any:
        # A bare date includes the whole day
        if isinstance(v, date) and not isinstance(v, datetime):
            return datetime.combine(v, time.max, tzinfo=timezone.utc)
        return v

    @field_validator('start_date', 'end_date')
    @classmethod
    def normalize_bounds(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None

    def matches(self, event: Event) -> bool:
        """Apply every filter except pagination."""
        if self.entity_type and event.entity_type != self.entity_type:
            return False
        if self.entity_id is not None and event.entity_id != self.entity_id:
            return False
        if self.start_date and event.timestamp < self.start_date:
            return False
        if self.end_date and event.timestamp > self.end_date:
            return False
        if self.search and not event.matches_search(self.search):
            return False
        return True
