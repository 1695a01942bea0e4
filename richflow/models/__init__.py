"""
Data Models Package

This package contains all Pydantic models used by RichFlow.
Events, reconstructed state and reports all conform to these schemas.
"""

from richflow.models.events import (
    INCOME_STATEMENT_SUBTYPE,
    ActionType,
    EntityType,
    Event,
    EventQuery,
    IncomeType,
    NewEvent,
    ensure_utc,
)
from richflow.models.state import (
    BalanceEntry,
    Currency,
    ExpenseEntry,
    FinancialState,
    IncomeLineEntry,
    SnapshotRecord,
    UserAccount,
)
from richflow.models.metrics import (
    BalanceSheetTotals,
    CashflowBreakdown,
    FinancialHealth,
    FinancialRatios,
    FinancialSnapshot,
    FreedomStatus,
    HealthTrends,
    IncomeQuadrant,
    IncomeQuadrantBreakdown,
    QuadrantShare,
    RichFlowMetrics,
    SamplingInterval,
    TrajectoryPoint,
)

__all__ = [
    # Event models
    "INCOME_STATEMENT_SUBTYPE",
    "ActionType",
    "EntityType",
    "Event",
    "EventQuery",
    "IncomeType",
    "NewEvent",
    "ensure_utc",
    # State models
    "BalanceEntry",
    "Currency",
    "ExpenseEntry",
    "FinancialState",
    "IncomeLineEntry",
    "SnapshotRecord",
    "UserAccount",
    # Report models
    "BalanceSheetTotals",
    "CashflowBreakdown",
    "FinancialHealth",
    "FinancialRatios",
    "FinancialSnapshot",
    "FreedomStatus",
    "HealthTrends",
    "IncomeQuadrant",
    "IncomeQuadrantBreakdown",
    "QuadrantShare",
    "RichFlowMetrics",
    "SamplingInterval",
    "TrajectoryPoint",
]
