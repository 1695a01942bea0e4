"""
Ledger engine package.

Event store, pure reducers, monthly snapshots, point-in-time queries,
financial metrics and trajectories.
"""

from richflow.ledger.event_store import EventStore
from richflow.ledger.metrics import (
    StateTotals,
    build_financial_snapshot,
    calculate_financial_health,
    compute_totals,
    percent_change,
    project_freedom_date,
)
from richflow.ledger.quadrants import create_empty_quadrant_totals, determine_income_quadrant
from richflow.ledger.query import PointInTimeQueryEngine, resolve_target
from richflow.ledger.reducers import (
    HANDLERS,
    create_empty_state,
    fold_events,
    reconstruct_state,
    reduce,
)
from richflow.ledger.snapshots import (
    SnapshotManager,
    add_months,
    first_of_month,
    hydrate_state,
    serialize_state,
)
from richflow.ledger.trajectory import TrajectoryGenerator, sample_dates

__all__ = [
    # Event log
    "EventStore",
    # Reducers
    "HANDLERS",
    "create_empty_state",
    "fold_events",
    "reconstruct_state",
    "reduce",
    # Snapshots
    "SnapshotManager",
    "add_months",
    "first_of_month",
    "hydrate_state",
    "serialize_state",
    # Queries
    "PointInTimeQueryEngine",
    "resolve_target",
    # Metrics
    "StateTotals",
    "build_financial_snapshot",
    "calculate_financial_health",
    "compute_totals",
    "create_empty_quadrant_totals",
    "determine_income_quadrant",
    "percent_change",
    "project_freedom_date",
    # Trajectories
    "TrajectoryGenerator",
    "sample_dates",
]
