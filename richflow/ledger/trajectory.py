"""
Trajectory Generator

Samples charting metrics across a date range.

DESIGN DECISION: One forward pass. The events for the whole range are
fetched once and folded as the sample cursor advances, so cost grows with
events + samples rather than events x samples. The fold is seeded from
the latest snapshot at or before the first sample, which the backfill run
at the start guarantees is at most a month old.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from dateutil.relativedelta import relativedelta

from richflow.audit import LedgerAuditLogger
from richflow.ledger.event_store import EventStore
from richflow.ledger.metrics import calculate_asset_efficiency, compute_totals, quadrant_totals
from richflow.ledger.query import PointInTimeQueryEngine, Target, resolve_target
from richflow.ledger.reducers import create_empty_state, reduce
from richflow.ledger.snapshots import SnapshotManager, hydrate_state
from richflow.models.metrics import SamplingInterval, TrajectoryPoint
from richflow.models.state import FinancialState
from richflow.services.storage import SnapshotStorageInterface


def sample_dates(
    start: datetime,
    end: datetime,
    interval: SamplingInterval,
) -> list[datetime]:
    """
    Sample instants from start through end, inclusive.

    Monthly samples are start + n months (clamped to month end), so a
    range starting on the 31st stays on month ends instead of drifting.
    """
    samples = []
    n = 0
    while True:
        if interval == SamplingInterval.MONTHLY:
            sample = start + relativedelta(months=n)
        elif interval == SamplingInterval.WEEKLY:
            sample = start + timedelta(weeks=n)
        else:
            sample = start + timedelta(days=n)
        if sample > end:
            return samples
        samples.append(sample)
        n += 1


def trajectory_point(
    state: FinancialState,
    sample: datetime,
    previous_net_worth: Optional[float],
) -> TrajectoryPoint:
    """Charting metrics for one sample."""
    totals = compute_totals(state)
    net_worth = totals.net_worth
    net_cashflow = totals.net_cashflow
    # Per-sample velocity: net cashflow relative to positive net worth
    velocity = net_cashflow / net_worth * 100 if net_worth > 0 else 0.0

    return TrajectoryPoint(
        date=sample.date(),
        net_worth=net_worth,
        net_worth_delta=net_worth - previous_net_worth if previous_net_worth is not None else 0.0,
        passive_income=totals.passive_income,
        portfolio_income=totals.portfolio_income,
        total_expenses=totals.total_expenses,
        freedom_gap=totals.total_expenses - totals.combined_passive_income,
        wealth_velocity=round(velocity, 2),
        asset_efficiency=round(calculate_asset_efficiency(totals), 2),
        net_cashflow=net_cashflow,
        total_income=totals.total_income,
        income_quadrant=quadrant_totals(state),
        currency=state.currency.symbol,
    )


class TrajectoryGenerator:
    """
    Builds a list of TrajectoryPoint for charting.

    Usage:
        points = await generator.generate(user_id, date(2024, 1, 1), date(2024, 12, 31))
    """

    def __init__(
        self,
        snapshot_storage: SnapshotStorageInterface,
        event_store: EventStore,
        query_engine: PointInTimeQueryEngine,
        snapshot_manager: SnapshotManager,
        audit_logger: Optional[LedgerAuditLogger] = None,
    ):
        self._snapshots = snapshot_storage
        self._events = event_store
        self._query = query_engine
        self._manager = snapshot_manager
        self._audit = audit_logger or LedgerAuditLogger()

    async def generate(
        self,
        user_id: int,
        start: Target,
        end: Target,
        interval: Union[SamplingInterval, str] = SamplingInterval.MONTHLY,
    ) -> list[TrajectoryPoint]:
        """
        Sample the user's finances from start to end.

        Plain dates sample at the end of that UTC day.

        Raises:
            ValueError: If start is after end, or the interval is unknown
            UserNotFoundError: If the user does not exist
        """
        interval = SamplingInterval(interval)
        start_at = resolve_target(start)
        end_at = resolve_target(end)
        if start_at > end_at:
            raise ValueError(
                f"Trajectory start {start_at.isoformat()} is after end {end_at.isoformat()}"
            )

        user = await self._query.require_user(user_id)
        await self._manager.ensure_monthly_checkpoints(user_id)

        samples = sample_dates(start_at, end_at, interval)

        seed = await self._snapshots.latest_snapshot(user_id, at_or_before=samples[0])
        if seed is not None:
            state = hydrate_state(seed.data)
            events = await self._events.replay_window(user_id, after=seed.date, until=end_at)
        else:
            state = create_empty_state(await self._query.resolve_initial_currency(user))
            events = await self._events.replay_window(user_id, until=end_at)

        points: list[TrajectoryPoint] = []
        index = 0
        for sample in samples:
            while index < len(events) and events[index].timestamp <= sample:
                state = reduce(state, events[index])
                index += 1
            previous = points[-1].net_worth if points else None
            points.append(trajectory_point(state, sample, previous))

        self._audit.trajectory_generated(
            user_id=user_id,
            interval=interval.value,
            points=len(points),
            replayed_events=index,
        )
        return points
