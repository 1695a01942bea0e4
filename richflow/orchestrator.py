"""
Main Orchestrator for RichFlow

This module ties the ledger components together and defines the
consumer-facing flows:
1. Snapshot (date -> reconstructed state -> prior states -> metrics report)
2. Trajectory (range -> backfill -> single forward pass -> chart points)
3. Event history (filters -> paginated log listing)

DESIGN DECISION: The orchestrator only wires and sequences. Each step is
delegated to a component that can be tested alone:
- State comes from the point-in-time query engine, never from ad-hoc replays
- Metrics are pure functions of the states handed to them
- Every request carries a correlation ID through the audit log
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Union

import structlog

from richflow.audit import LedgerAuditLogger, configure_logging, create_correlation_id
from richflow.config import get_settings, validate_all_settings
from richflow.ledger import (
    EventStore,
    PointInTimeQueryEngine,
    SnapshotManager,
    TrajectoryGenerator,
    add_months,
    build_financial_snapshot,
    calculate_financial_health,
    resolve_target,
)
from richflow.ledger.query import Target
from richflow.models.events import Event, EventQuery
from richflow.models.metrics import FinancialSnapshot, SamplingInterval, TrajectoryPoint
from richflow.services.recorder import FinancialRecorder
from richflow.services.storage import (
    GoogleSheetsMirroredStorage,
    InMemoryLedgerStorage,
    LedgerStorageInterface,
    StorageError,
    utc_now,
)


logger = structlog.get_logger(__name__)


class FinancialAnalysisService:
    """
    Read side of RichFlow: reports and trajectories.

    Usage:
        service = FinancialAnalysisService(storage)
        report = await service.get_financial_snapshot(user_id, date(2024, 6, 1))
        points = await service.get_financial_trajectory(
            user_id, date(2024, 1, 1), date(2024, 12, 31), "monthly"
        )
    """

    def __init__(
        self,
        storage: LedgerStorageInterface,
        clock: Optional[Callable[[], datetime]] = None,
        audit_logger: Optional[LedgerAuditLogger] = None,
    ):
        self._clock = clock or utc_now
        self._audit = audit_logger or LedgerAuditLogger()
        self._settings = get_settings().ledger

        self.event_store = EventStore(storage, self._audit)
        self.query_engine = PointInTimeQueryEngine(
            storage, self.event_store, clock=self._clock, audit_logger=self._audit
        )
        self.snapshot_manager = SnapshotManager(
            storage, self.event_store, self.query_engine,
            clock=self._clock, audit_logger=self._audit,
        )
        self.trajectory = TrajectoryGenerator(
            storage, self.event_store, self.query_engine, self.snapshot_manager,
            audit_logger=self._audit,
        )

    async def get_financial_snapshot(
        self,
        user_id: int,
        target: Optional[Target] = None,
    ) -> FinancialSnapshot:
        """
        Full report for one point in time.

        Args:
            user_id: The user
            target: Date or datetime; None (or anything not in the past)
                    means the live current state

        Raises:
            UserNotFoundError: If the user does not exist
        """
        audit = self._audit.bind(create_correlation_id())
        now = self._clock()
        # Future targets report the live state as of today
        at = min(resolve_target(target), now) if target is not None else now

        try:
            state = await self.query_engine.get_state_at(user_id, at)
            # An empty state before creation
            prev_month = await self.query_engine.get_state_at(user_id, add_months(at, -1))
            # None before creation
            six_months = await self.query_engine.get_state_since_creation(
                user_id, add_months(at, -self._settings.projection_window_months)
            )
        except Exception as e:
            audit.error(
                error_type=type(e).__name__,
                error_message=str(e),
                details={"user_id": user_id, "target": at.isoformat()},
            )
            raise

        health = calculate_financial_health(
            state, prev_month, six_months, now=now, settings=self._settings
        )
        return build_financial_snapshot(state, at, health, prev_month)

    async def get_financial_trajectory(
        self,
        user_id: int,
        start: Target,
        end: Target,
        interval: Union[SamplingInterval, str] = SamplingInterval.MONTHLY,
    ) -> list[TrajectoryPoint]:
        """Chart points between start and end, inclusive."""
        try:
            return await self.trajectory.generate(user_id, start, end, interval)
        except Exception as e:
            self._audit.error(
                error_type=type(e).__name__,
                error_message=str(e),
                details={"user_id": user_id, "interval": str(interval)},
            )
            raise

    async def ensure_monthly_checkpoints(self, user_id: int) -> int:
        return await self.snapshot_manager.ensure_monthly_checkpoints(user_id)

    async def create_snapshot(self, user_id: int, at: Optional[datetime] = None) -> bool:
        return await self.snapshot_manager.create_snapshot(user_id, at)

    async def get_event_history(
        self,
        user_id: int,
        query: Optional[EventQuery] = None,
    ) -> tuple[list[Event], int]:
        """
        One page of the event log (most recent first) and the total
        number of events matching the filters.
        """
        query = query or EventQuery(limit=self._settings.default_page_size)
        events = await self.event_store.query(user_id, query)
        total = await self.event_store.count(user_id, query)
        return events, total


@dataclass
class AppComponents:
    storage: LedgerStorageInterface
    analysis: FinancialAnalysisService
    recorder: FinancialRecorder


def create_app_components(
    use_sheets: bool = False,
    clock: Optional[Callable[[], datetime]] = None,
) -> AppComponents:
    """
    Factory function to create all application components.

    Args:
        use_sheets: Mirror the event log and snapshots to Google Sheets.
                    Falls back to memory only if Sheets is not configured.
        clock: Shared source of "now" for storage and engine.
    """
    app_settings = get_settings().app
    configure_logging("DEBUG" if app_settings.debug_mode else app_settings.log_level)

    storage: Optional[LedgerStorageInterface] = None

    if use_sheets:
        status = validate_all_settings()
        if not status["google_sheets"]:
            logger.warning(
                "sheets_mirror_unavailable",
                error=status.get("google_sheets_error"),
            )
        else:
            try:
                storage = GoogleSheetsMirroredStorage(clock=clock)
            except (StorageError, ValueError) as e:
                logger.warning("sheets_mirror_unavailable", error=str(e))

    if storage is None:
        storage = InMemoryLedgerStorage(clock=clock)

    audit_logger = LedgerAuditLogger()
    analysis = FinancialAnalysisService(storage, clock=clock, audit_logger=audit_logger)
    recorder = FinancialRecorder(storage, analysis.event_store, analysis.snapshot_manager)

    logger.info(
        "app_components_created",
        environment=app_settings.app_environment,
        storage=type(storage).__name__,
    )

    return AppComponents(storage=storage, analysis=analysis, recorder=recorder)
