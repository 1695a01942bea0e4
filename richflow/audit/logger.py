"""
Audit Logger

DESIGN DECISION: The event log is the business audit trail. This logger
records what the *engine* did with it, which gives:
1. Traceability of every reconstruction (which snapshot, how many events)
2. Visibility into checkpoint backfills and full-replay fallbacks
3. Debugging capability when two reconstruction paths disagree

The audit logger:
- Writes structured JSON lines through structlog
- Supports correlation IDs to trace one request across components
"""

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

import structlog

from richflow.models.events import Event


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def configure_logging(level: str = "INFO") -> None:
    """Route structlog output through the stdlib root logger at `level`."""
    logging.basicConfig(format="%(message)s", level=level)
    logging.getLogger("richflow").setLevel(level)


class LedgerAuditLogger:
    """
    Central audit logging service for the replay engine.

    One method per significant action so that call sites stay short and
    log keys stay consistent.
    """

    def __init__(self, correlation_id: Optional[UUID] = None):
        """
        Initialize audit logger.

        Args:
            correlation_id: Bound to every line this logger writes.
        """
        self._logger = structlog.get_logger("richflow.audit")
        if correlation_id is not None:
            self._logger = self._logger.bind(correlation_id=str(correlation_id))

    def bind(self, correlation_id: UUID) -> "LedgerAuditLogger":
        """Return a logger that tags every line with the correlation ID."""
        return LedgerAuditLogger(correlation_id=correlation_id)

    def event_appended(self, event: Event) -> None:
        self._logger.info("event_appended", **event.to_log_dict())

    def state_resolved(
        self,
        user_id: int,
        target: datetime,
        path: str,
        delta_events: int,
        snapshot_date: Optional[datetime] = None,
    ) -> None:
        """Log which reconstruction path answered a point-in-time query."""
        self._logger.info(
            "state_resolved",
            user_id=user_id,
            target=target.isoformat(),
            path=path,
            delta_events=delta_events,
            snapshot_date=snapshot_date.isoformat() if snapshot_date else None,
        )

    def replay_fallback(self, user_id: int, target: datetime) -> None:
        """No usable snapshot: the query degraded to a full replay."""
        self._logger.warning(
            "full_replay_fallback",
            user_id=user_id,
            target=target.isoformat(),
        )

    def checkpoints_backfilled(
        self,
        user_id: int,
        missing: int,
        created: int,
        base_snapshot_date: Optional[datetime],
        replayed_events: int,
    ) -> None:
        self._logger.info(
            "checkpoints_backfilled",
            user_id=user_id,
            missing_months=missing,
            created=created,
            skipped_duplicates=missing - created,
            base_snapshot_date=base_snapshot_date.isoformat() if base_snapshot_date else None,
            replayed_events=replayed_events,
        )

    def snapshot_created(self, user_id: int, date: datetime, written: bool) -> None:
        self._logger.info(
            "snapshot_created" if written else "snapshot_skipped_duplicate",
            user_id=user_id,
            date=date.isoformat(),
        )

    def trajectory_generated(
        self,
        user_id: int,
        interval: str,
        points: int,
        replayed_events: int,
    ) -> None:
        self._logger.info(
            "trajectory_generated",
            user_id=user_id,
            interval=interval,
            points=points,
            replayed_events=replayed_events,
        )

    def error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
    ) -> None:
        """Log an error."""
        self._logger.error(
            "ledger_error",
            error_type=error_type,
            error_message=error_message,
            details=details or {},
        )


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related log lines.

    Use this at the start of a request (e.g. a snapshot or trajectory
    request) and bind it to the audit logger.
    """
    return uuid4()
