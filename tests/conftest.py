"""
Shared fixtures.

Every component takes the same FixedClock, so tests move time explicitly
and never depend on the wall clock.
"""

import pytest

from richflow.orchestrator import FinancialAnalysisService
from richflow.services.recorder import FinancialRecorder
from richflow.services.storage import InMemoryLedgerStorage
from tests.helpers import FixedClock, utc


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(utc(2024, 1, 15, 9, 0))


@pytest.fixture
def storage(clock) -> InMemoryLedgerStorage:
    return InMemoryLedgerStorage(clock=clock)


@pytest.fixture
def service(storage, clock) -> FinancialAnalysisService:
    return FinancialAnalysisService(storage, clock=clock)


@pytest.fixture
def recorder(storage, service) -> FinancialRecorder:
    return FinancialRecorder(storage, service.event_store, service.snapshot_manager)
