"""
Financial Metrics Calculator

Pure functions deriving health indicators from reconstructed states.

DESIGN DECISION: Every ratio has an explicit zero-denominator policy and
no metric can become NaN or infinite. Arithmetic runs at full precision;
ratios and percentages are rounded to 2 decimals only when the report
models are built.

COMBINED PASSIVE INCOME: PASSIVE + PORTFOLIO. Neither needs ongoing labor,
so both count toward financial freedom.
"""

import math
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Iterable, Optional

from dateutil.relativedelta import relativedelta

from richflow.config import LedgerSettings, get_settings
from richflow.ledger.quadrants import create_empty_quadrant_totals, determine_income_quadrant
from richflow.models.events import IncomeType, ensure_utc
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
)
from richflow.models.state import FinancialState


def _r2(value: float) -> float:
    return round(value, 2)


def _sum(values: Iterable[float]) -> float:
    # fsum is exact, so totals do not depend on container order
    return math.fsum(values)


@dataclass(frozen=True)
class StateTotals:
    """Aggregates of one state, at full precision."""

    total_assets: float
    total_liabilities: float
    cash_savings: float
    earned_income: float
    passive_income: float
    portfolio_income: float
    total_income: float
    total_expenses: float

    @property
    def net_worth(self) -> float:
        return self.total_assets - self.total_liabilities + self.cash_savings

    @property
    def combined_passive_income(self) -> float:
        return self.passive_income + self.portfolio_income

    @property
    def net_cashflow(self) -> float:
        return self.total_income - self.total_expenses


def compute_totals(state: FinancialState) -> StateTotals:
    lines = list(state.income_lines.values())

    def income_of(income_type: IncomeType) -> float:
        return _sum(
            line.amount for line in lines
            if line.type.strip().upper() == income_type.value
        )

    return StateTotals(
        total_assets=_sum(a.value for a in state.assets.values()),
        total_liabilities=_sum(l.value for l in state.liabilities.values()),
        cash_savings=state.cash_savings,
        earned_income=income_of(IncomeType.EARNED),
        passive_income=income_of(IncomeType.PASSIVE),
        portfolio_income=income_of(IncomeType.PORTFOLIO),
        total_income=_sum(line.amount for line in lines),
        total_expenses=_sum(e.amount for e in state.expenses.values()),
    )


def percent_change(current: float, previous: float) -> float:
    """
    Change as a percentage of |previous|.

    From a zero base the result is +100 or -100 by the sign of current,
    and 0 when both are zero.
    """
    if previous != 0:
        return (current - previous) / abs(previous) * 100
    if current != 0:
        return 100.0 if current > 0 else -100.0
    return 0.0


def calculate_runway(cash_savings: float, total_expenses: float, sentinel: float) -> float:
    """Months of expenses covered by cash."""
    if total_expenses > 0:
        return cash_savings / total_expenses
    return sentinel if cash_savings > 0 else 0.0


def calculate_asset_efficiency(totals: StateTotals) -> float:
    """Combined passive income per invested asset value. Cash is not productive capital."""
    if totals.total_assets > 0:
        return totals.combined_passive_income / totals.total_assets * 100
    return 0.0


def quadrant_totals(state: FinancialState) -> dict[IncomeQuadrant, float]:
    buckets: dict[IncomeQuadrant, list[float]] = {q: [] for q in IncomeQuadrant}
    for line in state.income_lines.values():
        buckets[determine_income_quadrant(line.type, line.quadrant)].append(line.amount)
    totals = create_empty_quadrant_totals()
    for quadrant, amounts in buckets.items():
        totals[quadrant] = _sum(amounts)
    return totals


def project_freedom_date(
    current: StateTotals,
    six_months_ago: Optional[StateTotals],
    now: datetime,
    settings: Optional[LedgerSettings] = None,
) -> str:
    """
    When will combined passive income cover expenses?

    With C = current combined passive income, P = the same six months ago
    and E = current expenses:
    - C >= E: already there
    - C = 0: nothing to project from
    - P unknown: not enough history
    - P > 0: compound monthly growth r = (C/P)^(1/6) - 1, and
      months = ln(E/C) / ln(1 + r); no growth means no date
    - P = 0: linear growth of C/6 per month, months = (E - C) / (C/6)

    Returns:
        An ISO date, or one of the FreedomStatus values
    """
    settings = settings or get_settings().ledger
    c = current.combined_passive_income
    e = current.total_expenses

    if c >= e:
        return FreedomStatus.ACHIEVED.value
    if c <= 0:
        return FreedomStatus.NO_PASSIVE_INCOME.value
    if six_months_ago is None:
        return FreedomStatus.INSUFFICIENT_DATA.value

    window = settings.projection_window_months
    p = six_months_ago.combined_passive_income

    if p > 0:
        rate = (c / p) ** (1 / window) - 1
        if rate <= 0:
            return FreedomStatus.STAGNANT.value
        months = math.log(e / c) / math.log(1 + rate)
    else:
        months = (e - c) / (c / window)

    if months >= settings.freedom_horizon_months:
        return FreedomStatus.BEYOND_HORIZON.value

    # Half-up rounding to whole months
    whole_months = math.floor(months + 0.5)
    return (ensure_utc(now) + relativedelta(months=whole_months)).date().isoformat()


def calculate_financial_health(
    current_state: FinancialState,
    prev_month_state: Optional[FinancialState],
    six_month_ago_state: Optional[FinancialState],
    now: Optional[datetime] = None,
    settings: Optional[LedgerSettings] = None,
) -> FinancialHealth:
    """
    Forward-looking indicators: runway, freedom date, asset efficiency
    and month-over-month trends.

    Prior states may be None when they predate the account; trends are
    then 0 and the freedom date cannot be projected.
    """
    settings = settings or get_settings().ledger
    now = now or datetime.now(timezone.utc)

    current = compute_totals(current_state)
    six = compute_totals(six_month_ago_state) if six_month_ago_state is not None else None

    trends = HealthTrends()
    if prev_month_state is not None:
        prev = compute_totals(prev_month_state)
        trends = HealthTrends(
            net_worth=_r2(percent_change(current.net_worth, prev.net_worth)),
            cashflow=_r2(percent_change(current.net_cashflow, prev.net_cashflow)),
        )

    return FinancialHealth(
        runway=_r2(calculate_runway(
            current.cash_savings,
            current.total_expenses,
            settings.runway_sentinel_months,
        )),
        freedom_date=project_freedom_date(current, six, now, settings),
        asset_efficiency=_r2(calculate_asset_efficiency(current)),
        trends=trends,
    )


def build_financial_snapshot(
    state: FinancialState,
    target: date,
    financial_health: FinancialHealth,
    prev_month_state: Optional[FinancialState],
) -> FinancialSnapshot:
    """
    Assemble the full point-in-time report.

    Args:
        state: State at the target date
        target: Report date (a datetime is reduced to its date)
        financial_health: Output of calculate_financial_health()
        prev_month_state: State one month earlier, None if unavailable
    """
    if isinstance(target, datetime):
        target = ensure_utc(target).date()

    totals = compute_totals(state)
    total_expenses = totals.total_expenses
    total_income = totals.total_income
    combined = totals.combined_passive_income
    net_cashflow = totals.net_cashflow

    wealth_velocity = 0.0
    wealth_velocity_pct = 0.0
    if prev_month_state is not None:
        prev_net_worth = compute_totals(prev_month_state).net_worth
        wealth_velocity = totals.net_worth - prev_net_worth
        wealth_velocity_pct = percent_change(totals.net_worth, prev_net_worth)

    assets_with_cash = totals.total_assets + totals.cash_savings
    solvency_ratio = (
        totals.total_liabilities / assets_with_cash * 100
        if assets_with_cash > 0 else 0.0
    )

    def share(amount: float) -> QuadrantShare:
        pct = amount / total_income * 100 if total_income > 0 else 0.0
        return QuadrantShare(amount=amount, pct=_r2(pct))

    quadrants = quadrant_totals(state)

    return FinancialSnapshot(
        date=target,
        currency=state.currency,
        balance_sheet=BalanceSheetTotals(
            total_cash_balance=totals.cash_savings,
            total_invested_assets=totals.total_assets,
            total_assets=totals.total_assets,
            total_liabilities=totals.total_liabilities,
            net_worth=totals.net_worth,
        ),
        cashflow=CashflowBreakdown(
            earned_income=totals.earned_income,
            passive_income=totals.passive_income,
            portfolio_income=totals.portfolio_income,
            combined_passive_income=combined,
            total_income=total_income,
            total_expenses=total_expenses,
            net_cashflow=net_cashflow,
            direction="positive" if net_cashflow >= 0 else "negative",
        ),
        ratios=FinancialRatios(
            passive_coverage_ratio=_r2(combined / total_expenses * 100) if total_expenses > 0 else 0.0,
            savings_rate=_r2(net_cashflow / total_income * 100) if total_income > 0 else 0.0,
        ),
        rich_flow_metrics=RichFlowMetrics(
            wealth_velocity=wealth_velocity,
            wealth_velocity_pct=_r2(wealth_velocity_pct),
            solvency_ratio=_r2(solvency_ratio),
            freedom_gap=total_expenses - combined,
        ),
        income_quadrant=IncomeQuadrantBreakdown(
            employee=share(quadrants[IncomeQuadrant.EMPLOYEE]),
            self_employed=share(quadrants[IncomeQuadrant.SELF_EMPLOYED]),
            business_owner=share(quadrants[IncomeQuadrant.BUSINESS_OWNER]),
            investor=share(quadrants[IncomeQuadrant.INVESTOR]),
            total=total_income,
        ),
        financial_health=financial_health,
    )
