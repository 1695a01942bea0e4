"""
Tests for the metrics calculator.

All functions here are pure: states are built by hand.
"""

import math

import pytest
from hypothesis import given, settings, strategies as st

from richflow.ledger.metrics import (
    StateTotals,
    build_financial_snapshot,
    calculate_financial_health,
    calculate_runway,
    compute_totals,
    percent_change,
    project_freedom_date,
)
from richflow.ledger.quadrants import determine_income_quadrant
from richflow.models.metrics import FreedomStatus, IncomeQuadrant
from richflow.models.state import (
    BalanceEntry,
    Currency,
    ExpenseEntry,
    FinancialState,
    IncomeLineEntry,
)
from tests.helpers import utc


USD = Currency(symbol="$", name="USD")
NOW = utc(2024, 1, 15, 9, 0)


def make_state(assets=(), liabilities=(), incomes=(), expenses=(), cash=0.0) -> FinancialState:
    """
    incomes: (amount, type) or (amount, type, quadrant) tuples.
    """
    next_id = iter(range(1, 1000))
    income_lines = {}
    for income in incomes:
        amount, income_type = income[0], income[1]
        quadrant = income[2] if len(income) > 2 else None
        entity_id = next(next_id)
        income_lines[entity_id] = IncomeLineEntry(
            id=entity_id, name=f"income-{entity_id}", amount=amount, type=income_type, quadrant=quadrant
        )

    def balance(values):
        entries = {}
        for value in values:
            entity_id = next(next_id)
            entries[entity_id] = BalanceEntry(id=entity_id, name=f"line-{entity_id}", value=value)
        return entries

    asset_entries = balance(assets)
    liability_entries = balance(liabilities)
    expense_entries = {}
    for amount in expenses:
        entity_id = next(next_id)
        expense_entries[entity_id] = ExpenseEntry(id=entity_id, name=f"expense-{entity_id}", amount=amount)

    return FinancialState(
        assets=asset_entries,
        liabilities=liability_entries,
        income_lines=income_lines,
        expenses=expense_entries,
        cash_savings=cash,
        currency=USD,
    )


def totals(passive=0.0, portfolio=0.0, expenses=0.0) -> StateTotals:
    return StateTotals(
        total_assets=0.0,
        total_liabilities=0.0,
        cash_savings=0.0,
        earned_income=0.0,
        passive_income=passive,
        portfolio_income=portfolio,
        total_income=passive + portfolio,
        total_expenses=expenses,
    )


class TestTotals:
    """Tests for aggregate computation."""

    def test_income_types_are_case_insensitive(self):
        """Test lowercase and padded types still classify."""
        state = make_state(incomes=[(100, "passive"), (50, " Portfolio "), (2000, "earned")])
        result = compute_totals(state)
        assert result.passive_income == 100
        assert result.portfolio_income == 50
        assert result.earned_income == 2000
        assert result.total_income == 2150

    def test_unknown_income_type_only_counts_in_total(self):
        """Test lines with unknown types still contribute to total income."""
        state = make_state(incomes=[(100, "ROYALTY"), (400, "EARNED")])
        result = compute_totals(state)
        assert result.total_income == 500
        assert result.earned_income == 400
        assert result.combined_passive_income == 0

    def test_net_worth_includes_cash(self):
        """Test net worth is assets minus liabilities plus cash."""
        state = make_state(assets=[10000], liabilities=[2500], cash=700)
        assert compute_totals(state).net_worth == 8200


class TestRunway:
    """Tests for runway months."""

    def test_no_cash_no_expenses(self):
        assert calculate_runway(0, 0, 999) == 0

    def test_cash_without_expenses_is_sentinel(self):
        assert calculate_runway(1000, 0, 999) == 999

    def test_regular_runway(self):
        assert calculate_runway(3000, 1500, 999) == 2.0

    def test_negative_cash(self):
        """Test an overdrawn balance gives negative runway."""
        assert calculate_runway(-300, 100, 999) == -3.0
        assert calculate_runway(-300, 0, 999) == 0


class TestPercentChange:
    """Tests for trend percentages."""

    def test_regular_change(self):
        assert percent_change(110, 100) == pytest.approx(10.0)

    def test_change_from_negative_base(self):
        """Test the base is taken in absolute value."""
        assert percent_change(50, -100) == pytest.approx(150.0)

    def test_change_from_zero(self):
        assert percent_change(5, 0) == 100.0
        assert percent_change(-5, 0) == -100.0
        assert percent_change(0, 0) == 0.0


class TestFreedomDate:
    """Tests for the freedom date projection."""

    def test_achieved_when_passive_covers_expenses(self):
        assert project_freedom_date(totals(passive=500, expenses=500), None, NOW) == FreedomStatus.ACHIEVED.value

    def test_achieved_with_nothing_at_all(self):
        """Test zero income and zero expenses counts as achieved."""
        assert project_freedom_date(totals(), None, NOW) == FreedomStatus.ACHIEVED.value

    def test_no_passive_income(self):
        assert project_freedom_date(totals(expenses=100), totals(), NOW) == \
            FreedomStatus.NO_PASSIVE_INCOME.value

    def test_insufficient_data(self):
        """Test no six-month history means no projection."""
        assert project_freedom_date(totals(passive=100, expenses=400), None, NOW) == \
            FreedomStatus.INSUFFICIENT_DATA.value

    def test_compound_growth(self):
        """Test doubling over six months projects about 14 months out."""
        result = project_freedom_date(
            totals(passive=200, expenses=1000),
            totals(passive=100),
            NOW,
        )
        assert result == "2025-03-15"

    def test_stagnant(self):
        """Test flat or shrinking passive income has no date."""
        current = totals(passive=200, expenses=1000)
        assert project_freedom_date(current, totals(passive=200), NOW) == FreedomStatus.STAGNANT.value
        assert project_freedom_date(current, totals(passive=300), NOW) == FreedomStatus.STAGNANT.value

    def test_linear_growth_from_zero(self):
        """Test growth from nothing is projected linearly."""
        result = project_freedom_date(
            totals(passive=100, expenses=400),
            totals(passive=0),
            NOW,
        )
        # 300 remaining at 100/6 per month is 18 months
        assert result == "2025-07-15"

    def test_beyond_horizon(self):
        """Test projections past 50 years are capped."""
        slow = project_freedom_date(totals(passive=100.01, expenses=1000), totals(passive=100), NOW)
        assert slow == FreedomStatus.BEYOND_HORIZON.value

        linear = project_freedom_date(totals(passive=1, expenses=1000), totals(), NOW)
        assert linear == FreedomStatus.BEYOND_HORIZON.value

    def test_portfolio_counts_as_passive(self):
        """Test portfolio income alone can reach freedom."""
        assert project_freedom_date(totals(portfolio=500, expenses=500), None, NOW) == \
            FreedomStatus.ACHIEVED.value

    def test_health_uses_portfolio_income(self):
        """Test the health calculator sees PORTFOLIO lines."""
        state = make_state(incomes=[(600, "PORTFOLIO")], expenses=[500])
        health = calculate_financial_health(state, None, None, now=NOW)
        assert health.freedom_date == FreedomStatus.ACHIEVED.value


class TestFinancialHealth:
    """Tests for the health indicators."""

    def test_health_indicators(self):
        state = make_state(
            assets=[10000],
            incomes=[(500, "PASSIVE"), (300, "PORTFOLIO"), (4000, "EARNED")],
            expenses=[2400],
            cash=1000,
        )
        health = calculate_financial_health(state, None, None, now=NOW)
        assert health.runway == 0.42
        assert health.asset_efficiency == 8.0
        assert health.freedom_date == FreedomStatus.INSUFFICIENT_DATA.value
        assert health.trends.net_worth == 0
        assert health.trends.cashflow == 0

    def test_trends_against_previous_month(self):
        previous = make_state(assets=[8000], incomes=[(1000, "EARNED")], expenses=[500])
        current = make_state(assets=[10000], incomes=[(1000, "EARNED")], expenses=[400])
        health = calculate_financial_health(current, previous, None, now=NOW)
        assert health.trends.net_worth == 25.0
        assert health.trends.cashflow == 20.0

    def test_asset_efficiency_without_assets(self):
        state = make_state(incomes=[(300, "PASSIVE")], cash=5000)
        assert calculate_financial_health(state, None, None, now=NOW).asset_efficiency == 0


class TestFinancialSnapshot:
    """Tests for the full report."""

    def test_report_values(self):
        previous = make_state(
            assets=[9000],
            liabilities=[2000],
            incomes=[(4000, "EARNED", "SELF_EMPLOYED"), (500, "PASSIVE"), (300, "PORTFOLIO")],
            expenses=[2400],
            cash=1000,
        )
        state = make_state(
            assets=[10000],
            liabilities=[2000],
            incomes=[(4000, "EARNED", "SELF_EMPLOYED"), (500, "PASSIVE"), (300, "PORTFOLIO")],
            expenses=[2400],
            cash=1000,
        )
        health = calculate_financial_health(state, previous, None, now=NOW)
        report = build_financial_snapshot(state, utc(2024, 1, 15, 9, 0), health, previous)

        assert report.date.isoformat() == "2024-01-15"
        assert report.currency == USD

        assert report.balance_sheet.total_cash_balance == 1000
        assert report.balance_sheet.total_invested_assets == 10000
        assert report.balance_sheet.net_worth == 9000

        assert report.cashflow.combined_passive_income == 800
        assert report.cashflow.total_income == 4800
        assert report.cashflow.net_cashflow == 2400
        assert report.cashflow.direction == "positive"

        assert report.ratios.passive_coverage_ratio == 33.33
        assert report.ratios.savings_rate == 50.0

        assert report.rich_flow_metrics.wealth_velocity == 1000
        assert report.rich_flow_metrics.wealth_velocity_pct == 12.5
        assert report.rich_flow_metrics.solvency_ratio == 18.18
        assert report.rich_flow_metrics.freedom_gap == 1600

        quadrants = report.income_quadrant
        assert quadrants.employee.amount == 0
        assert quadrants.self_employed.amount == 4000
        assert quadrants.self_employed.pct == 83.33
        assert quadrants.business_owner.pct == 10.42
        assert quadrants.investor.pct == 6.25
        assert quadrants.total == 4800

    def test_negative_cashflow_direction(self):
        state = make_state(incomes=[(1000, "EARNED")], expenses=[1500])
        health = calculate_financial_health(state, None, None, now=NOW)
        report = build_financial_snapshot(state, NOW, health, None)
        assert report.cashflow.direction == "negative"
        assert report.ratios.savings_rate == -50.0

    def test_empty_state_has_no_nan(self):
        """Test every number in an empty report is finite."""
        state = make_state()
        health = calculate_financial_health(state, state, state, now=NOW)
        report = build_financial_snapshot(state, NOW, health, state)

        def numbers(value):
            if isinstance(value, dict):
                for item in value.values():
                    yield from numbers(item)
            elif isinstance(value, (int, float)) and not isinstance(value, bool):
                yield value

        values = list(numbers(report.model_dump()))
        assert values
        assert all(math.isfinite(v) for v in values)
        assert report.rich_flow_metrics.solvency_ratio == 0
        assert report.ratios.passive_coverage_ratio == 0

    @given(
        st.integers(min_value=0, max_value=10**7),
        st.integers(min_value=0, max_value=10**7),
        st.integers(min_value=0, max_value=10**6),
    )
    @settings(max_examples=100, deadline=None)
    def test_freedom_gap_shrinks_with_passive_income(self, expenses, passive, extra):
        """Test more passive income never widens the freedom gap."""
        before = make_state(incomes=[(passive, "PASSIVE")], expenses=[expenses])
        after = make_state(incomes=[(passive, "PASSIVE"), (extra, "PORTFOLIO")], expenses=[expenses])
        health = calculate_financial_health(before, None, None, now=NOW)

        gap_before = build_financial_snapshot(before, NOW, health, None).rich_flow_metrics.freedom_gap
        gap_after = build_financial_snapshot(after, NOW, health, None).rich_flow_metrics.freedom_gap
        assert gap_after == gap_before - extra


class TestQuadrants:
    """Tests for income quadrant classification."""

    def test_earned_defaults_to_employee(self):
        assert determine_income_quadrant("EARNED") == IncomeQuadrant.EMPLOYEE

    def test_earned_keeps_earned_quadrant(self):
        assert determine_income_quadrant("earned", "self_employed") == IncomeQuadrant.SELF_EMPLOYED

    def test_earned_ignores_passive_quadrant(self):
        assert determine_income_quadrant("EARNED", "INVESTOR") == IncomeQuadrant.EMPLOYEE

    def test_passive_and_portfolio(self):
        assert determine_income_quadrant("PASSIVE", "EMPLOYEE") == IncomeQuadrant.BUSINESS_OWNER
        assert determine_income_quadrant("Portfolio") == IncomeQuadrant.INVESTOR

    def test_unknown_type(self):
        assert determine_income_quadrant(None) == IncomeQuadrant.EMPLOYEE
