"""
Metric and Report Models

These are the shapes handed to downstream consumers (snapshot and
trajectory request handlers). All ratios and percentages are already
rounded to 2 decimals; the calculator keeps full precision internally.
"""

from datetime import date
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

from richflow.models.state import Currency


class SamplingInterval(str, Enum):
    """Spacing between trajectory samples."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class IncomeQuadrant(str, Enum):
    """
    Cashflow quadrant of an income line.

    EMPLOYEE and SELF_EMPLOYED are earned income; BUSINESS_OWNER and
    INVESTOR are where passive and portfolio income land.
    """
    EMPLOYEE = "EMPLOYEE"
    SELF_EMPLOYED = "SELF_EMPLOYED"
    BUSINESS_OWNER = "BUSINESS_OWNER"
    INVESTOR = "INVESTOR"


class FreedomStatus(str, Enum):
    """Non-date outcomes of the freedom date projection."""
    ACHIEVED = "Achieved"
    NO_PASSIVE_INCOME = "No Passive Income"
    INSUFFICIENT_DATA = "Insufficient Data"
    STAGNANT = "Stagnant/Declining"
    BEYOND_HORIZON = "> 50 Years"


class HealthTrends(BaseModel):
    """Month-over-month percentage changes."""

    net_worth: float = 0.0
    cashflow: float = 0.0


class FinancialHealth(BaseModel):
    """Forward-looking health indicators."""

    runway: float = Field(
        ...,
        description="Months of expenses covered by cash savings"
    )
    freedom_date: str = Field(
        ...,
        description="ISO date, or a FreedomStatus value"
    )
    asset_efficiency: float = Field(
        ...,
        description="Combined passive income as a percentage of invested assets"
    )
    trends: HealthTrends = Field(default_factory=HealthTrends)


class BalanceSheetTotals(BaseModel):
    total_cash_balance: float
    total_invested_assets: float = Field(
        ...,
        description="Assets excluding cash"
    )
    total_assets: float
    total_liabilities: float
    net_worth: float


class CashflowBreakdown(BaseModel):
    earned_income: float
    passive_income: float
    portfolio_income: float
    combined_passive_income: float
    total_income: float
    total_expenses: float
    net_cashflow: float
    direction: Literal["positive", "negative"]


class FinancialRatios(BaseModel):
    passive_coverage_ratio: float
    savings_rate: float


class RichFlowMetrics(BaseModel):
    """Velocity, solvency and freedom gap."""

    wealth_velocity: float = Field(
        ...,
        description="Net worth change versus one month earlier"
    )
    wealth_velocity_pct: float
    solvency_ratio: float
    freedom_gap: float = Field(
        ...,
        description="Expenses minus combined passive income; positive is a shortfall"
    )


class QuadrantShare(BaseModel):
    amount: float
    pct: float


class IncomeQuadrantBreakdown(BaseModel):
    employee: QuadrantShare
    self_employed: QuadrantShare
    business_owner: QuadrantShare
    investor: QuadrantShare
    total: float


class FinancialSnapshot(BaseModel):
    """
    Complete point-in-time report for one user.

    This is the object returned for "what did my finances look like
    on date X".
    """

    date: date
    currency: Currency
    balance_sheet: BalanceSheetTotals
    cashflow: CashflowBreakdown
    ratios: FinancialRatios
    rich_flow_metrics: RichFlowMetrics
    income_quadrant: IncomeQuadrantBreakdown
    financial_health: FinancialHealth


class TrajectoryPoint(BaseModel):
    """One charting sample of a trajectory."""

    date: date
    net_worth: float
    net_worth_delta: float = Field(
        ...,
        description="Change versus the previous sample (0 for the first)"
    )
    passive_income: float
    portfolio_income: float
    total_expenses: float
    freedom_gap: float
    wealth_velocity: float = Field(
        ...,
        description="Net cashflow as a percentage of positive net worth"
    )
    asset_efficiency: float
    net_cashflow: float
    total_income: float
    income_quadrant: dict[IncomeQuadrant, float]
    currency: str
