"""
Income Quadrant Classification

Maps an income line onto one of the four cashflow quadrants.
EARNED income keeps the line's own quadrant when it is an earned one
(EMPLOYEE or SELF_EMPLOYED); PASSIVE lands in BUSINESS_OWNER and
PORTFOLIO in INVESTOR. Anything unrecognized counts as EMPLOYEE.
"""

from typing import Optional

from richflow.models.events import IncomeType
from richflow.models.metrics import IncomeQuadrant


EARNED_QUADRANTS = (IncomeQuadrant.EMPLOYEE, IncomeQuadrant.SELF_EMPLOYED)

_TYPE_TO_QUADRANT = {
    IncomeType.PASSIVE.value: IncomeQuadrant.BUSINESS_OWNER,
    IncomeType.PORTFOLIO.value: IncomeQuadrant.INVESTOR,
}


def _normalize(value: Optional[str]) -> str:
    return (value or "").strip().upper()


def is_earned_quadrant(quadrant: Optional[str]) -> bool:
    return _normalize(quadrant) in {q.value for q in EARNED_QUADRANTS}


def determine_income_quadrant(
    income_type: Optional[str],
    preferred_quadrant: Optional[str] = None,
) -> IncomeQuadrant:
    """
    Classify an income line.

    Args:
        income_type: The line's type (EARNED, PASSIVE, PORTFOLIO), any case.
        preferred_quadrant: Only consulted for EARNED income.
    """
    normalized_type = _normalize(income_type)

    if normalized_type == IncomeType.EARNED.value:
        normalized_quadrant = _normalize(preferred_quadrant)
        if is_earned_quadrant(normalized_quadrant):
            return IncomeQuadrant(normalized_quadrant)
        return IncomeQuadrant.EMPLOYEE

    return _TYPE_TO_QUADRANT.get(normalized_type, IncomeQuadrant.EMPLOYEE)


def create_empty_quadrant_totals() -> dict[IncomeQuadrant, float]:
    return {quadrant: 0.0 for quadrant in IncomeQuadrant}
