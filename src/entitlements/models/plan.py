from __future__ import annotations

from enum import Enum
from typing import Dict

from ..exceptions import InvalidPlanError


class Plan(str, Enum):
    THREE_DAYS = "3days"
    THREE_MONTHS = "3months"
    SIX_MONTHS = "6months"
    ONE_YEAR = "1year"


# Single source of truth for plan durations; generation and redemption
# both read from here.
PLAN_DAYS: Dict[Plan, int] = {
    Plan.ONE_YEAR: 365,
    Plan.SIX_MONTHS: 182,
    Plan.THREE_MONTHS: 91,
    Plan.THREE_DAYS: 3,
}

PLAN_PRIORITY: Dict[Plan, int] = {
    Plan.THREE_DAYS: 1,
    Plan.THREE_MONTHS: 2,
    Plan.SIX_MONTHS: 3,
    Plan.ONE_YEAR: 4,
}

TRIAL_PLAN = Plan.THREE_DAYS


def parse_plan(value: Plan | str) -> Plan:
    if isinstance(value, Plan):
        return value
    try:
        return Plan(value)
    except ValueError as exc:
        allowed = ", ".join(p.value for p in Plan)
        raise InvalidPlanError(f"unknown plan {value!r}; expected one of: {allowed}") from exc


def plan_days(plan: Plan | str) -> int:
    return PLAN_DAYS[parse_plan(plan)]
