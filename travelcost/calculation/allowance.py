"""
Travel Allowance Calculator: rule version 1.0
Pure Python, no I/O, deterministic. Same input → same output.

FIXED POLICY (recorded on every audit record as rule_version):
  - Round trip always applied: home → site → home, factor 2.
  - Currency rounding: ROUND_HALF_UP to 2 places (PostgreSQL ROUND(numeric) semantics).
  - Distance rounding: ROUND_HALF_UP to 3 places, done by geo.distance_km BEFORE
    the allowance is computed: the rounded distance is what gets multiplied.
  - Weekly is derived from the ROUNDED daily amount, monthly from the ROUNDED weekly.

Changing any of these requires a new RULE_VERSION so historical audit records
stay interpretable. The version is also part of the cache fingerprint, so a
policy change can never be served a result computed under the old policy.
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from pydantic import BaseModel, ConfigDict

from travelcost.calculation.exceptions import InvalidAmount, InvalidFrequency
from travelcost.calculation.schemas import check_days_per_week

# ===========================================================================
# RULE CONSTANTS
# ===========================================================================

RULE_VERSION = "1.0"

ROUND_TRIP_FACTOR = 2
MONEY_QUANTUM     = Decimal("0.01")
WEEKS_PER_YEAR    = 52
MONTHS_PER_YEAR   = 12

MIN_ALLOWANCE_DAYS = 1
MAX_ALLOWANCE_DAYS = 365        # standalone allowance quote (multi-day)

Number = Union[Decimal, int, float, str]


class AllowanceBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    daily_allowance: Decimal
    weekly_allowance: Decimal
    monthly_allowance: Decimal


# ===========================================================================
# INTERNAL HELPERS
# ===========================================================================

def to_decimal(value: Number, field: str) -> Decimal:
    """
    Convert to Decimal via str() so a float like 0.7 becomes Decimal("0.7"),
    not its binary expansion. Rejects NaN/infinity and negatives.
    """
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        raise InvalidAmount(field, value) from None
    if not result.is_finite() or result < 0:
        raise InvalidAmount(field, value)
    return result


def round_money(value: Decimal) -> Decimal:
    return value.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


# ===========================================================================
# PUBLIC API
# ===========================================================================

def daily_allowance(distance_km: Number, cost_per_km: Number) -> Decimal:
    """round(distance_km * cost_per_km * 2, 2)"""
    distance = to_decimal(distance_km, "distance_km")
    rate = to_decimal(cost_per_km, "cost_per_km")
    return round_money(distance * rate * ROUND_TRIP_FACTOR)


def calculate(distance_km: Number, cost_per_km: Number, days_per_week: int) -> AllowanceBreakdown:
    """
    Daily, weekly and monthly allowance for a recurring commute.

    Raises InvalidFrequency (days_per_week outside 1–7) or InvalidAmount
    (negative distance/rate). No other failure modes.
    """
    check_days_per_week(days_per_week)
    daily = daily_allowance(distance_km, cost_per_km)
    weekly = round_money(daily * days_per_week)
    monthly = round_money(weekly * WEEKS_PER_YEAR / MONTHS_PER_YEAR)
    return AllowanceBreakdown(
        daily_allowance=daily,
        weekly_allowance=weekly,
        monthly_allowance=monthly,
    )


def calculate_allowance(distance_km: Number, cost_per_km: Number, days: int = 1) -> Decimal:
    """
    Allowance for `days` individual trip days (1–365), same rounding policy:
    the rounded daily amount multiplied by days, rounded again.
    """
    if not MIN_ALLOWANCE_DAYS <= days <= MAX_ALLOWANCE_DAYS:
        raise InvalidFrequency("days", days, MIN_ALLOWANCE_DAYS, MAX_ALLOWANCE_DAYS)
    return round_money(daily_allowance(distance_km, cost_per_km) * days)
