"""
Tolerance Matcher

Compares a customer-reported purchase (time, amount) with the business's
POS record. A record matches when both deltas fall inside the tolerance
window: |Δt| <= 2 minutes AND |Δamount| <= 2 SEK. Both bounds are inclusive.

Confidence decays linearly on each axis from 1.0 at zero delta to 0.0 at
the boundary; the overall confidence is the average of the two axes.

Pure functions. No retries, no side effects.
"""
import math
from datetime import datetime, timedelta
from typing import Optional

from ...models.verification import MatchResult, ToleranceWindow
from ..errors import InvalidInputError


TIME_TOLERANCE_MINUTES = 2.0
AMOUNT_TOLERANCE = 2.0


def _validate_amount(name: str, amount: Optional[float]) -> float:
    if amount is None:
        raise InvalidInputError(f"{name} is required")
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise InvalidInputError(f"{name} must be a number")
    if math.isnan(amount) or math.isinf(amount):
        raise InvalidInputError(f"{name} must be a finite number")
    if amount < 0:
        raise InvalidInputError(f"{name} cannot be negative")
    return float(amount)


def _validate_time(name: str, value: Optional[datetime]) -> datetime:
    if value is None:
        raise InvalidInputError(f"{name} is required")
    if not isinstance(value, datetime):
        raise InvalidInputError(f"{name} must be a datetime")
    return value


def _axis_confidence(delta: float, tolerance: float) -> float:
    return max(0.0, 1.0 - abs(delta) / tolerance)


def match(
    customer_time: datetime,
    customer_amount: float,
    pos_time: datetime,
    pos_amount: float,
    time_tolerance_minutes: float = TIME_TOLERANCE_MINUTES,
    amount_tolerance: float = AMOUNT_TOLERANCE,
) -> MatchResult:
    """
    Match a customer report against a POS record.

    Deltas are signed (POS minus customer). Raises InvalidInputError for
    missing times and for NaN, infinite or negative amounts.
    """
    customer_time = _validate_time("customer_time", customer_time)
    pos_time = _validate_time("pos_time", pos_time)
    customer_amount = _validate_amount("customer_amount", customer_amount)
    pos_amount = _validate_amount("pos_amount", pos_amount)

    if (customer_time.tzinfo is None) != (pos_time.tzinfo is None):
        raise InvalidInputError("customer_time and pos_time must both be naive or both be timezone-aware")

    time_delta = (pos_time - customer_time).total_seconds() / 60.0
    amount_delta = pos_amount - customer_amount

    # Rounding keeps float noise (e.g. 102.0 - 100.0) from straddling the boundary
    time_delta = round(time_delta, 6)
    amount_delta = round(amount_delta, 6)

    is_match = abs(time_delta) <= time_tolerance_minutes and abs(amount_delta) <= amount_tolerance

    confidence = (
        _axis_confidence(time_delta, time_tolerance_minutes)
        + _axis_confidence(amount_delta, amount_tolerance)
    ) / 2.0

    return MatchResult(
        is_match=is_match,
        time_delta_minutes=time_delta,
        amount_delta=amount_delta,
        confidence=round(confidence, 4),
    )


def build_tolerance_window(
    customer_time: datetime,
    customer_amount: float,
    time_tolerance_minutes: float = TIME_TOLERANCE_MINUTES,
    amount_tolerance: float = AMOUNT_TOLERANCE,
) -> ToleranceWindow:
    """Window stored alongside a transaction. The amount floor is 0."""
    customer_time = _validate_time("customer_time", customer_time)
    customer_amount = _validate_amount("customer_amount", customer_amount)

    spread = timedelta(minutes=time_tolerance_minutes)
    return ToleranceWindow(
        time_start=customer_time - spread,
        time_end=customer_time + spread,
        amount_min=round(max(0.0, customer_amount - amount_tolerance), 2),
        amount_max=round(customer_amount + amount_tolerance, 2),
    )
