"""Overdue penalty computation.

Pure functions only: no clock reads, no storage access.
"""

import math
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

Money = Union[Decimal, int, float, str]

ONE_DAY = timedelta(days=1)
CENTS = Decimal("0.01")


def _to_decimal(value: Money) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() keeps 0.1 as 0.1 instead of its binary expansion
    return Decimal(str(value))


def overdue_days(due_date: datetime, returned_at: datetime) -> int:
    """Whole days late, rounded up; any fraction of a day counts as a day."""
    late = returned_at - due_date
    return max(0, math.ceil(late / ONE_DAY))


def calculate_penalty(due_date: datetime, returned_at: datetime, fee_per_day: Money, fee_cap: Money) -> Decimal:
    days = overdue_days(due_date, returned_at)
    if days == 0:
        return Decimal("0.00")
    amount = min(days * _to_decimal(fee_per_day), _to_decimal(fee_cap))
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)
