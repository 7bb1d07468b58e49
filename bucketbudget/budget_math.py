"""Core budget calculations.

These are pure functions over in-memory data: bucket balances, budget
cycle boundaries and rollover policy.  None of them raise; validating
the cycle type and ``start_day`` is done by ``settings`` before a cycle
is stored, and any type other than monthly or fortnightly is read as weekly.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, Optional, Union

import pandas as pd

from .models import BudgetCycleConfig

# Fixed Monday every fortnightly grid is counted from.
FORTNIGHT_EPOCH = date(1970, 1, 5)

DateLike = Union[date, datetime]


def bucket_balance(amounts: Iterable[float]) -> float:
    """Sum of signed ledger amounts; callers render to 2 d.p."""
    return float(sum(float(a) for a in amounts))


def bucket_balances(ledger: pd.DataFrame) -> Dict[int, float]:
    """Balance per bucket from a frame with ``bucket_id`` and ``amount`` columns."""
    if ledger is None or ledger.empty:
        return {}
    sums = ledger.groupby('bucket_id')['amount'].sum()
    return {int(bucket_id): float(total) for bucket_id, total in sums.items()}


def _as_date(value: DateLike) -> date:
    return value.date() if isinstance(value, datetime) else value


def _js_weekday(day: date) -> int:
    """Day of week with Sunday = 0 ... Saturday = 6."""
    return (day.weekday() + 1) % 7


def _clamped(year: int, month: int, day: int) -> date:
    last = calendar.monthrange(year, month)[1]
    return date(year, month, max(1, min(day, last)))


def _shift_month(year: int, month: int, delta: int) -> tuple:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def period_start(config: BudgetCycleConfig, reference: Optional[DateLike] = None) -> date:
    """Start of the budget cycle containing ``reference``."""
    ref = _as_date(reference or date.today())
    if config.cycle_type == 'monthly':
        candidate = _clamped(ref.year, ref.month, config.start_day)
        if candidate <= ref:
            return candidate
        year, month = _shift_month(ref.year, ref.month, -1)
        return _clamped(year, month, config.start_day)

    days_back = (_js_weekday(ref) - config.start_day) % 7
    start = ref - timedelta(days=days_back)

    if config.cycle_type == 'fortnightly':
        elapsed_weeks = (start - FORTNIGHT_EPOCH).days // 7
        if elapsed_weeks % 2:
            start -= timedelta(days=7)

    return start


def period_end(config: BudgetCycleConfig, reference: Optional[DateLike] = None) -> date:
    """Last day (inclusive) of the budget cycle containing ``reference``."""
    start = period_start(config, reference)

    if config.cycle_type == 'monthly':
        year, month = _shift_month(start.year, start.month, 1)
        return _clamped(year, month, config.start_day) - timedelta(days=1)
    if config.cycle_type == 'fortnightly':
        return start + timedelta(days=13)
    return start + timedelta(days=6)


def rollover_amount(balance: float, rollover_enabled: bool, bucket_type: str) -> float:
    """Amount a bucket carries into the next cycle."""
    if not rollover_enabled:
        return 0.0

    # Savings buckets always keep their full balance
    if bucket_type == 'savings':
        return balance

    # Spending buckets carry negative balances forward too (debt)
    return balance
