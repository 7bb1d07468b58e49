"""Scheduled (recurring) transactions.

A scheduled transaction is an expected bill or income with a recurrence
and a target bucket.  Incoming bank transactions that land close to the
next due date with a similar amount are matched to it: the transaction
is allocated to the bucket and the schedule moves on one step.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Optional

import pandas as pd

from . import db
from .errors import NotFoundError, ValidationError
from .models import FREQUENCIES, ScheduledTransaction, Transaction

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = 0.2  # ±20% of the scheduled amount
DATE_TOLERANCE_DAYS = 5

_DAY_STEPS = {'weekly': 7, 'fortnightly': 14, 'custom': 1}
_MONTH_STEPS = {'monthly': 1, 'yearly': 12}


@dataclass
class ScheduleMatch:
    matches: bool
    amount_diff: float
    days_diff: int


def _as_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    parsed = db.parse_date(value)
    if parsed is None:
        raise ValidationError(f"Invalid date: {value!r}")
    return parsed


def _check_recurrence(frequency: str, interval: int) -> None:
    if frequency not in FREQUENCIES:
        raise ValidationError(
            f"Invalid frequency '{frequency}'. Must be: weekly, fortnightly, monthly, yearly, or custom"
        )
    if isinstance(interval, bool) or not isinstance(interval, int) or interval < 1:
        raise ValidationError("Interval must be a positive whole number")


def _add_months(start: date, months: int) -> date:
    """Calendar month arithmetic, clamping to the end of shorter months."""
    return (pd.Timestamp(start) + pd.DateOffset(months=months)).date()


def _step(start: date, frequency: str, interval: int, steps: int) -> date:
    """``start`` moved forward by ``steps`` recurrence units."""
    if frequency in _DAY_STEPS:
        return start + timedelta(days=_DAY_STEPS[frequency] * interval * steps)
    return _add_months(start, _MONTH_STEPS[frequency] * interval * steps)


def calculate_next_due(start_date: Any, frequency: str, interval: int = 1,
                       today: Optional[date] = None) -> date:
    """First occurrence of the recurrence strictly after today (or the start, if in the future)."""
    _check_recurrence(frequency, interval)
    start = _as_date(start_date)
    today = today or date.today()

    # If start date is in the future, that's the next due date
    if start > today:
        return start

    # Jump close to today in one go, then walk the last step or two.
    if frequency in _DAY_STEPS:
        period_days = _DAY_STEPS[frequency] * interval
        steps = (today - start).days // period_days
    else:
        period_months = _MONTH_STEPS[frequency] * interval
        elapsed_months = (today.year - start.year) * 12 + (today.month - start.month)
        steps = max(0, elapsed_months // period_months - 1)

    candidate = _step(start, frequency, interval, steps)
    while candidate <= today:
        steps += 1
        candidate = _step(start, frequency, interval, steps)
    return candidate


def advance_to_next_due(current_due: Any, frequency: str, interval: int = 1) -> date:
    """One recurrence step past an already-due date."""
    _check_recurrence(frequency, interval)
    return _step(_as_date(current_due), frequency, interval, 1)


def matches_scheduled(transaction: Any, scheduled: Any) -> ScheduleMatch:
    """Compare ``transaction`` (amount, date) with ``scheduled`` (amount, next_due).

    Matches when the absolute amounts are within 20% of the scheduled
    amount and the dates are at most 5 days apart.  Both differences are
    returned regardless so callers can pick the best of several matches.
    """
    amount_diff = abs(abs(transaction.amount) - abs(scheduled.amount))
    amount_tolerance = abs(scheduled.amount) * AMOUNT_TOLERANCE
    days_diff = abs((_as_date(transaction.date) - _as_date(scheduled.next_due)).days)

    matches = amount_diff <= amount_tolerance and days_diff <= DATE_TOLERANCE_DAYS
    return ScheduleMatch(matches=matches, amount_diff=amount_diff, days_diff=days_diff)


def auto_match_in(conn: sqlite3.Connection, transaction: Transaction, user_id: str) -> Optional[int]:
    """Match ``transaction`` to the closest enabled schedule inside an open unit of work."""
    rows = conn.execute(
        "SELECT * FROM scheduled_transactions WHERE user_id = ? AND enabled = 1 "
        "ORDER BY next_due ASC, id ASC",
        (user_id,),
    ).fetchall()

    best: Optional[ScheduledTransaction] = None
    best_days: Optional[int] = None
    for row in rows:
        candidate = db.row_to_scheduled(row)
        result = matches_scheduled(transaction, candidate)
        if result.matches and (best_days is None or result.days_diff < best_days):
            best, best_days = candidate, result.days_diff

    if best is None:
        return None

    conn.execute(
        "INSERT INTO allocations (transaction_id, bucket_id, amount, created_at) VALUES (?, ?, ?, ?)",
        (transaction.id, best.bucket_id, transaction.amount, db.to_iso_timestamp(db.utcnow())),
    )
    new_next_due = advance_to_next_due(best.next_due, best.frequency, best.interval)
    conn.execute(
        "UPDATE scheduled_transactions SET next_due = ? WHERE id = ?",
        (new_next_due.isoformat(), best.id),
    )
    conn.execute(
        "UPDATE transactions SET matched_schedule_id = ? WHERE id = ?",
        (best.id, transaction.id),
    )
    logger.debug("Transaction %s matched schedule %s (%s); next due %s",
                 transaction.id, best.id, best.name, new_next_due)
    return best.id


def auto_match_to_scheduled(transaction_id: int, user_id: str) -> Optional[int]:
    """Match a stored transaction to a schedule. Returns the schedule id or None."""
    with db.transaction() as conn:
        transaction = db.get_owned_transaction(conn, user_id, transaction_id)
        if transaction.allocations:
            return None
        return auto_match_in(conn, transaction, user_id)


# -- CRUD -------------------------------------------------------------------

def _get_owned(conn: sqlite3.Connection, user_id: str, scheduled_id: int) -> ScheduledTransaction:
    row = conn.execute(
        "SELECT * FROM scheduled_transactions WHERE id = ? AND user_id = ?", (scheduled_id, user_id)
    ).fetchone()
    if row is None:
        raise NotFoundError("Scheduled transaction not found")
    return db.row_to_scheduled(row)


def _require_amount(amount: Any) -> float:
    parsed = db.parse_amount(amount)
    if parsed is None:
        raise ValidationError("Amount must be a number")
    return parsed


def create_scheduled(
    user_id: str,
    bucket_id: int,
    name: str,
    amount: Any,
    frequency: str,
    start_date: Any,
    interval: int = 1,
    today: Optional[date] = None,
) -> ScheduledTransaction:
    if not bucket_id or not name or amount is None or not frequency or not start_date:
        raise ValidationError("bucket_id, name, amount, frequency, and start_date are required")
    parsed_amount = _require_amount(amount)
    _check_recurrence(frequency, interval)
    start = _as_date(start_date)
    next_due = calculate_next_due(start, frequency, interval, today=today)

    with db.transaction() as conn:
        db.get_owned_bucket(conn, user_id, bucket_id)
        cursor = conn.execute(
            "INSERT INTO scheduled_transactions (user_id, bucket_id, name, amount, frequency, interval, "
            "start_date, next_due, enabled, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?)",
            (user_id, bucket_id, name, parsed_amount, frequency, interval,
             start.isoformat(), next_due.isoformat(), db.to_iso_timestamp(db.utcnow())),
        )
        return _get_owned(conn, user_id, cursor.lastrowid)


def update_scheduled(user_id: str, scheduled_id: int, today: Optional[date] = None,
                     **changes: Any) -> ScheduledTransaction:
    """Apply ``changes``; next due is recomputed when the recurrence changes."""
    allowed = {'name', 'amount', 'bucket_id', 'frequency', 'interval', 'start_date', 'enabled'}
    unknown = set(changes) - allowed
    if unknown:
        raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")

    with db.transaction() as conn:
        existing = _get_owned(conn, user_id, scheduled_id)
        updates = {}

        if changes.get('bucket_id') is not None and changes['bucket_id'] != existing.bucket_id:
            db.get_owned_bucket(conn, user_id, changes['bucket_id'])
            updates['bucket_id'] = changes['bucket_id']
        if changes.get('name') is not None:
            updates['name'] = changes['name']
        if changes.get('amount') is not None:
            updates['amount'] = _require_amount(changes['amount'])
        if changes.get('enabled') is not None:
            updates['enabled'] = 1 if changes['enabled'] else 0

        recurrence_keys = ('start_date', 'frequency', 'interval')
        if any(changes.get(key) is not None for key in recurrence_keys):
            start = _as_date(changes['start_date']) if changes.get('start_date') is not None else existing.start_date
            frequency = changes.get('frequency') or existing.frequency
            interval = changes['interval'] if changes.get('interval') is not None else existing.interval
            _check_recurrence(frequency, interval)
            updates.update(
                start_date=start.isoformat(),
                frequency=frequency,
                interval=interval,
                next_due=calculate_next_due(start, frequency, interval, today=today).isoformat(),
            )

        if updates:
            assignments = ", ".join(f"{column} = ?" for column in updates)
            conn.execute(
                f"UPDATE scheduled_transactions SET {assignments} WHERE id = ?",
                [*updates.values(), scheduled_id],
            )
        return _get_owned(conn, user_id, scheduled_id)


def set_enabled(user_id: str, scheduled_id: int, enabled: bool) -> ScheduledTransaction:
    return update_scheduled(user_id, scheduled_id, enabled=enabled)


def delete_scheduled(user_id: str, scheduled_id: int) -> None:
    with db.transaction() as conn:
        _get_owned(conn, user_id, scheduled_id)
        conn.execute("DELETE FROM scheduled_transactions WHERE id = ?", (scheduled_id,))


def list_scheduled(user_id: str) -> pd.DataFrame:
    return db.read_frame(
        "SELECT s.id, s.name, s.amount, s.frequency, s.interval, s.start_date, s.next_due, "
        "s.enabled, s.bucket_id, b.name AS bucket_name, b.color AS bucket_color "
        "FROM scheduled_transactions s JOIN buckets b ON b.id = s.bucket_id "
        "WHERE s.user_id = ? ORDER BY s.next_due ASC, s.id ASC",
        (user_id,),
    )
