"""Allocation ledger and available-to-budget calculations.

Nothing here stores a balance.  Available-to-budget, bucket balances
and reserved amounts are recomputed from ledger rows on every read, and
every write that depends on them re-reads inside its own unit of work.
"""

from __future__ import annotations

import logging
import sqlite3
from collections import defaultdict
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional

import pandas as pd

from . import budget_math, db
from .errors import (
    AllocationMismatchError,
    InsufficientFundsError,
    NotFoundError,
    ValidationError,
)
from .models import Transaction
from .settings import load_cycle_config

logger = logging.getLogger(__name__)

SUM_TOLERANCE = 0.01


def _cents(value: float) -> float:
    return round(value, 2)


def _positive_amount(value: Any, label: str = "Amount") -> float:
    amount = db.parse_amount(value)
    if amount is None or amount <= 0:
        raise ValidationError(f"{label} must be a positive number")
    return amount


# -- available to budget ------------------------------------------------------

def totals_in(conn: sqlite3.Connection, user_id: str) -> Dict[str, float]:
    income = conn.execute(
        f"SELECT COALESCE(SUM(t.amount), 0) FROM transactions t "
        f"WHERE t.amount > 0 AND {db.OWNED_TRANSACTION_SQL}",
        (user_id, user_id),
    ).fetchone()[0]
    allocated = conn.execute(
        "SELECT COALESCE(SUM(amount), 0) FROM budget_allocations WHERE user_id = ?", (user_id,)
    ).fetchone()[0]
    return {
        'total_income': float(income),
        'total_allocated': float(allocated),
        'available_to_budget': float(income) - float(allocated),
    }


def available_in(conn: sqlite3.Connection, user_id: str) -> float:
    return totals_in(conn, user_id)['available_to_budget']


def available_to_budget(user_id: str) -> float:
    """Total income minus everything fed to buckets."""
    with db.connect() as conn:
        return available_in(conn, user_id)


def budget_totals(user_id: str) -> Dict[str, float]:
    with db.connect() as conn:
        return totals_in(conn, user_id)


def _check_funds(conn: sqlite3.Connection, user_id: str, requested: float) -> None:
    available = available_in(conn, user_id)
    if _cents(requested) > _cents(available):
        raise InsufficientFundsError(requested, available)


# -- reserved -----------------------------------------------------------------

def reserved_in(conn: sqlite3.Connection, user_id: str, today: Optional[date] = None) -> Dict[int, float]:
    cycle_end = budget_math.period_end(load_cycle_config(conn, user_id), today or date.today())
    rows = conn.execute(
        "SELECT bucket_id, amount FROM scheduled_transactions "
        "WHERE user_id = ? AND enabled = 1 AND next_due <= ?",
        (user_id, cycle_end.isoformat()),
    ).fetchall()
    reserved: Dict[int, float] = defaultdict(float)
    for row in rows:
        reserved[row['bucket_id']] += abs(row['amount'])
    return dict(reserved)


def reserved_amounts(user_id: str, today: Optional[date] = None) -> Dict[int, float]:
    """Money earmarked per bucket by enabled schedules due before the cycle ends."""
    with db.connect() as conn:
        return reserved_in(conn, user_id, today)


# -- transaction allocations --------------------------------------------------

def _normalize_splits(allocations: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    splits = []
    for entry in allocations or []:
        bucket_id = entry.get('bucket_id')
        amount = db.parse_amount(entry.get('amount'))
        if bucket_id is None or amount is None:
            raise ValidationError("Each allocation needs a bucket_id and a numeric amount")
        splits.append({'bucket_id': bucket_id, 'amount': amount})
    if not splits:
        raise ValidationError("Allocations array is required")
    bucket_ids = [s['bucket_id'] for s in splits]
    if len(set(bucket_ids)) != len(bucket_ids):
        raise ValidationError("Each bucket may appear only once in a split")
    return splits


def replace_allocations_in(conn: sqlite3.Connection, transaction: Transaction,
                           splits: List[Dict[str, Any]]) -> None:
    allocation_sum = sum(s['amount'] for s in splits)
    if abs(transaction.amount - allocation_sum) > SUM_TOLERANCE:
        raise AllocationMismatchError(allocation_sum, transaction.amount)

    conn.execute("DELETE FROM allocations WHERE transaction_id = ?", (transaction.id,))
    created_at = db.to_iso_timestamp(db.utcnow())
    conn.executemany(
        "INSERT INTO allocations (transaction_id, bucket_id, amount, created_at) VALUES (?, ?, ?, ?)",
        [(transaction.id, s['bucket_id'], s['amount'], created_at) for s in splits],
    )


def allocate_transaction(user_id: str, transaction_id: int,
                         allocations: Iterable[Mapping[str, Any]]) -> Transaction:
    """Replace a transaction's allocations with ``allocations`` (one or a split).

    The new amounts must sum to the transaction amount within one cent,
    otherwise nothing changes.
    """
    splits = _normalize_splits(allocations)

    with db.transaction() as conn:
        transaction = db.get_owned_transaction(conn, user_id, transaction_id)
        bucket_ids = [s['bucket_id'] for s in splits]
        if db.owned_bucket_ids(conn, user_id, bucket_ids) != set(bucket_ids):
            raise NotFoundError("One or more buckets not found")
        replace_allocations_in(conn, transaction, splits)
        return db.get_owned_transaction(conn, user_id, transaction_id)


def unallocate_transaction(user_id: str, transaction_id: int,
                           bucket_id: Optional[int] = None) -> int:
    """Remove all of a transaction's allocations, or only the one into ``bucket_id``."""
    with db.transaction() as conn:
        db.get_owned_transaction(conn, user_id, transaction_id)
        if bucket_id is None:
            return conn.execute(
                "DELETE FROM allocations WHERE transaction_id = ?", (transaction_id,)
            ).rowcount
        deleted = conn.execute(
            "DELETE FROM allocations WHERE transaction_id = ? AND bucket_id = ?",
            (transaction_id, bucket_id),
        ).rowcount
        if not deleted:
            raise NotFoundError("Allocation not found")
        return deleted


# -- budget allocations (feeding buckets) -------------------------------------

def _get_budget_allocation(conn: sqlite3.Connection, user_id: str, allocation_id: int) -> sqlite3.Row:
    row = conn.execute(
        "SELECT * FROM budget_allocations WHERE id = ? AND user_id = ?", (allocation_id, user_id)
    ).fetchone()
    if row is None:
        raise NotFoundError("Budget allocation not found")
    return row


def _budget_allocation_dict(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        'id': row['id'],
        'bucket_id': row['bucket_id'],
        'amount': row['amount'],
        'note': row['note'],
        'created_at': row['created_at'],
    }


def create_budget_allocation(user_id: str, bucket_id: int, amount: Any,
                             note: Optional[str] = None) -> Dict[str, Any]:
    """Feed ``amount`` from the available pool into a bucket."""
    if bucket_id is None:
        raise ValidationError("Bucket ID is required")
    value = _positive_amount(amount)

    with db.transaction() as conn:
        db.get_owned_bucket(conn, user_id, bucket_id)
        _check_funds(conn, user_id, value)
        cursor = conn.execute(
            "INSERT INTO budget_allocations (user_id, bucket_id, amount, note, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (user_id, bucket_id, value, db.sanitize_text(note), db.to_iso_timestamp(db.utcnow())),
        )
        return _budget_allocation_dict(_get_budget_allocation(conn, user_id, cursor.lastrowid))


def update_budget_allocation(user_id: str, allocation_id: int, amount: Any = None,
                             note: Optional[str] = None) -> Dict[str, Any]:
    """Change a feed's amount and/or note; only the increase is checked against the pool."""
    new_amount = _positive_amount(amount) if amount is not None else None

    with db.transaction() as conn:
        existing = _get_budget_allocation(conn, user_id, allocation_id)
        if new_amount is not None and new_amount > existing['amount']:
            _check_funds(conn, user_id, new_amount - existing['amount'])
        conn.execute(
            "UPDATE budget_allocations SET amount = ?, note = ? WHERE id = ?",
            (
                new_amount if new_amount is not None else existing['amount'],
                note if note is not None else existing['note'],
                allocation_id,
            ),
        )
        return _budget_allocation_dict(_get_budget_allocation(conn, user_id, allocation_id))


def delete_budget_allocation(user_id: str, allocation_id: int) -> None:
    """Remove a feed, returning its amount to the pool."""
    with db.transaction() as conn:
        _get_budget_allocation(conn, user_id, allocation_id)
        conn.execute("DELETE FROM budget_allocations WHERE id = ?", (allocation_id,))


def batch_create_budget_allocations(user_id: str,
                                    allocations: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
    """Create several feeds at once, all or nothing, with one funds check on the total."""
    entries = []
    for entry in allocations or []:
        if entry.get('bucket_id') is None:
            raise ValidationError("Invalid allocation in batch: bucket_id is required")
        entries.append({
            'bucket_id': entry['bucket_id'],
            'amount': _positive_amount(entry.get('amount'), "Batch allocation amount"),
            'note': db.sanitize_text(entry.get('note')),
        })
    if not entries:
        raise ValidationError("Invalid input: allocations array required")

    total = sum(e['amount'] for e in entries)
    with db.transaction() as conn:
        _check_funds(conn, user_id, total)
        bucket_ids = {e['bucket_id'] for e in entries}
        if db.owned_bucket_ids(conn, user_id, list(bucket_ids)) != bucket_ids:
            raise NotFoundError("One or more buckets not found")
        created_at = db.to_iso_timestamp(db.utcnow())
        conn.executemany(
            "INSERT INTO budget_allocations (user_id, bucket_id, amount, note, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            [(user_id, e['bucket_id'], e['amount'], e['note'], created_at) for e in entries],
        )
    logger.info("Fed %d buckets for user %s (total %.2f)", len(entries), user_id, total)
    return {'count': len(entries), 'total_allocated': total}


def feed_all(user_id: str, note: Optional[str] = None) -> Dict[str, Any]:
    """Feed every active bucket its auto-allocation amount in one batch."""
    with db.connect() as conn:
        rows = conn.execute(
            "SELECT b.id, b.auto_allocation_amount FROM buckets b "
            "JOIN bucket_groups g ON g.id = b.group_id "
            "WHERE g.user_id = ? AND b.is_deleted = 0 AND b.auto_allocation_amount > 0 "
            "ORDER BY g.sort_order, b.sort_order, b.id",
            (user_id,),
        ).fetchall()
    if not rows:
        return {'count': 0, 'total_allocated': 0.0}
    return batch_create_budget_allocations(
        user_id,
        [{'bucket_id': row['id'], 'amount': row['auto_allocation_amount'], 'note': note} for row in rows],
    )


def list_budget_allocations(user_id: str) -> pd.DataFrame:
    return db.read_frame(
        "SELECT ba.id, ba.bucket_id, b.name AS bucket_name, b.color AS bucket_color, "
        "ba.amount, ba.note, ba.created_at FROM budget_allocations ba "
        "JOIN buckets b ON b.id = ba.bucket_id WHERE ba.user_id = ? "
        "ORDER BY ba.created_at DESC, ba.id DESC",
        (user_id,),
    )


# -- balances -----------------------------------------------------------------

_LEDGER_SQL = """
SELECT a.bucket_id, a.amount FROM allocations a
JOIN buckets b ON b.id = a.bucket_id JOIN bucket_groups g ON g.id = b.group_id
WHERE g.user_id = ?
UNION ALL
SELECT ba.bucket_id, ba.amount FROM budget_allocations ba
JOIN buckets b ON b.id = ba.bucket_id JOIN bucket_groups g ON g.id = b.group_id
WHERE g.user_id = ?
"""


def bucket_balances(user_id: str) -> Dict[int, float]:
    """Balance of every bucket: transaction allocations plus feeds."""
    return budget_math.bucket_balances(db.read_frame(_LEDGER_SQL, (user_id, user_id)))


def bucket_balance(user_id: str, bucket_id: int) -> float:
    with db.connect() as conn:
        db.get_owned_bucket(conn, user_id, bucket_id, include_deleted=True)
        rows = conn.execute(
            "SELECT amount FROM allocations WHERE bucket_id = ? "
            "UNION ALL SELECT amount FROM budget_allocations WHERE bucket_id = ?",
            (bucket_id, bucket_id),
        ).fetchall()
    return budget_math.bucket_balance(row['amount'] for row in rows)


def bucket_summary(user_id: str, today: Optional[date] = None) -> pd.DataFrame:
    """Active buckets with balance, reserved and rollover amounts, in display order."""
    buckets = db.read_frame(
        "SELECT b.id, b.group_id, g.name AS group_name, b.name, b.type, b.color, "
        "b.auto_allocation_amount, b.rollover, b.rollover_target_id, b.sort_order "
        "FROM buckets b JOIN bucket_groups g ON g.id = b.group_id "
        "WHERE g.user_id = ? AND b.is_deleted = 0 ORDER BY g.sort_order, b.sort_order, b.id",
        (user_id,),
    )
    if buckets.empty:
        return buckets

    balances = bucket_balances(user_id)
    reserved = reserved_amounts(user_id, today)
    buckets['balance'] = buckets['id'].map(lambda bid: balances.get(bid, 0.0))
    buckets['reserved'] = buckets['id'].map(lambda bid: reserved.get(bid, 0.0))
    buckets['rollover_amount'] = buckets.apply(
        lambda row: budget_math.rollover_amount(row['balance'], bool(row['rollover']), row['type']),
        axis=1,
    )
    return buckets


def bucket_history(user_id: str, bucket_id: int, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
    """Feeds and transaction allocations for one bucket, newest first."""
    with db.connect() as conn:
        bucket = db.get_owned_bucket(conn, user_id, bucket_id, include_deleted=True)
        budget_count = conn.execute(
            "SELECT COUNT(*) FROM budget_allocations WHERE bucket_id = ?", (bucket_id,)
        ).fetchone()[0]
        transaction_count = conn.execute(
            "SELECT COUNT(*) FROM allocations WHERE bucket_id = ?", (bucket_id,)
        ).fetchone()[0]

    feeds = db.read_frame(
        "SELECT id, amount, note, created_at FROM budget_allocations WHERE bucket_id = ? "
        "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
        (bucket_id, limit, offset),
    )
    spends = db.read_frame(
        "SELECT a.id, a.transaction_id, a.amount, t.merchant, t.date FROM allocations a "
        "JOIN transactions t ON t.id = a.transaction_id WHERE a.bucket_id = ? "
        "ORDER BY t.date DESC, a.id DESC LIMIT ? OFFSET ?",
        (bucket_id, limit, offset),
    )
    return {
        'id': bucket['id'],
        'name': bucket['name'],
        'type': bucket['type'],
        'color': bucket['color'],
        'has_more': offset + limit < budget_count + transaction_count,
        'budget_allocations': feeds,
        'transaction_allocations': spends,
    }
