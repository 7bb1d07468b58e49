"""Manual transactions and transaction history reads."""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import Any, Optional

import pandas as pd

from . import db, rules
from .errors import ValidationError
from .models import STATUS_CONFIRMED, Transaction

logger = logging.getLogger(__name__)

MERCHANT_MAX_LENGTH = 100

_WHITESPACE = re.compile(r"\s+")


def extract_merchant(description: Optional[str]) -> Optional[str]:
    """Best-effort merchant name from a raw bank description."""
    if not description:
        return None
    cleaned = _WHITESPACE.sub(" ", description).strip()
    return cleaned[:MERCHANT_MAX_LENGTH] or None


def create_manual_transaction(
    user_id: str,
    amount: Any,
    merchant: str,
    date_value: Any = None,
    description: Optional[str] = None,
    account_id: Optional[int] = None,
) -> Transaction:
    """Record a transaction by hand, then run the user's categorization rules on it."""
    value = db.parse_amount(amount)
    if value is None or not db.sanitize_text(merchant):
        raise ValidationError("amount and merchant are required")
    txn_date = db.to_iso_date(date_value) if date_value is not None else date.today().isoformat()
    if txn_date is None:
        raise ValidationError(f"Invalid date: {date_value!r}")

    with db.transaction() as conn:
        if account_id is not None:
            db.get_owned_account(conn, user_id, account_id)
        cursor = conn.execute(
            "INSERT INTO transactions (account_id, user_id, external_id, amount, date, merchant, "
            "description, status, is_manual, created_at) VALUES (?, ?, NULL, ?, ?, ?, ?, ?, 1, ?)",
            (account_id, user_id, value, txn_date,
             db.sanitize_text(merchant), db.sanitize_text(description), STATUS_CONFIRMED,
             db.to_iso_timestamp(db.utcnow())),
        )
        transaction_id = cursor.lastrowid
        rules.apply_rules_in(conn, transaction_id, user_id)
        return db.get_owned_transaction(conn, user_id, transaction_id)


def update_transaction(
    user_id: str,
    transaction_id: int,
    amount: Any = None,
    merchant: Optional[str] = None,
    date_value: Any = None,
    description: Optional[str] = None,
) -> Transaction:
    """Edit a transaction's fields.

    Only manual transactions may change amount; synced amounts change
    through amendment during sync.  Allocations are scaled by the signed
    ratio of new to old amount, so splits stay in proportion and still sum
    to the transaction.
    """
    with db.transaction() as conn:
        existing = db.get_owned_transaction(conn, user_id, transaction_id)
        updates = {}

        if amount is not None:
            new_amount = db.parse_amount(amount)
            if new_amount is None:
                raise ValidationError("Amount must be a number")
            if not existing.is_manual and new_amount != existing.amount:
                raise ValidationError("Cannot change the amount of a synced transaction")
            updates['amount'] = new_amount
            if existing.allocations and existing.amount != 0 and new_amount != existing.amount:
                scale = new_amount / existing.amount
                conn.executemany(
                    "UPDATE allocations SET amount = ? WHERE id = ?",
                    [(a.amount * scale, a.id) for a in existing.allocations],
                )
        if db.sanitize_text(merchant):
            updates['merchant'] = db.sanitize_text(merchant)
        if date_value:
            iso = db.to_iso_date(date_value)
            if iso is None:
                raise ValidationError(f"Invalid date: {date_value!r}")
            updates['date'] = iso
        if description is not None:
            updates['description'] = db.sanitize_text(description)

        if updates:
            assignments = ", ".join(f"{column} = ?" for column in updates)
            conn.execute(
                f"UPDATE transactions SET {assignments} WHERE id = ?",
                [*updates.values(), transaction_id],
            )
        return db.get_owned_transaction(conn, user_id, transaction_id)


def delete_transaction(user_id: str, transaction_id: int) -> None:
    """Delete a manual transaction and its allocations; synced ones are refused."""
    with db.transaction() as conn:
        existing = db.get_owned_transaction(conn, user_id, transaction_id)
        if not existing.is_manual:
            raise ValidationError("Cannot delete synced transactions")
        conn.execute("DELETE FROM transactions WHERE id = ?", (transaction_id,))
    logger.info("Deleted manual transaction %s", transaction_id)


def get_transaction(user_id: str, transaction_id: int) -> Transaction:
    with db.connect() as conn:
        return db.get_owned_transaction(conn, user_id, transaction_id)


def list_transactions(user_id: str, unallocated_only: bool = False,
                      limit: int = 50, offset: int = 0) -> pd.DataFrame:
    """Newest-first transaction history with account names and allocated totals.

    Returns:
        DataFrame with one row per transaction; ``allocated`` is the sum of
        its allocations and ``allocation_count`` how many buckets it is split over.
    """
    sql = (
        "SELECT t.id, t.date, t.amount, t.merchant, t.description, t.category, t.status, "
        "t.is_manual, t.is_amended, t.account_id, acc.name AS account_name, "
        "acc.institution AS institution, "
        "COALESCE(SUM(a.amount), 0) AS allocated, COUNT(a.id) AS allocation_count "
        "FROM transactions t LEFT JOIN accounts acc ON acc.id = t.account_id "
        "LEFT JOIN allocations a ON a.transaction_id = t.id "
        f"WHERE {db.OWNED_TRANSACTION_SQL} GROUP BY t.id"
    )
    if unallocated_only:
        sql += " HAVING COUNT(a.id) = 0"
    sql += " ORDER BY t.date DESC, t.id DESC LIMIT ? OFFSET ?"
    frame = db.read_frame(sql, (user_id, user_id, limit, offset))
    if not frame.empty:
        frame['date'] = pd.to_datetime(frame['date']).dt.date
        frame['is_manual'] = frame['is_manual'].astype(bool)
        frame['is_amended'] = frame['is_amended'].astype(bool)
    return frame


def unallocated_count(user_id: str) -> int:
    """Number of owned transactions with no allocations (the inbox size)."""
    with db.connect() as conn:
        return conn.execute(
            f"SELECT COUNT(*) FROM transactions t WHERE {db.OWNED_TRANSACTION_SQL} "
            "AND NOT EXISTS (SELECT 1 FROM allocations a WHERE a.transaction_id = t.id)",
            (user_id, user_id),
        ).fetchone()[0]
