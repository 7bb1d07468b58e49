"""Merchant based categorization rules.

A rule maps a lowercased merchant substring to a bucket.  New
transactions without allocations are matched against the user's rules
and, on a hit, allocated in full to the rule's bucket.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import List, Optional, Sequence

import pandas as pd

from . import db
from .errors import NotFoundError, ValidationError
from .models import CategorizationRule, Transaction

logger = logging.getLogger(__name__)


def normalize_pattern(pattern: str) -> str:
    return pattern.strip().lower()


def find_matching_rule(
    transaction: Transaction,
    rules: Sequence[CategorizationRule],
) -> Optional[CategorizationRule]:
    """First rule whose pattern occurs in the merchant, case-insensitively."""
    if not transaction.merchant:
        return None

    merchant_lower = transaction.merchant.lower()
    for rule in rules:
        if rule.merchant_pattern and rule.merchant_pattern in merchant_lower:
            return rule
    return None


def load_rules(conn: sqlite3.Connection, user_id: str) -> List[CategorizationRule]:
    """Rules in stored order; the first registered pattern wins when several match."""
    rows = conn.execute(
        "SELECT * FROM categorization_rules WHERE user_id = ? ORDER BY id",
        (user_id,),
    ).fetchall()
    return [db.row_to_rule(row) for row in rows]


def apply_rules_in(conn: sqlite3.Connection, transaction_id: int, user_id: str) -> bool:
    """Allocate an unallocated transaction by rule inside an open unit of work."""
    try:
        transaction = db.get_owned_transaction(conn, user_id, transaction_id)
    except NotFoundError:
        return False

    # Skip if already has allocations
    if transaction.allocations:
        return False

    rule = find_matching_rule(transaction, load_rules(conn, user_id))
    if rule is None:
        return False

    conn.execute(
        "INSERT INTO allocations (transaction_id, bucket_id, amount, created_at) VALUES (?, ?, ?, ?)",
        (transaction.id, rule.bucket_id, transaction.amount, db.to_iso_timestamp(db.utcnow())),
    )
    logger.debug("Rule %r allocated transaction %s to bucket %s",
                 rule.merchant_pattern, transaction.id, rule.bucket_id)
    return True


def apply_categorization_rules(transaction_id: int, user_id: str) -> bool:
    """Apply the user's rules to one transaction. Returns True if an allocation was made."""
    with db.transaction() as conn:
        return apply_rules_in(conn, transaction_id, user_id)


def upsert_rule(user_id: str, merchant_pattern: str, bucket_id: int) -> CategorizationRule:
    """Create a rule, or re-point the existing rule with the same pattern."""
    if not isinstance(merchant_pattern, str) or not merchant_pattern.strip():
        raise ValidationError("Merchant pattern is required")
    if bucket_id is None:
        raise ValidationError("Bucket ID is required")
    pattern = normalize_pattern(merchant_pattern)

    with db.transaction() as conn:
        db.get_owned_bucket(conn, user_id, bucket_id)
        conn.execute(
            "INSERT INTO categorization_rules (user_id, merchant_pattern, bucket_id, created_at) "
            "VALUES (?, ?, ?, ?) ON CONFLICT(user_id, merchant_pattern) "
            "DO UPDATE SET bucket_id = excluded.bucket_id",
            (user_id, pattern, bucket_id, db.to_iso_timestamp(db.utcnow())),
        )
        row = conn.execute(
            "SELECT * FROM categorization_rules WHERE user_id = ? AND merchant_pattern = ?",
            (user_id, pattern),
        ).fetchone()
        return db.row_to_rule(row)


def delete_rule(user_id: str, rule_id: int) -> None:
    with db.transaction() as conn:
        deleted = conn.execute(
            "DELETE FROM categorization_rules WHERE id = ? AND user_id = ?", (rule_id, user_id)
        ).rowcount
    if not deleted:
        raise NotFoundError("Rule not found")


def list_rules(user_id: str) -> pd.DataFrame:
    return db.read_frame(
        "SELECT r.id, r.merchant_pattern, r.bucket_id, b.name AS bucket_name, "
        "b.color AS bucket_color, r.created_at "
        "FROM categorization_rules r JOIN buckets b ON b.id = r.bucket_id "
        "WHERE r.user_id = ? ORDER BY r.created_at DESC, r.id DESC",
        (user_id,),
    )
