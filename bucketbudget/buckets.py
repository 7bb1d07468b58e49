"""Bucket groups and buckets.

Groups are user-ordered containers; buckets belong to exactly one group
and are the envelopes money is fed into and spent from.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from . import db
from .errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from .models import BUCKET_TYPES

logger = logging.getLogger(__name__)

DELETED_PREFIX = "DELETED: "
DEFAULT_COLOR = '#6366f1'


def _require_name(name: Any, label: str) -> str:
    cleaned = db.sanitize_text(name)
    if not cleaned:
        raise ValidationError(f"{label} name is required")
    return cleaned


def _next_sort_order(conn: sqlite3.Connection, sql: str, params: Sequence[Any]) -> int:
    return conn.execute(sql, params).fetchone()[0] + 1


# -- groups -----------------------------------------------------------------

def create_group(user_id: str, name: str) -> Dict[str, Any]:
    group_name = _require_name(name, "Group")
    with db.transaction() as conn:
        sort_order = _next_sort_order(
            conn, "SELECT COALESCE(MAX(sort_order), -1) FROM bucket_groups WHERE user_id = ?", (user_id,)
        )
        cursor = conn.execute(
            "INSERT INTO bucket_groups (user_id, name, sort_order, created_at) VALUES (?, ?, ?, ?)",
            (user_id, group_name, sort_order, db.to_iso_timestamp(db.utcnow())),
        )
        return dict(db.get_owned_group(conn, user_id, cursor.lastrowid))


def rename_group(user_id: str, group_id: int, name: str) -> Dict[str, Any]:
    group_name = _require_name(name, "Group")
    with db.transaction() as conn:
        db.get_owned_group(conn, user_id, group_id)
        conn.execute("UPDATE bucket_groups SET name = ? WHERE id = ?", (group_name, group_id))
        return dict(db.get_owned_group(conn, user_id, group_id))


def reorder_groups(user_id: str, group_ids: Sequence[int]) -> None:
    """Persist the display order given by ``group_ids``."""
    with db.transaction() as conn:
        for position, group_id in enumerate(group_ids):
            db.get_owned_group(conn, user_id, group_id)
            conn.execute("UPDATE bucket_groups SET sort_order = ? WHERE id = ?", (position, group_id))


def delete_group(user_id: str, group_id: int) -> None:
    """Delete an empty group.

    Raises:
        ConflictError: the group still holds active buckets.
    """
    with db.transaction() as conn:
        db.get_owned_group(conn, user_id, group_id)
        active = conn.execute(
            "SELECT COUNT(*) FROM buckets WHERE group_id = ? AND is_deleted = 0", (group_id,)
        ).fetchone()[0]
        if active:
            raise ConflictError(
                f"Cannot delete group with {active} active bucket(s). Move or delete them first."
            )
        conn.execute("DELETE FROM bucket_groups WHERE id = ?", (group_id,))


def list_groups(user_id: str) -> List[Dict[str, Any]]:
    """Groups in display order, each with its active buckets."""
    with db.connect() as conn:
        groups = [dict(row) for row in conn.execute(
            "SELECT * FROM bucket_groups WHERE user_id = ? ORDER BY sort_order, id", (user_id,)
        ).fetchall()]
        for group in groups:
            group['buckets'] = [dict(row) for row in conn.execute(
                "SELECT * FROM buckets WHERE group_id = ? AND is_deleted = 0 ORDER BY sort_order, id",
                (group['id'],),
            ).fetchall()]
    return groups


# -- buckets ----------------------------------------------------------------

def _check_type(bucket_type: str) -> None:
    if bucket_type not in BUCKET_TYPES:
        raise ValidationError(f"Bucket type must be one of: {', '.join(BUCKET_TYPES)}")


def _check_rollover_target(conn: sqlite3.Connection, user_id: str, target_id: Optional[int],
                           bucket_id: Optional[int] = None) -> None:
    if target_id is None:
        return
    if bucket_id is not None and target_id == bucket_id:
        raise ValidationError("A bucket cannot roll over into itself")
    db.get_owned_bucket(conn, user_id, target_id)


def create_bucket(
    user_id: str,
    group_id: int,
    name: str,
    bucket_type: str = 'spending',
    icon: Optional[str] = None,
    color: Optional[str] = None,
    auto_allocation_amount: Any = 0,
    rollover: bool = True,
    rollover_target_id: Optional[int] = None,
) -> Dict[str, Any]:
    bucket_name = _require_name(name, "Bucket")
    _check_type(bucket_type)
    auto_amount = db.parse_amount(auto_allocation_amount) or 0.0
    if auto_amount < 0:
        raise ValidationError("Auto allocation amount cannot be negative")

    with db.transaction() as conn:
        db.get_owned_group(conn, user_id, group_id)
        _check_rollover_target(conn, user_id, rollover_target_id)
        sort_order = _next_sort_order(
            conn, "SELECT COALESCE(MAX(sort_order), -1) FROM buckets WHERE group_id = ?", (group_id,)
        )
        cursor = conn.execute(
            "INSERT INTO buckets (group_id, name, type, icon, color, auto_allocation_amount, rollover, "
            "rollover_target_id, sort_order, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (group_id, bucket_name, bucket_type, db.sanitize_text(icon), color or DEFAULT_COLOR,
             auto_amount, 1 if rollover else 0, rollover_target_id, sort_order,
             db.to_iso_timestamp(db.utcnow())),
        )
        return dict(db.get_owned_bucket(conn, user_id, cursor.lastrowid))


def get_bucket(user_id: str, bucket_id: int) -> Dict[str, Any]:
    with db.connect() as conn:
        return dict(db.get_owned_bucket(conn, user_id, bucket_id))


def update_bucket(user_id: str, bucket_id: int, **changes: Any) -> Dict[str, Any]:
    """Update bucket fields; ``group_id`` moves the bucket to another owned group."""
    allowed = {'name', 'type', 'icon', 'color', 'auto_allocation_amount', 'rollover',
               'rollover_target_id', 'group_id'}
    unknown = set(changes) - allowed
    if unknown:
        raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")

    updates: Dict[str, Any] = {}
    if 'name' in changes:
        updates['name'] = _require_name(changes['name'], "Bucket")
    if 'type' in changes:
        _check_type(changes['type'])
        updates['type'] = changes['type']
    if 'icon' in changes:
        updates['icon'] = db.sanitize_text(changes['icon'])
    if 'color' in changes:
        updates['color'] = changes['color'] or DEFAULT_COLOR
    if 'auto_allocation_amount' in changes:
        auto_amount = db.parse_amount(changes['auto_allocation_amount']) or 0.0
        if auto_amount < 0:
            raise ValidationError("Auto allocation amount cannot be negative")
        updates['auto_allocation_amount'] = auto_amount
    if 'rollover' in changes:
        updates['rollover'] = 1 if changes['rollover'] else 0

    with db.transaction() as conn:
        existing = db.get_owned_bucket(conn, user_id, bucket_id)
        if 'rollover_target_id' in changes:
            _check_rollover_target(conn, user_id, changes['rollover_target_id'], bucket_id)
            updates['rollover_target_id'] = changes['rollover_target_id']
        if changes.get('group_id') is not None and changes['group_id'] != existing['group_id']:
            try:
                db.get_owned_group(conn, user_id, changes['group_id'])
            except NotFoundError:
                raise ForbiddenError("Target group not found or not owned") from None
            updates['group_id'] = changes['group_id']

        if updates:
            assignments = ", ".join(f"{column} = ?" for column in updates)
            conn.execute(f"UPDATE buckets SET {assignments} WHERE id = ?", [*updates.values(), bucket_id])
        return dict(db.get_owned_bucket(conn, user_id, bucket_id))


def reorder_buckets(user_id: str, group_id: int, bucket_ids: Sequence[int]) -> None:
    with db.transaction() as conn:
        db.get_owned_group(conn, user_id, group_id)
        for position, bucket_id in enumerate(bucket_ids):
            bucket = db.get_owned_bucket(conn, user_id, bucket_id)
            if bucket['group_id'] != group_id:
                raise ValidationError(f"Bucket {bucket_id} is not in group {group_id}")
            conn.execute("UPDATE buckets SET sort_order = ? WHERE id = ?", (position, bucket_id))


def delete_bucket(user_id: str, bucket_id: int) -> str:
    """Delete a bucket, returning ``'soft'`` or ``'hard'``.

    A bucket with ledger history is only marked deleted so past
    allocations keep their target; its rules and schedules go.  A bucket
    that was never used is removed outright.
    """
    with db.transaction() as conn:
        bucket = db.get_owned_bucket(conn, user_id, bucket_id)
        history = conn.execute(
            "SELECT (SELECT COUNT(*) FROM allocations WHERE bucket_id = ?) + "
            "(SELECT COUNT(*) FROM budget_allocations WHERE bucket_id = ?)",
            (bucket_id, bucket_id),
        ).fetchone()[0]

        if not history:
            conn.execute("DELETE FROM buckets WHERE id = ?", (bucket_id,))
            logger.info("Deleted unused bucket %s", bucket_id)
            return 'hard'

        conn.execute(
            "UPDATE buckets SET is_deleted = 1, name = ? WHERE id = ?",
            (f"{DELETED_PREFIX}{bucket['name']}", bucket_id),
        )
        conn.execute("DELETE FROM categorization_rules WHERE bucket_id = ?", (bucket_id,))
        conn.execute("DELETE FROM scheduled_transactions WHERE bucket_id = ?", (bucket_id,))
        conn.execute("UPDATE buckets SET rollover_target_id = NULL WHERE rollover_target_id = ?", (bucket_id,))
        logger.info("Soft-deleted bucket %s with %d ledger rows", bucket_id, history)
        return 'soft'


def list_buckets(user_id: str, include_deleted: bool = False) -> pd.DataFrame:
    sql = (
        "SELECT b.*, g.name AS group_name FROM buckets b JOIN bucket_groups g ON g.id = b.group_id "
        "WHERE g.user_id = ?"
    )
    if not include_deleted:
        sql += " AND b.is_deleted = 0"
    return db.read_frame(sql + " ORDER BY g.sort_order, b.sort_order, b.id", (user_id,))
