"""Per-user budget cycle settings."""

from __future__ import annotations

import sqlite3
from typing import Optional

from . import db
from .errors import ValidationError
from .models import CYCLE_TYPES, BudgetCycleConfig

DEFAULT_CYCLE_TYPE = 'fortnightly'
DEFAULT_START_DAY = 4  # Thursday, or the 4th for monthly cycles


def _validate(cycle_type: str, start_day: int) -> None:
    if cycle_type not in CYCLE_TYPES:
        raise ValidationError(
            f"Invalid budget cycle type '{cycle_type}'. Must be one of: {', '.join(CYCLE_TYPES)}"
        )
    if isinstance(start_day, bool) or not isinstance(start_day, int):
        raise ValidationError("Budget cycle start day must be an integer")
    if cycle_type == 'monthly' and not 1 <= start_day <= 31:
        raise ValidationError("Monthly cycles start on a day of the month between 1 and 31")
    if cycle_type != 'monthly' and not 0 <= start_day <= 6:
        raise ValidationError("Weekly and fortnightly cycles start on a day of the week between 0 and 6")


def load_cycle_config(conn: sqlite3.Connection, user_id: str) -> BudgetCycleConfig:
    row = conn.execute(
        "SELECT budget_cycle_type, budget_cycle_start_day FROM user_settings WHERE user_id = ?",
        (user_id,),
    ).fetchone()
    if row is None:
        return BudgetCycleConfig(DEFAULT_CYCLE_TYPE, DEFAULT_START_DAY)
    return BudgetCycleConfig(row['budget_cycle_type'], row['budget_cycle_start_day'])


def get_settings(user_id: str) -> BudgetCycleConfig:
    """Return the user's cycle settings, creating the defaults on first read."""
    with db.transaction() as conn:
        conn.execute(
            "INSERT OR IGNORE INTO user_settings (user_id, budget_cycle_type, budget_cycle_start_day) "
            "VALUES (?, ?, ?)",
            (user_id, DEFAULT_CYCLE_TYPE, DEFAULT_START_DAY),
        )
        return load_cycle_config(conn, user_id)


def update_settings(
    user_id: str,
    cycle_type: Optional[str] = None,
    start_day: Optional[int] = None,
) -> BudgetCycleConfig:
    """Change cycle type and/or anchor; omitted values keep their stored value."""
    with db.transaction() as conn:
        current = load_cycle_config(conn, user_id)
        new_type = cycle_type if cycle_type is not None else current.cycle_type
        new_day = start_day if start_day is not None else current.start_day
        if cycle_type is not None and start_day is None and cycle_type != current.cycle_type:
            # Weekday anchors and month-day anchors are not interchangeable.
            if not (1 <= new_day <= 31 if new_type == 'monthly' else 0 <= new_day <= 6):
                new_day = DEFAULT_START_DAY
        _validate(new_type, new_day)
        conn.execute(
            "INSERT INTO user_settings (user_id, budget_cycle_type, budget_cycle_start_day) "
            "VALUES (?, ?, ?) ON CONFLICT(user_id) DO UPDATE SET "
            "budget_cycle_type = excluded.budget_cycle_type, "
            "budget_cycle_start_day = excluded.budget_cycle_start_day",
            (user_id, new_type, new_day),
        )
        return BudgetCycleConfig(new_type, new_day)
