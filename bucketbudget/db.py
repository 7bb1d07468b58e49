from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Optional, Sequence

import pandas as pd

from .config import DB_PATH
from .errors import NotFoundError
from .models import (
    Account,
    Allocation,
    CategorizationRule,
    ScheduledTransaction,
    Transaction,
)

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS accounts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    external_id TEXT NOT NULL,
    name TEXT NOT NULL,
    institution TEXT,
    account_type TEXT,
    balance_current REAL,
    balance_available REAL,
    currency TEXT DEFAULT 'NZD',
    status TEXT,
    connection_logo TEXT,
    last_refreshed_at TEXT,
    last_synced_at TEXT,
    first_sync_completed_at TEXT,
    connection_error TEXT,
    created_at TEXT,
    UNIQUE (user_id, external_id)
);

CREATE TABLE IF NOT EXISTS bucket_groups (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    sort_order INTEGER NOT NULL DEFAULT 0,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS buckets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    group_id INTEGER NOT NULL REFERENCES bucket_groups(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'spending',
    icon TEXT,
    color TEXT DEFAULT '#6366f1',
    auto_allocation_amount REAL NOT NULL DEFAULT 0,
    rollover INTEGER NOT NULL DEFAULT 1,
    rollover_target_id INTEGER REFERENCES buckets(id) ON DELETE SET NULL,
    sort_order INTEGER NOT NULL DEFAULT 0,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS scheduled_transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    bucket_id INTEGER NOT NULL REFERENCES buckets(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    amount REAL NOT NULL,
    frequency TEXT NOT NULL,
    interval INTEGER NOT NULL DEFAULT 1,
    start_date TEXT NOT NULL,
    next_due TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER REFERENCES accounts(id) ON DELETE CASCADE,
    user_id TEXT,
    external_id TEXT,
    amount REAL NOT NULL,
    date TEXT NOT NULL,
    merchant TEXT,
    description TEXT,
    category TEXT,
    balance REAL,
    transaction_type TEXT,
    status TEXT NOT NULL DEFAULT 'confirmed',
    is_manual INTEGER NOT NULL DEFAULT 0,
    is_amended INTEGER NOT NULL DEFAULT 0,
    matched_schedule_id INTEGER REFERENCES scheduled_transactions(id) ON DELETE SET NULL,
    created_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_txn_external
ON transactions (account_id, external_id) WHERE external_id IS NOT NULL;

CREATE INDEX IF NOT EXISTS ix_txn_date ON transactions (date);
CREATE INDEX IF NOT EXISTS ix_txn_status ON transactions (account_id, status);

CREATE TABLE IF NOT EXISTS allocations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    transaction_id INTEGER NOT NULL REFERENCES transactions(id) ON DELETE CASCADE,
    bucket_id INTEGER NOT NULL REFERENCES buckets(id) ON DELETE CASCADE,
    amount REAL NOT NULL,
    created_at TEXT,
    UNIQUE (transaction_id, bucket_id)
);

CREATE INDEX IF NOT EXISTS ix_alloc_bucket ON allocations (bucket_id);

CREATE TABLE IF NOT EXISTS budget_allocations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    bucket_id INTEGER NOT NULL REFERENCES buckets(id) ON DELETE CASCADE,
    amount REAL NOT NULL CHECK (amount > 0),
    note TEXT,
    created_at TEXT
);

CREATE INDEX IF NOT EXISTS ix_budget_alloc_user ON budget_allocations (user_id);

CREATE TABLE IF NOT EXISTS categorization_rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    merchant_pattern TEXT NOT NULL,
    bucket_id INTEGER NOT NULL REFERENCES buckets(id) ON DELETE CASCADE,
    created_at TEXT,
    UNIQUE (user_id, merchant_pattern)
);

CREATE TABLE IF NOT EXISTS user_settings (
    user_id TEXT PRIMARY KEY,
    budget_cycle_type TEXT NOT NULL DEFAULT 'fortnightly',
    budget_cycle_start_day INTEGER NOT NULL DEFAULT 4
);
"""

# Transactions reachable by a user: through an owned account, or manual and accountless.
OWNED_TRANSACTION_SQL = (
    "(t.account_id IN (SELECT id FROM accounts WHERE user_id = ?) "
    "OR (t.account_id IS NULL AND t.is_manual = 1 AND t.user_id = ?))"
)


def _ensure_dirs() -> None:
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)


@contextmanager
def connect() -> Iterator[sqlite3.Connection]:
    _ensure_dirs()
    conn = sqlite3.connect(str(DB_PATH), isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Unit of work: every statement inside commits together or not at all."""
    with connect() as conn:
        conn.execute("BEGIN")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")


def init_db() -> None:
    with connect() as conn:
        conn.executescript(SCHEMA_SQL)
        # Run migrations to add new columns if they don't exist
        _migrate_database(conn)


def _migrate_database(conn: sqlite3.Connection) -> None:
    """Add new columns to existing database if they don't exist."""
    new_columns = {
        'accounts': [
            ('first_sync_completed_at', 'TEXT'),
            ('last_refreshed_at', 'TEXT'),
            ('connection_logo', 'TEXT'),
        ],
        'transactions': [
            ('user_id', 'TEXT'),
            ('is_amended', 'INTEGER NOT NULL DEFAULT 0'),
            ('matched_schedule_id', 'INTEGER'),
        ],
    }
    for table, columns in new_columns.items():
        existing_columns = [row[1] for row in conn.execute(f"PRAGMA table_info({table})")]
        for column_name, column_type in columns:
            if column_name in existing_columns:
                continue
            try:
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {column_name} {column_type}")
                logger.info("Added column %s to %s table", column_name, table)
            except sqlite3.OperationalError as e:
                if "duplicate column name" not in str(e):
                    raise


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_iso_date(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    # pandas Timestamp or datetime
    if hasattr(value, 'to_pydatetime'):
        value = value.to_pydatetime()
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    # strings like YYYY-MM-DD or full ISO timestamps from the aggregator
    ts = pd.to_datetime(value, errors='coerce')
    if pd.isna(ts):
        return None
    return ts.date().isoformat()


def parse_date(value: Any) -> Optional[date]:
    iso = to_iso_date(value)
    return date.fromisoformat(iso) if iso else None


def parse_amount(value: Any) -> Optional[float]:
    """Convert different textual amount representations into floats."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        cleaned = value.strip()
        if not cleaned:
            return None
        # Handle accounting negatives e.g. (123.45)
        if cleaned.startswith("(") and cleaned.endswith(")"):
            cleaned = f"-{cleaned[1:-1]}"
        value = cleaned.replace("$", "").replace(",", "")
    parsed = pd.to_numeric([value], errors='coerce')
    number = parsed[0]
    if pd.isna(number):
        return None
    return float(number)


def sanitize_text(value: Any) -> Optional[str]:
    """Convert empty strings and NA values to NULL."""
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped if stripped else None
    if pd.isna(value):
        return None
    return str(value)


def placeholders(values: Sequence[Any]) -> str:
    return ",".join("?" for _ in values)


def read_frame(sql: str, params: Iterable[Any] = ()) -> pd.DataFrame:
    with connect() as conn:
        conn.row_factory = None
        return pd.read_sql_query(sql, conn, params=list(params))


# -- row conversion ---------------------------------------------------------

def row_to_account(row: sqlite3.Row) -> Account:
    return Account(
        id=row['id'],
        user_id=row['user_id'],
        external_id=row['external_id'],
        name=row['name'],
        institution=row['institution'],
        account_type=row['account_type'],
        balance_current=row['balance_current'],
        balance_available=row['balance_available'],
        currency=row['currency'] or 'NZD',
        status=row['status'],
        connection_logo=row['connection_logo'],
        last_refreshed_at=parse_timestamp(row['last_refreshed_at']),
        last_synced_at=parse_timestamp(row['last_synced_at']),
        first_sync_completed_at=parse_timestamp(row['first_sync_completed_at']),
        connection_error=row['connection_error'],
    )


def row_to_transaction(row: sqlite3.Row, allocations: Optional[List[Allocation]] = None) -> Transaction:
    return Transaction(
        id=row['id'],
        amount=row['amount'],
        date=date.fromisoformat(row['date']),
        account_id=row['account_id'],
        user_id=row['user_id'],
        external_id=row['external_id'],
        merchant=row['merchant'],
        description=row['description'],
        category=row['category'],
        balance=row['balance'],
        transaction_type=row['transaction_type'],
        status=row['status'],
        is_manual=bool(row['is_manual']),
        is_amended=bool(row['is_amended']),
        matched_schedule_id=row['matched_schedule_id'],
        allocations=allocations or [],
    )


def row_to_allocation(row: sqlite3.Row) -> Allocation:
    return Allocation(
        id=row['id'],
        transaction_id=row['transaction_id'],
        bucket_id=row['bucket_id'],
        amount=row['amount'],
    )


def row_to_scheduled(row: sqlite3.Row) -> ScheduledTransaction:
    return ScheduledTransaction(
        id=row['id'],
        user_id=row['user_id'],
        bucket_id=row['bucket_id'],
        name=row['name'],
        amount=row['amount'],
        frequency=row['frequency'],
        interval=row['interval'],
        start_date=date.fromisoformat(row['start_date']),
        next_due=date.fromisoformat(row['next_due']),
        enabled=bool(row['enabled']),
    )


def row_to_rule(row: sqlite3.Row) -> CategorizationRule:
    return CategorizationRule(
        id=row['id'],
        user_id=row['user_id'],
        merchant_pattern=row['merchant_pattern'],
        bucket_id=row['bucket_id'],
    )


# -- ownership-chain lookups ------------------------------------------------

def get_owned_account(conn: sqlite3.Connection, user_id: str, account_id: int) -> Account:
    row = conn.execute(
        "SELECT * FROM accounts WHERE id = ? AND user_id = ?", (account_id, user_id)
    ).fetchone()
    if row is None:
        raise NotFoundError("Account not found")
    return row_to_account(row)


def fetch_allocations(conn: sqlite3.Connection, transaction_ids: Sequence[int]) -> dict:
    """Map transaction id -> list of its allocations."""
    grouped: dict = {tid: [] for tid in transaction_ids}
    if not transaction_ids:
        return grouped
    rows = conn.execute(
        f"SELECT * FROM allocations WHERE transaction_id IN ({placeholders(transaction_ids)}) ORDER BY id",
        list(transaction_ids),
    ).fetchall()
    for row in rows:
        grouped.setdefault(row['transaction_id'], []).append(row_to_allocation(row))
    return grouped


def get_owned_transaction(conn: sqlite3.Connection, user_id: str, transaction_id: int) -> Transaction:
    row = conn.execute(
        f"SELECT t.* FROM transactions t WHERE t.id = ? AND {OWNED_TRANSACTION_SQL}",
        (transaction_id, user_id, user_id),
    ).fetchone()
    if row is None:
        raise NotFoundError("Transaction not found")
    allocations = fetch_allocations(conn, [row['id']])[row['id']]
    return row_to_transaction(row, allocations)


def get_owned_bucket(conn: sqlite3.Connection, user_id: str, bucket_id: int,
                     include_deleted: bool = False) -> sqlite3.Row:
    sql = (
        "SELECT b.* FROM buckets b JOIN bucket_groups g ON g.id = b.group_id "
        "WHERE b.id = ? AND g.user_id = ?"
    )
    if not include_deleted:
        sql += " AND b.is_deleted = 0"
    row = conn.execute(sql, (bucket_id, user_id)).fetchone()
    if row is None:
        raise NotFoundError("Bucket not found")
    return row


def get_owned_group(conn: sqlite3.Connection, user_id: str, group_id: int) -> sqlite3.Row:
    row = conn.execute(
        "SELECT * FROM bucket_groups WHERE id = ? AND user_id = ?", (group_id, user_id)
    ).fetchone()
    if row is None:
        raise NotFoundError("Group not found")
    return row


def owned_bucket_ids(conn: sqlite3.Connection, user_id: str, bucket_ids: Sequence[int]) -> set:
    """Return the subset of ``bucket_ids`` that are active and owned by the user."""
    if not bucket_ids:
        return set()
    rows = conn.execute(
        "SELECT b.id FROM buckets b JOIN bucket_groups g ON g.id = b.group_id "
        f"WHERE g.user_id = ? AND b.is_deleted = 0 AND b.id IN ({placeholders(bucket_ids)})",
        [user_id, *bucket_ids],
    ).fetchall()
    return {row['id'] for row in rows}


def list_accounts(conn: sqlite3.Connection, user_id: str) -> List[Account]:
    rows = conn.execute(
        "SELECT * FROM accounts WHERE user_id = ? ORDER BY id", (user_id,)
    ).fetchall()
    return [row_to_account(row) for row in rows]
