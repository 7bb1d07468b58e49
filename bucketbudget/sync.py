"""Reconciliation of aggregator data against stored transactions.

A sync pulls a window of transactions for an account and classifies each
incoming record against the stored snapshot:

* unseen and close to a stored pending record: the pending row is promoted
* unseen otherwise: inserted as a new confirmed transaction
* already stored: checked for amendment (amount or merchant changed)

Only after the whole batch is classified are the new transactions run
through scheduled matching and then categorization rules.  Pending
transactions are refreshed separately as a multiset keyed by
account, date, description and amount.
"""

from __future__ import annotations

import logging
import math
import re
import sqlite3
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from . import accounts, config, db, rules, scheduled
from .errors import RateLimitedError, UpstreamError
from .models import (
    Account,
    AggregatorTransaction,
    PendingSyncResult,
    STATUS_CONFIRMED,
    STATUS_PENDING,
    SyncResult,
)
from .transactions import extract_merchant

logger = logging.getLogger(__name__)

AMENDMENT_TOLERANCE = 0.01
PENDING_AMOUNT_TOLERANCE = 0.3  # ±30% of the pending amount
PENDING_DATE_TOLERANCE_DAYS = 5
MIN_TOKEN_LENGTH = 3

_TOKEN_SPLIT = re.compile(r"\W+")


# -- pure matching helpers --------------------------------------------------

def _tokens(text: Optional[str]) -> set:
    return {t for t in _TOKEN_SPLIT.split((text or '').lower()) if len(t) >= MIN_TOKEN_LENGTH}


def descriptions_match(a: Optional[str], b: Optional[str]) -> bool:
    """Share a word of 3+ characters, or one contains the other (case-insensitive)."""
    left, right = (a or '').lower().strip(), (b or '').lower().strip()
    if not left or not right:
        return False
    if left in right or right in left:
        return True
    return bool(_tokens(left) & _tokens(right))


def matches_pending(incoming: Any, pending: Any) -> bool:
    """Whether a settled record is the confirmed form of a stored pending one.

    Both arguments need ``amount``, ``date`` and ``description``; the
    caller is responsible for comparing only records of the same account.
    """
    if abs((incoming.date - pending.date).days) > PENDING_DATE_TOLERANCE_DAYS:
        return False
    if abs(incoming.amount - pending.amount) > abs(pending.amount) * PENDING_AMOUNT_TOLERANCE:
        return False
    return descriptions_match(incoming.description, pending.description)


def detect_amendment(existing: Any, incoming: AggregatorTransaction) -> bool:
    """Amount moved by more than a cent, or the merchant name changed."""
    if abs(existing.amount - incoming.amount) > AMENDMENT_TOLERANCE:
        return True
    if incoming.merchant and existing.merchant:
        return incoming.merchant.lower() != existing.merchant.lower()
    return False


def pending_key(account_id: int, txn_date: Any, description: Optional[str], amount: float) -> str:
    return f"{account_id}:{db.to_iso_date(txn_date)}:{description or ''}:{amount:.2f}"


def sync_window_days(account: Account, initial_days: int = config.MAX_INITIAL_SYNC_DAYS) -> int:
    """History depth for the next sync of ``account``."""
    if account.first_sync_completed_at is None:
        return min(max(1, int(initial_days)), config.MAX_INITIAL_SYNC_DAYS)
    return config.STEADY_STATE_SYNC_DAYS


def cooldown_remaining(last: Optional[datetime], now: Optional[datetime] = None) -> float:
    """Seconds left before ``last`` is outside the refresh cooldown; 0 when clear."""
    if last is None:
        return 0.0
    elapsed = ((now or db.utcnow()) - last).total_seconds()
    return max(0.0, config.REFRESH_COOLDOWN_SECONDS - elapsed)


# -- classification ---------------------------------------------------------

def _merchant_for(incoming: AggregatorTransaction) -> Optional[str]:
    return incoming.merchant or extract_merchant(incoming.description)


def _transaction_type(value: Optional[str]) -> Optional[str]:
    return value.lower() if value else None


def _insert_confirmed(conn: sqlite3.Connection, account: Account, incoming: AggregatorTransaction) -> int:
    cursor = conn.execute(
        "INSERT INTO transactions (account_id, user_id, external_id, amount, date, merchant, description, "
        "category, balance, transaction_type, status, is_manual, created_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)",
        (account.id, account.user_id, incoming.external_id, incoming.amount, incoming.date.isoformat(),
         _merchant_for(incoming), incoming.description, incoming.category, incoming.balance,
         _transaction_type(incoming.transaction_type), STATUS_CONFIRMED, db.to_iso_timestamp(db.utcnow())),
    )
    return cursor.lastrowid


def _promote_pending(conn: sqlite3.Connection, pending, incoming: AggregatorTransaction) -> None:
    """Turn a pending row into the confirmed transaction, fixing its allocations."""
    amended = False
    if len(pending.allocations) == 1:
        allocation = pending.allocations[0]
        if abs(allocation.amount - incoming.amount) > AMENDMENT_TOLERANCE:
            amended = True
        conn.execute("UPDATE allocations SET amount = ? WHERE id = ?", (incoming.amount, allocation.id))
    elif len(pending.allocations) > 1:
        # A split made against the provisional amount cannot be trusted.
        conn.execute("DELETE FROM allocations WHERE transaction_id = ?", (pending.id,))
        amended = abs(pending.amount - incoming.amount) > AMENDMENT_TOLERANCE

    conn.execute(
        "UPDATE transactions SET external_id = ?, amount = ?, date = ?, merchant = ?, description = ?, "
        "category = ?, balance = ?, transaction_type = ?, status = ?, is_amended = ? WHERE id = ?",
        (incoming.external_id, incoming.amount, incoming.date.isoformat(), _merchant_for(incoming),
         incoming.description, incoming.category, incoming.balance,
         _transaction_type(incoming.transaction_type), STATUS_CONFIRMED,
         1 if (amended or pending.is_amended) else 0, pending.id),
    )


def _apply_amendment(conn: sqlite3.Connection, existing, incoming: AggregatorTransaction) -> None:
    if len(existing.allocations) > 1:
        conn.execute("DELETE FROM allocations WHERE transaction_id = ?", (existing.id,))
    conn.execute(
        "UPDATE transactions SET amount = ?, merchant = ?, description = ?, balance = ?, is_amended = 1 "
        "WHERE id = ?",
        (incoming.amount, _merchant_for(incoming), incoming.description, incoming.balance, existing.id),
    )


def _load_existing(conn: sqlite3.Connection, account_id: int, external_ids: Sequence[str]) -> Dict[str, Any]:
    if not external_ids:
        return {}
    rows = conn.execute(
        f"SELECT * FROM transactions WHERE account_id = ? AND external_id IN ({db.placeholders(external_ids)})",
        [account_id, *external_ids],
    ).fetchall()
    allocations = db.fetch_allocations(conn, [row['id'] for row in rows])
    return {row['external_id']: db.row_to_transaction(row, allocations[row['id']]) for row in rows}


def _load_pending(conn: sqlite3.Connection, account_id: int) -> List[Any]:
    rows = conn.execute(
        "SELECT * FROM transactions WHERE account_id = ? AND status = ? ORDER BY date, id",
        (account_id, STATUS_PENDING),
    ).fetchall()
    allocations = db.fetch_allocations(conn, [row['id'] for row in rows])
    return [db.row_to_transaction(row, allocations[row['id']]) for row in rows]


def reconcile_in(conn: sqlite3.Connection, account: Account,
                 incoming: Sequence[AggregatorTransaction]) -> tuple:
    """Classify a fetched batch against the stored snapshot.

    Returns ``(result, new_ids)``; ``new_ids`` are the freshly inserted
    transactions that still need matching and categorization.
    """
    result = SyncResult()
    new_ids: List[int] = []
    existing = _load_existing(conn, account.id, list({t.external_id for t in incoming}))
    unconsumed = _load_pending(conn, account.id)

    for record in incoming:
        stored = existing.get(record.external_id)
        if stored is not None:
            if detect_amendment(stored, record):
                _apply_amendment(conn, stored, record)
                stored.amount, stored.merchant = record.amount, _merchant_for(record)
                result.amended_count += 1
            elif record.balance is not None and record.balance != stored.balance:
                conn.execute("UPDATE transactions SET balance = ? WHERE id = ?", (record.balance, stored.id))
            continue

        pending = next((p for p in unconsumed if matches_pending(record, p)), None)
        if pending is not None:
            _promote_pending(conn, pending, record)
            unconsumed.remove(pending)
            existing[record.external_id] = pending
            pending.amount, pending.merchant = record.amount, _merchant_for(record)
            result.promoted_count += 1
            continue

        transaction_id = _insert_confirmed(conn, account, record)
        existing[record.external_id] = db.get_owned_transaction(conn, account.user_id, transaction_id)
        new_ids.append(transaction_id)
        result.new_count += 1

    return result, new_ids


def _match_or_categorize(user_id: str, transaction_id: int, result: SyncResult) -> None:
    with db.transaction() as conn:
        transaction = db.get_owned_transaction(conn, user_id, transaction_id)
        if transaction.allocations:
            return
        if scheduled.auto_match_in(conn, transaction, user_id) is not None:
            result.matched_count += 1
        elif rules.apply_rules_in(conn, transaction_id, user_id):
            result.categorized_count += 1


def sync_account_transactions(user_id: str, account_id: int, client,
                              initial_days: int = config.MAX_INITIAL_SYNC_DAYS,
                              today: Optional[date] = None) -> SyncResult:
    """Fetch and reconcile one account's transactions, without a cooldown check."""
    with db.connect() as conn:
        account = db.get_owned_account(conn, user_id, account_id)

    today = today or date.today()
    start = today - timedelta(days=sync_window_days(account, initial_days))
    incoming = client.list_transactions(account.external_id, start=start)

    with db.transaction() as conn:
        result, new_ids = reconcile_in(conn, account, incoming)

    for transaction_id in new_ids:
        _match_or_categorize(user_id, transaction_id, result)

    stamp = db.to_iso_timestamp(db.utcnow())
    with db.transaction() as conn:
        conn.execute(
            "UPDATE accounts SET last_synced_at = ?, connection_error = NULL, "
            "first_sync_completed_at = COALESCE(first_sync_completed_at, ?) WHERE id = ?",
            (stamp, stamp, account_id),
        )

    logger.info(
        "Synced account %s: %d new, %d promoted, %d amended, %d matched, %d categorized",
        account_id, result.new_count, result.promoted_count, result.amended_count,
        result.matched_count, result.categorized_count,
    )
    return result


def sync_account(user_id: str, account_id: int, client,
                 initial_days: int = config.MAX_INITIAL_SYNC_DAYS,
                 now: Optional[datetime] = None) -> SyncResult:
    """Sync one account, refusing inside the cooldown window.

    Raises:
        RateLimitedError: the account was synced less than the cooldown ago.
        UpstreamError: the aggregator failed; the message is stored on the account.
    """
    account = accounts.get_account(user_id, account_id)
    remaining = cooldown_remaining(account.last_synced_at, now)
    if remaining > 0:
        raise RateLimitedError(remaining)

    try:
        return sync_account_transactions(user_id, account_id, client, initial_days)
    except UpstreamError as e:
        accounts.record_connection_error(account_id, str(e))
        raise


def refresh_account(user_id: str, account_id: int, client, now: Optional[datetime] = None) -> None:
    """Ask the aggregator to pull fresh bank data for one account."""
    account = accounts.get_account(user_id, account_id)
    remaining = cooldown_remaining(account.last_refreshed_at, now)
    if remaining > 0:
        raise RateLimitedError(remaining)

    try:
        client.trigger_refresh(account.external_id)
    except UpstreamError as e:
        accounts.record_connection_error(account_id, str(e))
        raise

    with db.transaction() as conn:
        conn.execute(
            "UPDATE accounts SET last_refreshed_at = ?, connection_error = NULL WHERE id = ?",
            (db.to_iso_timestamp(now or db.utcnow()), account_id),
        )


# -- pending ----------------------------------------------------------------

def sync_pending_transactions(user_id: str, client) -> PendingSyncResult:
    """Replace stored pending rows with the aggregator's current pending set.

    Stored rows beyond what the aggregator still reports for a key are
    deleted; reported rows beyond what is stored are inserted.
    """
    with db.connect() as conn:
        by_external_id = {a.external_id: a for a in db.list_accounts(conn, user_id)}
    if not by_external_id:
        return PendingSyncResult()

    reported: Dict[str, list] = defaultdict(list)
    for item in client.list_pending_transactions():
        account = by_external_id.get(item.external_account_id)
        if account is None:
            continue
        reported[pending_key(account.id, item.date, item.description, item.amount)].append((account, item))

    result = PendingSyncResult()
    account_ids = [a.id for a in by_external_id.values()]
    with db.transaction() as conn:
        rows = conn.execute(
            f"SELECT id, account_id, date, description, amount FROM transactions "
            f"WHERE status = ? AND account_id IN ({db.placeholders(account_ids)}) ORDER BY id",
            [STATUS_PENDING, *account_ids],
        ).fetchall()
        stored: Dict[str, list] = defaultdict(list)
        for row in rows:
            stored[pending_key(row['account_id'], row['date'], row['description'], row['amount'])].append(row['id'])

        stale = []
        for key, ids in stored.items():
            stale.extend(ids[len(reported.get(key, [])):])
        if stale:
            conn.execute(f"DELETE FROM transactions WHERE id IN ({db.placeholders(stale)})", stale)
        result.deleted_count = len(stale)

        created_at = db.to_iso_timestamp(db.utcnow())
        for key, items in reported.items():
            for account, item in items[len(stored.get(key, [])):]:
                conn.execute(
                    "INSERT INTO transactions (account_id, user_id, external_id, amount, date, merchant, "
                    "description, transaction_type, status, is_manual, created_at) "
                    "VALUES (?, ?, NULL, ?, ?, ?, ?, ?, ?, 0, ?)",
                    (account.id, user_id, item.amount, item.date.isoformat(),
                     extract_merchant(item.description), item.description,
                     _transaction_type(item.transaction_type), STATUS_PENDING, created_at),
                )
                result.new_count += 1

    logger.info("Pending sync for user %s: %d new, %d stale removed",
                user_id, result.new_count, result.deleted_count)
    return result


# -- sync all ---------------------------------------------------------------

@dataclass
class SyncAllResult:
    success: bool = True
    needs_connection: bool = False
    on_cooldown: bool = False
    remaining_seconds: float = 0.0
    refreshed_accounts: int = 0
    pending: PendingSyncResult = field(default_factory=PendingSyncResult)
    totals: SyncResult = field(default_factory=SyncResult)
    account_errors: Dict[int, str] = field(default_factory=dict)
    pending_error: Optional[str] = None

    @property
    def remaining_minutes(self) -> int:
        return math.ceil(self.remaining_seconds / 60)

    @property
    def message(self) -> str:
        if self.needs_connection:
            return "No bank accounts connected"
        if self.on_cooldown:
            plural = "" if self.remaining_minutes == 1 else "s"
            return f"No new transactions available. Try again in {self.remaining_minutes} minute{plural}."
        return f"Synced {self.totals.new_count} new and {self.totals.updated_count} updated transactions"


def _add_counts(totals: SyncResult, result: SyncResult) -> None:
    totals.new_count += result.new_count
    totals.promoted_count += result.promoted_count
    totals.amended_count += result.amended_count
    totals.matched_count += result.matched_count
    totals.categorized_count += result.categorized_count


def sync_all(user_id: str, client, initial_days: int = config.MAX_INITIAL_SYNC_DAYS,
             now: Optional[datetime] = None, settle_seconds: Optional[float] = None) -> SyncAllResult:
    """Refresh and sync every account of the user.

    Accounts are imported on first use.  Each account not on refresh
    cooldown gets a refresh trigger; if every account is on cooldown the
    result says so instead of syncing.  Otherwise each account is
    reconciled, then pending transactions are refreshed.  A failing account
    has its error recorded and does not stop the others.
    """
    now = now or db.utcnow()
    result = SyncAllResult()

    user_accounts = accounts.list_accounts(user_id)
    if not user_accounts:
        user_accounts = accounts.import_accounts(user_id, client)
        if not user_accounts:
            result.success = False
            result.needs_connection = True
            return result

    cooldowns = []
    for account in user_accounts:
        remaining = cooldown_remaining(account.last_refreshed_at, now)
        if remaining > 0:
            cooldowns.append(remaining)
            continue
        try:
            refresh_account(user_id, account.id, client, now=now)
            result.refreshed_accounts += 1
        except UpstreamError as e:
            logger.warning("Refresh failed for account %s: %s", account.id, e)
            result.account_errors[account.id] = str(e)

    if len(cooldowns) == len(user_accounts):
        result.success = False
        result.on_cooldown = True
        result.remaining_seconds = min(cooldowns)
        return result

    settle = config.REFRESH_SETTLE_SECONDS if settle_seconds is None else settle_seconds
    if settle > 0:
        time.sleep(settle)

    for account in user_accounts:
        try:
            account_result = sync_account_transactions(user_id, account.id, client, initial_days,
                                                       today=now.date())
        except Exception as e:  # recorded on the account below
            logger.exception("Sync failed for account %s", account.id)
            accounts.record_connection_error(account.id, str(e) or type(e).__name__)
            result.account_errors[account.id] = str(e) or type(e).__name__
            continue
        _add_counts(result.totals, account_result)

    # Stale pending rows go only after settled records have promoted theirs.
    try:
        result.pending = sync_pending_transactions(user_id, client)
    except UpstreamError as e:
        logger.warning("Pending sync failed for user %s: %s", user_id, e)
        result.pending_error = str(e)

    return result
