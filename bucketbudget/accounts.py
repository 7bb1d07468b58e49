"""Connected bank accounts."""

from __future__ import annotations

import logging
from typing import List

from . import db
from .models import Account

logger = logging.getLogger(__name__)


def import_accounts(user_id: str, client) -> List[Account]:
    """Upsert every aggregator account for the user, keyed by external id.

    Returns the user's stored accounts afterwards.
    """
    remote_accounts = client.list_accounts()
    created_at = db.to_iso_timestamp(db.utcnow())

    with db.transaction() as conn:
        for remote in remote_accounts:
            conn.execute(
                "INSERT INTO accounts (user_id, external_id, name, institution, account_type, "
                "balance_current, balance_available, currency, status, connection_logo, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(user_id, external_id) DO UPDATE SET "
                "name = excluded.name, institution = excluded.institution, "
                "account_type = excluded.account_type, balance_current = excluded.balance_current, "
                "balance_available = excluded.balance_available, currency = excluded.currency, "
                "status = excluded.status, connection_logo = excluded.connection_logo",
                (
                    user_id,
                    remote.external_id,
                    remote.name,
                    remote.institution,
                    remote.account_type.lower() if remote.account_type else None,
                    remote.balance_current,
                    remote.balance_available,
                    remote.currency or 'NZD',
                    remote.status,
                    remote.logo,
                    created_at,
                ),
            )
        accounts = db.list_accounts(conn, user_id)

    logger.info("Imported %d aggregator accounts for user %s", len(remote_accounts), user_id)
    return accounts


def list_accounts(user_id: str) -> List[Account]:
    with db.connect() as conn:
        return db.list_accounts(conn, user_id)


def get_account(user_id: str, account_id: int) -> Account:
    with db.connect() as conn:
        return db.get_owned_account(conn, user_id, account_id)


def delete_account(user_id: str, account_id: int) -> None:
    """Remove an account together with its transactions and their allocations."""
    with db.transaction() as conn:
        db.get_owned_account(conn, user_id, account_id)
        conn.execute("DELETE FROM accounts WHERE id = ?", (account_id,))
    logger.info("Deleted account %s for user %s", account_id, user_id)


def record_connection_error(account_id: int, message: str) -> None:
    with db.transaction() as conn:
        conn.execute("UPDATE accounts SET connection_error = ? WHERE id = ?", (message, account_id))
