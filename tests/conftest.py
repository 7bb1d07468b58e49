from datetime import date

import pytest

from bucketbudget import db
from bucketbudget.models import (
    AggregatorAccount,
    AggregatorPendingTransaction,
    AggregatorTransaction,
)
from bucketbudget.errors import UpstreamError


@pytest.fixture(autouse=True)
def temp_db(tmp_path, monkeypatch: pytest.MonkeyPatch):
    db_path = tmp_path / "bucketbudget.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))
    db.init_db()
    return db_path


class FakeAggregator:
    """In-memory stand-in for the aggregator client."""

    def __init__(self, accounts=None, transactions=None, pending=None):
        self.accounts = list(accounts or [])
        self.transactions = dict(transactions or {})
        self.pending = list(pending or [])
        self.failing_accounts = set()
        self.refresh_calls = []
        self.transaction_calls = []

    def list_accounts(self):
        return list(self.accounts)

    def list_transactions(self, external_account_id, start=None, end=None):
        self.transaction_calls.append((external_account_id, start))
        if external_account_id in self.failing_accounts:
            raise UpstreamError("Aggregator API error (500): boom", status_code=500)
        return list(self.transactions.get(external_account_id, []))

    def list_pending_transactions(self):
        return list(self.pending)

    def trigger_refresh(self, external_account_id):
        if external_account_id in self.failing_accounts:
            raise UpstreamError("Aggregator API error (503): unavailable", status_code=503)
        self.refresh_calls.append(external_account_id)


def remote_account(external_id="acc_1", name="Everyday"):
    return AggregatorAccount(
        external_id=external_id,
        name=name,
        institution="Kiwibank",
        account_type="CHECKING",
        balance_current=1000.0,
        balance_available=950.0,
        status="ACTIVE",
    )


def remote_txn(external_id, amount, when, description="COUNTDOWN EASTGATE", merchant=None,
               account="acc_1", txn_type="EFTPOS"):
    return AggregatorTransaction(
        external_id=external_id,
        external_account_id=account,
        date=when if isinstance(when, date) else date.fromisoformat(when),
        description=description,
        amount=amount,
        merchant=merchant,
        transaction_type=txn_type,
    )


def remote_pending(amount, when, description="COUNTDOWN EASTGATE", account="acc_1"):
    return AggregatorPendingTransaction(
        external_account_id=account,
        date=when if isinstance(when, date) else date.fromisoformat(when),
        description=description,
        amount=amount,
        transaction_type="EFTPOS",
    )


def make_bucket(user_id="user-1", name="Groceries", group_id=None, **kwargs):
    from bucketbudget import buckets

    if group_id is None:
        group_id = buckets.create_group(user_id, "Everyday")['id']
    return buckets.create_bucket(user_id, group_id, name, **kwargs)


@pytest.fixture
def fake_client():
    return FakeAggregator(accounts=[remote_account()])
