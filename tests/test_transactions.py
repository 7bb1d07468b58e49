from datetime import date

import pytest

from bucketbudget import accounts, ledger, sync, transactions
from bucketbudget.errors import NotFoundError, ValidationError
from bucketbudget.transactions import extract_merchant

from conftest import make_bucket, remote_account, remote_txn

USER = "user-1"


def test_extract_merchant_collapses_whitespace_and_truncates():
    assert extract_merchant("  COUNTDOWN    EASTGATE \t CHCH ") == "COUNTDOWN EASTGATE CHCH"
    assert len(extract_merchant("X" * 250)) == 100
    assert extract_merchant("") is None
    assert extract_merchant(None) is None


def test_create_manual_transaction_defaults():
    txn = transactions.create_manual_transaction(USER, "-12.50", "Coffee Club", description="flat white")

    assert txn.amount == -12.5
    assert txn.is_manual
    assert txn.status == 'confirmed'
    assert txn.account_id is None
    assert txn.date == date.today()
    assert txn.external_id is None


def test_create_manual_transaction_validation():
    with pytest.raises(ValidationError):
        transactions.create_manual_transaction(USER, "lots", "Coffee")
    with pytest.raises(ValidationError):
        transactions.create_manual_transaction(USER, -5, "  ")
    with pytest.raises(ValidationError):
        transactions.create_manual_transaction(USER, -5, "Coffee", date_value="not a date")


def test_create_manual_transaction_on_foreign_account_is_not_found(fake_client):
    [account] = accounts.import_accounts("user-2", fake_client)

    with pytest.raises(NotFoundError):
        transactions.create_manual_transaction(USER, -5, "Coffee", account_id=account.id)


def test_manual_transactions_are_private_to_their_owner():
    txn = transactions.create_manual_transaction(USER, -5, "Coffee")

    with pytest.raises(NotFoundError):
        transactions.get_transaction("user-2", txn.id)
    assert transactions.list_transactions("user-2").empty


def test_amount_change_scales_split_allocations():
    groceries = make_bucket(name="Groceries")
    household = make_bucket(name="Household", group_id=groceries['group_id'])
    txn = transactions.create_manual_transaction(USER, -100, "The Warehouse")
    ledger.allocate_transaction(USER, txn.id, [
        {'bucket_id': groceries['id'], 'amount': -60},
        {'bucket_id': household['id'], 'amount': -40},
    ])

    updated = transactions.update_transaction(USER, txn.id, amount=-50, merchant="Warehouse")

    assert updated.amount == -50.0
    assert updated.merchant == "Warehouse"
    amounts = {a.bucket_id: a.amount for a in updated.allocations}
    assert amounts == {groceries['id']: pytest.approx(-30.0), household['id']: pytest.approx(-20.0)}


def test_amount_sign_flip_keeps_allocations_summing_to_amount():
    bucket = make_bucket()
    txn = transactions.create_manual_transaction(USER, -100, "Refund")
    ledger.allocate_transaction(USER, txn.id, [{'bucket_id': bucket['id'], 'amount': -100}])

    updated = transactions.update_transaction(USER, txn.id, amount=100)

    assert updated.amount == 100.0
    assert sum(a.amount for a in updated.allocations) == pytest.approx(100.0)


def test_amount_change_on_manual_account_transaction_scales_allocations(fake_client):
    [account] = accounts.import_accounts(USER, fake_client)
    bucket = make_bucket()
    txn = transactions.create_manual_transaction(USER, -40, "Cash", account_id=account.id)
    ledger.allocate_transaction(USER, txn.id, [{'bucket_id': bucket['id'], 'amount': -40}])

    updated = transactions.update_transaction(USER, txn.id, amount=-90)

    assert [a.amount for a in updated.allocations] == [pytest.approx(-90.0)]


def test_synced_transaction_amount_cannot_be_edited(fake_client):
    fake_client.accounts = [remote_account()]
    fake_client.transactions = {"acc_1": [remote_txn("txn_1", -40.0, date.today())]}
    [account] = accounts.import_accounts(USER, fake_client)
    sync.sync_account_transactions(USER, account.id, fake_client)
    txn_id = int(transactions.list_transactions(USER)['id'].iloc[0])
    bucket = make_bucket()
    ledger.allocate_transaction(USER, txn_id, [{'bucket_id': bucket['id'], 'amount': -40}])

    with pytest.raises(ValidationError):
        transactions.update_transaction(USER, txn_id, amount=-90)

    stored = transactions.get_transaction(USER, txn_id)
    assert stored.amount == -40.0
    assert [a.amount for a in stored.allocations] == [pytest.approx(-40.0)]


def test_update_keeps_fields_that_are_not_given():
    txn = transactions.create_manual_transaction(USER, -5, "Coffee", date_value="2025-01-02",
                                                 description="morning")

    updated = transactions.update_transaction(USER, txn.id, date_value="2025-01-03")

    assert updated.date == date(2025, 1, 3)
    assert updated.merchant == "Coffee"
    assert updated.description == "morning"


def test_delete_manual_transaction_removes_allocations():
    bucket = make_bucket()
    txn = transactions.create_manual_transaction(USER, -5, "Coffee")
    ledger.allocate_transaction(USER, txn.id, [{'bucket_id': bucket['id'], 'amount': -5}])

    transactions.delete_transaction(USER, txn.id)

    with pytest.raises(NotFoundError):
        transactions.get_transaction(USER, txn.id)
    assert ledger.bucket_balances(USER) == {}


def test_list_transactions_and_unallocated_count():
    bucket = make_bucket()
    first = transactions.create_manual_transaction(USER, -5, "Coffee", date_value="2025-01-02")
    transactions.create_manual_transaction(USER, 900, "Payroll", date_value="2025-01-03")
    ledger.allocate_transaction(USER, first.id, [{'bucket_id': bucket['id'], 'amount': -5}])

    frame = transactions.list_transactions(USER)
    assert list(frame['merchant']) == ["Payroll", "Coffee"]
    assert list(frame['allocation_count']) == [0, 1]

    unallocated = transactions.list_transactions(USER, unallocated_only=True)
    assert list(unallocated['merchant']) == ["Payroll"]
    assert transactions.unallocated_count(USER) == 1

    page = transactions.list_transactions(USER, limit=1, offset=1)
    assert list(page['merchant']) == ["Coffee"]
