import pytest

from bucketbudget import buckets, ledger, rules, scheduled, transactions
from bucketbudget.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError

USER = "user-1"


def test_groups_and_buckets_get_increasing_sort_order():
    first = buckets.create_group(USER, "Bills")
    second = buckets.create_group(USER, "Fun")
    rent = buckets.create_bucket(USER, first['id'], "Rent")
    power = buckets.create_bucket(USER, first['id'], "Power", color="#ff0000")

    assert (first['sort_order'], second['sort_order']) == (0, 1)
    assert (rent['sort_order'], power['sort_order']) == (0, 1)
    assert rent['type'] == 'spending'
    assert rent['rollover'] == 1
    assert power['color'] == "#ff0000"


def test_reorder_and_list_groups():
    bills = buckets.create_group(USER, "Bills")
    fun = buckets.create_group(USER, "Fun")
    rent = buckets.create_bucket(USER, bills['id'], "Rent")
    power = buckets.create_bucket(USER, bills['id'], "Power")

    buckets.reorder_groups(USER, [fun['id'], bills['id']])
    buckets.reorder_buckets(USER, bills['id'], [power['id'], rent['id']])

    listed = buckets.list_groups(USER)
    assert [g['name'] for g in listed] == ["Fun", "Bills"]
    assert [b['name'] for b in listed[1]['buckets']] == ["Power", "Rent"]


def test_bucket_validation():
    group = buckets.create_group(USER, "Bills")

    with pytest.raises(ValidationError):
        buckets.create_bucket(USER, group['id'], "Rent", bucket_type='investment')
    with pytest.raises(ValidationError):
        buckets.create_bucket(USER, group['id'], "  ")
    with pytest.raises(ValidationError):
        buckets.create_group(USER, "")
    with pytest.raises(NotFoundError):
        buckets.create_bucket("user-2", group['id'], "Rent")


def test_update_bucket_fields():
    group = buckets.create_group(USER, "Bills")
    rent = buckets.create_bucket(USER, group['id'], "Rent")
    savings = buckets.create_bucket(USER, group['id'], "Rainy day", bucket_type='savings')

    updated = buckets.update_bucket(
        USER, rent['id'], name="Mortgage", auto_allocation_amount="450", rollover=False,
        rollover_target_id=savings['id'],
    )

    assert updated['name'] == "Mortgage"
    assert updated['auto_allocation_amount'] == 450.0
    assert updated['rollover'] == 0
    assert updated['rollover_target_id'] == savings['id']
    with pytest.raises(ValidationError):
        buckets.update_bucket(USER, rent['id'], rollover_target_id=rent['id'])
    with pytest.raises(ValidationError):
        buckets.update_bucket(USER, rent['id'], balance=10)


def test_moving_bucket_requires_owned_target_group():
    mine = buckets.create_group(USER, "Bills")
    other_mine = buckets.create_group(USER, "Fixed")
    theirs = buckets.create_group("user-2", "Theirs")
    rent = buckets.create_bucket(USER, mine['id'], "Rent")

    with pytest.raises(ForbiddenError):
        buckets.update_bucket(USER, rent['id'], group_id=theirs['id'])

    moved = buckets.update_bucket(USER, rent['id'], group_id=other_mine['id'])
    assert moved['group_id'] == other_mine['id']


def test_unused_bucket_is_hard_deleted():
    group = buckets.create_group(USER, "Bills")
    rent = buckets.create_bucket(USER, group['id'], "Rent")

    assert buckets.delete_bucket(USER, rent['id']) == 'hard'
    assert buckets.list_buckets(USER, include_deleted=True).empty


def test_bucket_with_history_is_soft_deleted():
    group = buckets.create_group(USER, "Food")
    groceries = buckets.create_bucket(USER, group['id'], "Groceries")
    transactions.create_manual_transaction(USER, 200, "Payroll")
    ledger.create_budget_allocation(USER, groceries['id'], 80)
    rules.upsert_rule(USER, "countdown", groceries['id'])
    scheduled.create_scheduled(USER, groceries['id'], "Weekly shop", -80, 'weekly', "2025-01-01")

    assert buckets.delete_bucket(USER, groceries['id']) == 'soft'

    assert buckets.list_buckets(USER).empty
    hidden = buckets.list_buckets(USER, include_deleted=True)
    assert hidden.loc[0, 'name'] == "DELETED: Groceries"
    assert rules.list_rules(USER).empty
    assert scheduled.list_scheduled(USER).empty
    assert ledger.bucket_balance(USER, groceries['id']) == pytest.approx(80.0)
    with pytest.raises(NotFoundError):
        buckets.get_bucket(USER, groceries['id'])


def test_group_with_active_buckets_cannot_be_deleted():
    group = buckets.create_group(USER, "Bills")
    rent = buckets.create_bucket(USER, group['id'], "Rent")

    with pytest.raises(ConflictError):
        buckets.delete_group(USER, group['id'])

    buckets.delete_bucket(USER, rent['id'])
    buckets.delete_group(USER, group['id'])
    assert buckets.list_groups(USER) == []


def test_group_operations_respect_ownership():
    group = buckets.create_group(USER, "Bills")

    with pytest.raises(NotFoundError):
        buckets.rename_group("user-2", group['id'], "Mine now")
    with pytest.raises(NotFoundError):
        buckets.delete_group("user-2", group['id'])
    assert buckets.rename_group(USER, group['id'], "Fixed costs")['name'] == "Fixed costs"
