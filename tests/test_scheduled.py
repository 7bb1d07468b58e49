from datetime import date
from types import SimpleNamespace

import pytest

from bucketbudget import db, scheduled, transactions
from bucketbudget.errors import NotFoundError, ValidationError
from bucketbudget.scheduled import (
    advance_to_next_due,
    calculate_next_due,
    matches_scheduled,
)

from conftest import make_bucket

TODAY = date(2025, 1, 10)


def test_future_start_date_is_next_due():
    start = date(2025, 2, 1)

    assert calculate_next_due(start, 'monthly', today=TODAY) == start
    assert calculate_next_due(start, 'weekly', 3, today=TODAY) == start


def test_next_due_is_strictly_after_today():
    assert calculate_next_due(date(2025, 1, 1), 'weekly', today=TODAY) == date(2025, 1, 15)
    assert calculate_next_due(TODAY, 'weekly', today=TODAY) == date(2025, 1, 17)
    assert calculate_next_due(date(2025, 1, 1), 'fortnightly', 2, today=TODAY) == date(2025, 1, 29)


def test_custom_frequency_counts_days():
    assert calculate_next_due(date(2025, 1, 1), 'custom', 10, today=date(2025, 1, 25)) == date(2025, 1, 31)


def test_monthly_steps_clamp_without_drift():
    assert calculate_next_due(date(2025, 1, 31), 'monthly', today=date(2025, 2, 15)) == date(2025, 2, 28)
    assert calculate_next_due(date(2025, 1, 31), 'monthly', today=date(2025, 3, 1)) == date(2025, 3, 31)


def test_yearly_with_long_history():
    assert calculate_next_due(date(2000, 6, 1), 'yearly', today=TODAY) == date(2025, 6, 1)
    assert calculate_next_due(date(1900, 1, 15), 'monthly', 6, today=TODAY) == date(2025, 1, 15)


def test_invalid_recurrence_is_rejected():
    with pytest.raises(ValidationError):
        calculate_next_due(TODAY, 'daily', today=TODAY)
    with pytest.raises(ValidationError):
        calculate_next_due(TODAY, 'weekly', 0, today=TODAY)


def test_advance_to_next_due():
    assert advance_to_next_due(date(2025, 1, 31), 'monthly') == date(2025, 2, 28)
    assert advance_to_next_due(date(2024, 2, 29), 'yearly') == date(2025, 2, 28)
    assert advance_to_next_due(date(2025, 1, 10), 'custom', 3) == date(2025, 1, 13)


def test_matches_scheduled_thresholds():
    schedule = SimpleNamespace(amount=-100.0, next_due=date(2025, 1, 10))

    close = matches_scheduled(SimpleNamespace(amount=-95.0, date=date(2025, 1, 13)), schedule)
    assert close.matches
    assert close.amount_diff == pytest.approx(5.0)
    assert close.days_diff == 3

    too_big = matches_scheduled(SimpleNamespace(amount=-130.0, date=date(2025, 1, 10)), schedule)
    assert not too_big.matches
    assert too_big.amount_diff == pytest.approx(30.0)

    too_late = matches_scheduled(SimpleNamespace(amount=-100.0, date=date(2025, 1, 16)), schedule)
    assert not too_late.matches
    assert too_late.days_diff == 6


def test_matched_transaction_does_not_match_again_after_advance():
    txn = SimpleNamespace(amount=-20.0, date=date(2025, 1, 10))
    schedule = SimpleNamespace(amount=-20.0, next_due=date(2025, 1, 10))
    assert matches_scheduled(txn, schedule).matches

    schedule.next_due = advance_to_next_due(schedule.next_due, 'weekly')
    assert not matches_scheduled(txn, schedule).matches


def test_create_scheduled_seeds_next_due():
    bucket = make_bucket()
    created = scheduled.create_scheduled(
        "user-1", bucket['id'], "Rent", -450, 'weekly', date(2025, 1, 1), today=TODAY
    )

    assert created.next_due == date(2025, 1, 15)
    assert created.enabled


def test_create_scheduled_requires_owned_bucket():
    bucket = make_bucket("user-2")

    with pytest.raises(NotFoundError):
        scheduled.create_scheduled("user-1", bucket['id'], "Rent", -450, 'weekly', TODAY, today=TODAY)


def test_update_recomputes_next_due_when_recurrence_changes():
    bucket = make_bucket()
    created = scheduled.create_scheduled(
        "user-1", bucket['id'], "Power", -120, 'monthly', date(2024, 12, 20), today=TODAY
    )
    assert created.next_due == date(2025, 1, 20)

    renamed = scheduled.update_scheduled("user-1", created.id, today=TODAY, name="Electricity")
    assert renamed.next_due == date(2025, 1, 20)

    weekly = scheduled.update_scheduled("user-1", created.id, today=TODAY, frequency='weekly')
    assert weekly.next_due == date(2025, 1, 17)
    assert weekly.name == "Electricity"


def test_toggle_and_delete():
    bucket = make_bucket()
    created = scheduled.create_scheduled(
        "user-1", bucket['id'], "Gym", -25, 'fortnightly', date(2025, 2, 1), today=TODAY
    )

    assert not scheduled.set_enabled("user-1", created.id, False).enabled
    scheduled.delete_scheduled("user-1", created.id)
    assert scheduled.list_scheduled("user-1").empty
    with pytest.raises(NotFoundError):
        scheduled.delete_scheduled("user-1", created.id)


def test_auto_match_allocates_and_advances():
    bucket = make_bucket(name="Bills")
    schedule = scheduled.create_scheduled(
        "user-1", bucket['id'], "Internet", -80, 'monthly', date(2025, 1, 12), today=TODAY
    )
    txn = transactions.create_manual_transaction("user-1", -82.5, "Internet Co", date_value="2025-01-10")

    matched_id = scheduled.auto_match_to_scheduled(txn.id, "user-1")

    assert matched_id == schedule.id
    stored = transactions.get_transaction("user-1", txn.id)
    assert stored.matched_schedule_id == schedule.id
    assert [(a.bucket_id, a.amount) for a in stored.allocations] == [(bucket['id'], -82.5)]
    frame = scheduled.list_scheduled("user-1")
    assert frame.loc[0, 'next_due'] == '2025-02-12'


def test_auto_match_prefers_closest_date_then_earliest_due():
    bucket = make_bucket(name="Bills")
    scheduled.create_scheduled("user-1", bucket['id'], "A", -50, 'monthly', date(2025, 1, 14), today=TODAY)
    near = scheduled.create_scheduled("user-1", bucket['id'], "B", -50, 'monthly', date(2025, 1, 11), today=TODAY)
    txn = transactions.create_manual_transaction("user-1", -50, "Direct debit", date_value="2025-01-12")

    assert scheduled.auto_match_to_scheduled(txn.id, "user-1") == near.id

    first = scheduled.create_scheduled("user-1", bucket['id'], "C", -30, 'monthly', date(2025, 1, 18), today=TODAY)
    scheduled.create_scheduled("user-1", bucket['id'], "D", -30, 'monthly', date(2025, 1, 22), today=TODAY)
    tie = transactions.create_manual_transaction("user-1", -30, "Direct debit", date_value="2025-01-20")

    assert scheduled.auto_match_to_scheduled(tie.id, "user-1") == first.id


def test_auto_match_without_candidate_has_no_side_effects():
    bucket = make_bucket(name="Bills")
    scheduled.create_scheduled("user-1", bucket['id'], "Rent", -450, 'weekly', date(2025, 1, 12), today=TODAY)
    off = scheduled.create_scheduled("user-1", bucket['id'], "Off", -20, 'weekly', date(2025, 1, 11), today=TODAY)
    scheduled.update_scheduled("user-1", off.id, enabled=False)
    txn = transactions.create_manual_transaction("user-1", -20, "Coffee", date_value="2025-01-11")

    assert scheduled.auto_match_to_scheduled(txn.id, "user-1") is None
    assert transactions.get_transaction("user-1", txn.id).allocations == []
    with db.connect() as conn:
        dues = [row['next_due'] for row in conn.execute(
            "SELECT next_due FROM scheduled_transactions ORDER BY id"
        )]
    assert dues == ['2025-01-12', '2025-01-11']
