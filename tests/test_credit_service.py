"""Tests for the credit ledger, aggregate, sweeper and allocator."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from creditflow.auth.models import UserAccount
from creditflow.credits.app_settings import CreditSettings
from creditflow.credits.models import CreditTransactionType
from creditflow.credits.service import is_refresh_due
from creditflow.errors import InsufficientCreditsError, NotFoundError


def test_grant_credits_updates_ledger_and_aggregate(credit_service, make_user, entries):
    user_id = make_user()

    entry = credit_service.grant_credits(user_id, 40, "Welcome", idempotency_key="welcome_1")

    assert entry.amount == 40
    assert entry.remaining_amount == 40
    assert credit_service.get_balance(user_id) == 40
    assert len(entries(user_id)) == 1
    assert credit_service.reconcile_balance(user_id) == 0


def test_grant_credits_is_idempotent_per_key(credit_service, make_user, entries):
    user_id = make_user()

    first = credit_service.grant_credits(user_id, 25, "Bonus", idempotency_key="bonus_1")
    second = credit_service.grant_credits(user_id, 25, "Bonus", idempotency_key="bonus_1")

    assert first is not None
    assert second is None
    assert credit_service.get_balance(user_id) == 25
    assert len(entries(user_id)) == 1


def test_grant_credits_rejects_non_positive_amount(credit_service, make_user):
    user_id = make_user()

    with pytest.raises(ValueError):
        credit_service.grant_credits(user_id, 0, "Nothing")


def test_grant_credits_unknown_user(credit_service):
    with pytest.raises(NotFoundError):
        credit_service.grant_credits(9999, 10, "Ghost")


def test_signup_bonus_granted_once(credit_service, make_user, entries):
    user_id = make_user()
    settings = CreditSettings(signup_bonus=10)

    assert credit_service.grant_signup_bonus(user_id, settings) is not None
    assert credit_service.grant_signup_bonus(user_id, settings) is None

    [entry] = entries(user_id)
    assert entry.idempotency_key == f"signup_{user_id}"
    assert credit_service.get_balance(user_id) == 10


def test_signup_bonus_zero_is_skipped(credit_service, make_user, entries):
    user_id = make_user()

    assert credit_service.grant_signup_bonus(user_id, CreditSettings(signup_bonus=0)) is None
    assert entries(user_id) == []


def test_consume_deducts_oldest_first(credit_service, make_user, entries):
    user_id = make_user()
    credit_service.grant_credits(user_id, 10, "A")
    credit_service.grant_credits(user_id, 20, "B")

    balance = credit_service.consume(user_id, 15, "Used a feature")

    first, second, usage = entries(user_id)
    assert balance == 15
    assert first.remaining_amount == 0
    assert second.remaining_amount == 15
    assert usage.type == CreditTransactionType.USAGE
    assert usage.amount == -15
    assert usage.remaining_amount == 0
    assert credit_service.get_balance(user_id) == 15
    assert credit_service.reconcile_balance(user_id) == 0


def test_consume_insufficient_changes_nothing(credit_service, make_user, entries):
    user_id = make_user()
    credit_service.grant_credits(user_id, 5, "Small grant")

    with pytest.raises(InsufficientCreditsError) as exc_info:
        credit_service.consume(user_id, 10, "Too expensive")

    assert exc_info.value.required == 10
    assert exc_info.value.available == 5
    assert credit_service.get_balance(user_id) == 5
    [entry] = entries(user_id)
    assert entry.remaining_amount == 5


def test_consume_rejects_non_positive_amount(credit_service, make_user):
    user_id = make_user()

    with pytest.raises(ValueError):
        credit_service.consume(user_id, 0, "Nothing")


def test_consume_sweeps_expired_credits_first(credit_service, make_user):
    user_id = make_user()
    now = datetime.utcnow()
    credit_service.grant_credits(user_id, 10, "Old", expiration_date=now - timedelta(days=1))
    credit_service.grant_credits(user_id, 5, "Live")
    assert credit_service.get_balance(user_id) == 15

    with pytest.raises(InsufficientCreditsError):
        credit_service.consume(user_id, 10, "Needs expired credits", now=now)

    assert credit_service.get_balance(user_id) == 5


def test_consume_expires_entries_past_their_date(credit_service, make_user, entries):
    user_id = make_user()
    now = datetime.utcnow()
    credit_service.grant_credits(user_id, 10, "Expiring", expiration_date=now + timedelta(hours=1))
    credit_service.grant_credits(user_id, 10, "Permanent")

    credit_service.consume(user_id, 5, "Later", now=now + timedelta(hours=2))

    expiring, permanent, _ = entries(user_id)
    assert expiring.remaining_amount == 0
    assert expiring.expiration_date_processed_at is not None
    assert permanent.remaining_amount == 5
    assert credit_service.get_balance(user_id) == 5


def test_sweep_expired_zeroes_entries_once(credit_service, make_user, entries):
    user_id = make_user()
    now = datetime.utcnow()
    credit_service.grant_credits(user_id, 30, "Expired", expiration_date=now - timedelta(seconds=1))
    credit_service.grant_credits(user_id, 20, "Live", expiration_date=now + timedelta(days=1))

    assert credit_service.sweep_expired(user_id, now) == 30
    assert credit_service.get_balance(user_id) == 20

    expired, live = entries(user_id)
    assert expired.remaining_amount == 0
    assert expired.expiration_date_processed_at == now
    assert live.remaining_amount == 20

    assert credit_service.sweep_expired(user_id, now) == 0
    assert credit_service.get_balance(user_id) == 20
    assert credit_service.reconcile_balance(user_id) == 0


def test_sweep_processes_monthly_refresh_first(credit_service, make_user, monkeypatch):
    user_id = make_user()
    now = datetime.utcnow()
    past = now - timedelta(days=1)
    older = credit_service.grant_credits(user_id, 5, "Older purchase", expiration_date=past)
    newer = credit_service.grant_credits(user_id, 5, "Newer purchase", expiration_date=past)
    monthly = credit_service.grant_credits(
        user_id, 5, "Monthly", type=CreditTransactionType.MONTHLY_REFRESH, expiration_date=past
    )

    order = []
    original = credit_service._expire_entry

    def recording(transaction_id, uid, when):
        order.append(transaction_id)
        return original(transaction_id, uid, when)

    monkeypatch.setattr(credit_service, "_expire_entry", recording)

    credit_service.sweep_expired(user_id, now)

    assert order == [monthly.id, older.id, newer.id]


def test_sweep_skips_failing_entry(credit_service, make_user, entries, monkeypatch):
    user_id = make_user()
    now = datetime.utcnow()
    past = now - timedelta(days=1)
    failing = credit_service.grant_credits(user_id, 7, "Fails", expiration_date=past)
    credit_service.grant_credits(user_id, 3, "Works", expiration_date=past)

    original = credit_service._expire_entry

    def flaky(transaction_id, uid, when):
        if transaction_id == failing.id:
            raise OperationalError("UPDATE credit_transactions", {}, Exception("database is locked"))
        return original(transaction_id, uid, when)

    monkeypatch.setattr(credit_service, "_expire_entry", flaky)
    assert credit_service.sweep_expired(user_id, now) == 3
    assert credit_service.get_balance(user_id) == 7

    monkeypatch.setattr(credit_service, "_expire_entry", original)
    assert credit_service.sweep_expired(user_id, now) == 7
    assert credit_service.get_balance(user_id) == 0
    assert all(e.expiration_date_processed_at is not None for e in entries(user_id))


def test_sweep_all_expired(credit_service, make_user):
    now = datetime.utcnow()
    past = now - timedelta(days=1)
    alice = make_user()
    bob = make_user()
    carol = make_user()
    credit_service.grant_credits(alice, 4, "Expired", expiration_date=past)
    credit_service.grant_credits(bob, 6, "Expired", expiration_date=past)
    credit_service.grant_credits(carol, 6, "Live")

    result = credit_service.sweep_all_expired(now)

    assert result == {"users_affected": 2, "credits_expired": 10}
    assert credit_service.get_balance(carol) == 6


def test_is_refresh_due_uses_calendar_months():
    last = datetime(2026, 1, 31, 12, 0)

    assert is_refresh_due(None, last)
    assert not is_refresh_due(last, datetime(2026, 2, 27, 12, 0))
    assert is_refresh_due(last, datetime(2026, 2, 28, 12, 0))


def test_monthly_refresh_grants_once(credit_service, make_user, entries):
    now = datetime.utcnow()
    last = now - timedelta(days=31)
    user_id = make_user(last_credit_refresh_at=last)
    settings = CreditSettings(free_monthly_credits=50)

    balance = credit_service.add_free_monthly_credits_if_needed(user_id, last, 0, settings, now=now)

    assert balance == 50
    [entry] = entries(user_id)
    assert entry.type == CreditTransactionType.MONTHLY_REFRESH
    assert entry.expiration_date > now + timedelta(days=27)

    # A second caller still holding the stale snapshot re-reads the row
    again = credit_service.add_free_monthly_credits_if_needed(
        user_id, last, 0, settings, now=now + timedelta(seconds=1)
    )
    assert again == 50
    assert len(entries(user_id)) == 1


def test_monthly_refresh_not_due_returns_cached(credit_service, make_user, entries):
    now = datetime.utcnow()
    user_id = make_user(last_credit_refresh_at=now - timedelta(days=3))

    balance = credit_service.add_free_monthly_credits_if_needed(
        user_id, now - timedelta(days=3), 42, CreditSettings(free_monthly_credits=50), now=now
    )

    assert balance == 42
    assert entries(user_id) == []


def test_monthly_refresh_sweeps_previous_month(credit_service, make_user, database):
    now = datetime.utcnow()
    last = now - timedelta(days=32)
    user_id = make_user(last_credit_refresh_at=last)
    credit_service.grant_credits(
        user_id,
        50,
        "Last month",
        type=CreditTransactionType.MONTHLY_REFRESH,
        expiration_date=now - timedelta(days=1),
    )

    balance = credit_service.add_free_monthly_credits_if_needed(
        user_id, last, 50, CreditSettings(free_monthly_credits=50), now=now
    )

    assert balance == 50
    with database.session() as session:
        assert session.get(UserAccount, user_id).last_credit_refresh_at == now
    assert credit_service.reconcile_balance(user_id) == 0


def test_reconcile_balance_detects_and_fixes_drift(credit_service, make_user):
    user_id = make_user()
    credit_service.grant_credits(user_id, 10, "Grant")
    credit_service.apply_delta(user_id, 7)

    assert credit_service.reconcile_balance(user_id) == 7
    assert credit_service.get_balance(user_id) == 17

    assert credit_service.reconcile_balance(user_id, fix=True) == 7
    assert credit_service.get_balance(user_id) == 10
    assert credit_service.reconcile_balance(user_id) == 0


def test_apply_delta_unknown_user(credit_service):
    with pytest.raises(NotFoundError):
        credit_service.apply_delta(4242, 5)


def test_log_transaction_leaves_aggregate(credit_service, make_user):
    user_id = make_user()

    entry = credit_service.log_transaction(user_id, 12, CreditTransactionType.PURCHASE, "Manual")

    assert entry.remaining_amount == 12
    assert credit_service.get_balance(user_id) == 0
    assert credit_service.reconcile_balance(user_id) == -12


def test_has_enough_credits(credit_service, make_user):
    user_id = make_user()
    credit_service.grant_credits(user_id, 10, "Grant")

    assert credit_service.has_enough_credits(user_id, 10)
    assert not credit_service.has_enough_credits(user_id, 11)
    assert not credit_service.has_enough_credits(777, 1)


def test_transaction_history_pagination(credit_service, make_user):
    user_id = make_user()
    for i in range(12):
        credit_service.grant_credits(user_id, i + 1, f"Grant {i}")

    page_one, pagination = credit_service.get_transaction_history(user_id, page=1, limit=10)
    page_two, _ = credit_service.get_transaction_history(user_id, page=2, limit=10)

    assert pagination == {"total": 12, "pages": 2, "current": 1}
    assert len(page_one) == 10
    assert len(page_two) == 2
    assert page_one[0].amount == 12


def test_record_package_purchase(credit_service, make_user):
    user_id = make_user()
    now = datetime.utcnow()

    entry = credit_service.record_package_purchase(user_id, "package-2", "pi_123", now=now)
    duplicate = credit_service.record_package_purchase(user_id, "package-2", "pi_123", now=now)

    assert entry.amount == 1200
    assert entry.payment_intent_id == "pi_123"
    assert entry.expiration_date.year == now.year + 2
    assert duplicate is None
    assert credit_service.get_balance(user_id) == 1200


def test_record_package_purchase_unknown_package(credit_service, make_user):
    user_id = make_user()

    with pytest.raises(NotFoundError):
        credit_service.record_package_purchase(user_id, "package-99", "pi_1")


def test_get_packages():
    from creditflow.credits.service import CreditService

    packages = {p["id"]: p for p in CreditService.get_packages()}

    assert packages["package-1"]["credits"] == 500
    assert packages["package-3"]["price_eur"] == 20


def test_consume_allocates_entry_expiring_at_now(credit_service, make_user, entries):
    user_id = make_user()
    now = datetime.utcnow()
    credit_service.grant_credits(user_id, 30, "Ends now", expiration_date=now)

    assert credit_service.consume(user_id, 10, "Usage", now=now) == 20
    assert [e.remaining_amount for e in entries(user_id)] == [20, 0]
    assert credit_service.reconcile_balance(user_id) == 0

    assert credit_service.sweep_expired(user_id, now + timedelta(seconds=1)) == 20
    assert credit_service.get_balance(user_id) == 0
    assert credit_service.reconcile_balance(user_id) == 0
