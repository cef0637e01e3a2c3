"""Tests for the creditflow CLI."""

from datetime import datetime, timedelta

from typer.testing import CliRunner

from creditflow.auth.models import UserAccount
from creditflow.cli import app
from creditflow.credits.app_settings import app_settings_service
from creditflow.credits.service import credit_service

runner = CliRunner()


def _user(db, **fields) -> int:
    with db.session() as session:
        user = UserAccount(email="cli@example.com", last_credit_refresh_at=datetime.utcnow(), **fields)
        session.add(user)
    return user.id


def test_settings_set(global_db):
    result = runner.invoke(app, ["settings-set", "referral_bonus_credits", "30"])

    assert result.exit_code == 0
    assert app_settings_service.get_setting("referral_bonus_credits") == "30"


def test_settings_set_rejects_bad_input(global_db):
    unknown = runner.invoke(app, ["settings-set", "nope", "1"])
    # "--" stops option parsing so "-5" reaches the command as a value
    negative = runner.invoke(app, ["settings-set", "--", "free_monthly_credits", "-5"])
    not_a_number = runner.invoke(app, ["settings-set", "credits_per_eur", "abc"])

    assert unknown.exit_code == 1
    assert negative.exit_code == 1
    assert "non-negative" in negative.output
    assert not_a_number.exit_code == 1
    assert app_settings_service.all_settings() == {}


def test_settings_show(global_db):
    result = runner.invoke(app, ["settings-show"])

    assert result.exit_code == 0
    assert "free_monthly_credits" in result.output


def test_reconcile_reports_and_fixes_drift(global_db):
    user_id = _user(global_db, current_credits=7)

    report = runner.invoke(app, ["reconcile"])
    assert report.exit_code == 1
    assert credit_service.get_balance(user_id) == 7

    fixed = runner.invoke(app, ["reconcile", "--fix"])
    assert fixed.exit_code == 0
    assert credit_service.get_balance(user_id) == 0

    clean = runner.invoke(app, ["reconcile", "--user-id", str(user_id)])
    assert clean.exit_code == 0


def test_sweep_expired(global_db):
    user_id = _user(global_db)
    credit_service.grant_credits(
        user_id,
        40,
        "Old grant",
        expiration_date=datetime.utcnow() - timedelta(days=1),
    )

    result = runner.invoke(app, ["sweep-expired"])

    assert result.exit_code == 0
    assert "40 credits expired" in result.output
    assert credit_service.get_balance(user_id) == 0
