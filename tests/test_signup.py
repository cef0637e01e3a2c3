"""Tests for account creation flows."""

import pytest

from creditflow.credits.app_settings import DEFAULT_REGISTRATION_CREDITS, REFERRAL_BONUS_CREDITS
from creditflow.errors import ConflictError, PreconditionFailedError
from creditflow.referral.models import ReferralInvitationStatus


@pytest.fixture(autouse=True)
def bonuses(settings_service):
    settings_service.upsert_setting(DEFAULT_REGISTRATION_CREDITS, "10")
    settings_service.upsert_setting(REFERRAL_BONUS_CREDITS, "25")


def test_sign_up_grants_signup_bonus(signup_service, credit_service, auth_service):
    user = signup_service.sign_up("New@Example.com", "s3cret-password", first_name="Ada")

    assert user.email == "new@example.com"
    assert user.last_credit_refresh_at is not None
    assert credit_service.get_balance(user.id) == 10
    assert auth_service.authenticate("new@example.com", "s3cret-password").id == user.id
    assert auth_service.authenticate("new@example.com", "wrong-password") is None


def test_sign_up_duplicate_email(signup_service):
    signup_service.sign_up("dup@example.com", "s3cret-password")

    with pytest.raises(ConflictError):
        signup_service.sign_up("DUP@example.com", "other-password")


def test_sign_up_with_referral_credits_inviter_once(
    signup_service, referral_service, credit_service, settings_service, make_user, entries
):
    inviter = make_user("inviter@example.com")
    invitation = referral_service.create_invitation(inviter, "friend@example.com", settings_service.snapshot())

    invitee = signup_service.sign_up("friend@example.com", "s3cret-password", referral_token=invitation.token)

    assert credit_service.get_balance(inviter) == 25
    assert credit_service.get_balance(invitee.id) == 10
    assert invitee.referral_user_id == inviter
    assert referral_service.get_invitation(invitation.id).status == ReferralInvitationStatus.ACCEPTED

    with pytest.raises(PreconditionFailedError):
        referral_service.accept_invitation(invitation.token, invitee.id, settings_service.snapshot())
    assert len(entries(inviter)) == 1


def test_complete_invite_creates_verified_user(signup_service, referral_service, credit_service, settings_service, make_user):
    inviter = make_user("inviter@example.com")
    invitation = referral_service.create_invitation(inviter, "friend@example.com", settings_service.snapshot())

    user = signup_service.complete_invite(
        invitation.token, "Friend@example.com", "Grace", None, "s3cret-password"
    )

    assert user.email_verified_at is not None
    assert user.first_name == "Grace"
    assert user.referral_user_id == inviter
    assert credit_service.get_balance(user.id) == 10
    assert credit_service.get_balance(inviter) == 25
    assert referral_service.get_invitation(invitation.id).status == ReferralInvitationStatus.ACCEPTED


def test_complete_invite_rejects_other_email(signup_service, referral_service, settings_service, make_user):
    inviter = make_user("inviter@example.com")
    invitation = referral_service.create_invitation(inviter, "friend@example.com", settings_service.snapshot())

    with pytest.raises(PreconditionFailedError):
        signup_service.complete_invite(invitation.token, "someone@example.com", "Eve", None, "s3cret-password")


def test_complete_invite_twice(signup_service, referral_service, credit_service, settings_service, make_user):
    inviter = make_user("inviter@example.com")
    invitation = referral_service.create_invitation(inviter, "friend@example.com", settings_service.snapshot())
    signup_service.complete_invite(invitation.token, "friend@example.com", "Grace", None, "s3cret-password")

    with pytest.raises(PreconditionFailedError):
        signup_service.complete_invite(invitation.token, "friend@example.com", "Grace", None, "s3cret-password")

    assert credit_service.get_balance(inviter) == 25


def test_google_user_created_once(signup_service, credit_service, entries):
    user, is_new = signup_service.upsert_google_user("google-1", "g@example.com", "Alan", "Turing")
    again, is_new_again = signup_service.upsert_google_user("google-1", "g@example.com", "Alan", "Turing")

    assert is_new
    assert not is_new_again
    assert again.id == user.id
    assert user.email_verified_at is not None
    assert credit_service.get_balance(user.id) == 10
    assert len(entries(user.id)) == 1


def test_google_links_existing_email_account(signup_service, credit_service):
    existing = signup_service.sign_up("linked@example.com", "s3cret-password")

    user, is_new = signup_service.upsert_google_user("google-2", "Linked@example.com")

    assert not is_new
    assert user.id == existing.id
    assert user.google_account_id == "google-2"
    assert credit_service.get_balance(user.id) == 10
