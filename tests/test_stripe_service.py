"""Tests for Stripe payment intents."""

from types import SimpleNamespace

import pytest
import stripe

from creditflow.errors import NotFoundError
from creditflow.payments import stripe_service


@pytest.fixture
def stripe_configured(monkeypatch):
    monkeypatch.setattr(stripe_service.settings, "stripe_secret_key", "sk_test_123")
    calls = []

    def fake_create(**kwargs):
        calls.append(kwargs)
        return SimpleNamespace(id="pi_test_1", client_secret="pi_test_1_secret")

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
    return calls


def test_create_payment_intent(stripe_configured):
    result = stripe_service.create_payment_intent(7, "package-2")

    assert result == {
        "client_secret": "pi_test_1_secret",
        "payment_intent_id": "pi_test_1",
        "amount_cents": 1000,
        "credits": 1200,
    }
    [call] = stripe_configured
    assert call["amount"] == 1000
    assert call["currency"] == "eur"
    assert call["metadata"] == {"user_id": "7", "package_id": "package-2", "credits": "1200"}


def test_unknown_package(stripe_configured):
    with pytest.raises(NotFoundError):
        stripe_service.create_payment_intent(7, "package-x")


def test_requires_configuration(monkeypatch):
    monkeypatch.setattr(stripe_service.settings, "stripe_secret_key", None)

    with pytest.raises(ValueError):
        stripe_service.create_payment_intent(7, "package-1")
