"""Stripe payment integration for credit packages."""

from typing import Any

import stripe

from creditflow.credits.service import CreditService
from creditflow.errors import NotFoundError
from creditflow.logging_config import get_logger
from creditflow.settings import settings

logger = get_logger(__name__)

# Initialize Stripe
stripe.api_key = settings.stripe_secret_key


def create_payment_intent(user_id: int, package_id: str) -> dict[str, Any]:
    """Create a Stripe PaymentIntent for a credit package.

    Credits are granted later from the confirmed payment
    (``CreditService.record_package_purchase``).

    Args:
        user_id: Buyer
        package_id: Credit package ID

    Returns:
        Dict with client_secret, payment_intent_id, amount_cents and credits

    Raises:
        ValueError: If Stripe is not configured
        NotFoundError: If package_id is unknown
    """
    if not settings.stripe_secret_key:
        raise ValueError("Stripe is not configured")

    package = CreditService.get_credit_package(package_id)
    if not package:
        raise NotFoundError(f"Invalid package: {package_id}")

    amount_cents = int(package["price_eur"] * 100)
    intent = stripe.PaymentIntent.create(
        amount=amount_cents,
        currency=settings.stripe_currency,
        automatic_payment_methods={"enabled": True},
        metadata={
            "user_id": str(user_id),
            "package_id": package_id,
            "credits": str(package["credits"]),
        },
    )

    logger.info(
        "payment_intent_created",
        user_id=user_id,
        package_id=package_id,
        payment_intent_id=intent.id,
    )

    return {
        "client_secret": intent.client_secret,
        "payment_intent_id": intent.id,
        "amount_cents": amount_cents,
        "credits": package["credits"],
    }
