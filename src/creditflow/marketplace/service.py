"""Marketplace purchases paid with credits."""

from typing import Any

from sqlalchemy.exc import IntegrityError

from creditflow.credits.models import PurchasableItemType, PurchasedItem
from creditflow.credits.service import CreditService, credit_service as default_credit_service
from creditflow.errors import ConflictError, InsufficientCreditsError, NotFoundError
from creditflow.logging_config import get_logger
from creditflow.marketplace.catalog import COMPONENT_CATALOG, find_item
from creditflow.storage.db import Database, db

logger = get_logger(__name__)


class MarketplaceService:
    """Buys catalog items through the consumption allocator."""

    def __init__(
        self,
        database: Database | None = None,
        credit_service: CreditService | None = None,
    ):
        self.db = database or db
        self.credit_service = credit_service or default_credit_service
        self.logger = get_logger(__name__)

    def list_items(self, user_id: int) -> list[dict[str, Any]]:
        """Catalog entries with an ``owned`` flag for the user."""
        owned = self.credit_service.get_user_purchased_items(user_id)
        return [
            {
                "id": item.id,
                "item_type": item.item_type.value,
                "name": item.name,
                "description": item.description,
                "credits": item.credits,
                "owned": f"{item.item_type.value}:{item.id}" in owned,
            }
            for item in COMPONENT_CATALOG
        ]

    def purchase_item(
        self,
        user_id: int,
        item_type: PurchasableItemType,
        item_id: str,
    ) -> PurchasedItem:
        """Purchase a catalog item.

        Args:
            user_id: Buyer
            item_type: Item type
            item_id: Catalog id

        Returns:
            The purchase record

        Raises:
            NotFoundError: Unknown item
            ConflictError: Item already owned
            InsufficientCreditsError: Balance below the item cost
        """
        item = find_item(item_type, item_id)
        if not item:
            raise NotFoundError("Item not found")

        if not self.credit_service.has_enough_credits(user_id, item.credits):
            raise InsufficientCreditsError(item.credits, self.credit_service.get_balance(user_id))

        with self.db.session() as session:
            existing = session.query(PurchasedItem).filter(
                PurchasedItem.user_id == user_id,
                PurchasedItem.item_type == item_type,
                PurchasedItem.item_id == item_id,
            ).first()
            if existing:
                raise ConflictError("You already own this item")

        self.credit_service.consume(
            user_id,
            item.credits,
            description=f"Purchased {item_type.value.lower()}: {item.name}",
        )

        try:
            with self.db.session() as session:
                purchase = PurchasedItem(user_id=user_id, item_type=item_type, item_id=item_id)
                session.add(purchase)
        except IntegrityError:
            # A concurrent purchase recorded the item first; give the credits back
            self.credit_service.grant_credits(
                user_id,
                item.credits,
                description=f"Refund for duplicate purchase: {item.name}",
            )
            self.logger.warning("duplicate_purchase_refunded", user_id=user_id, item_id=item_id)
            raise ConflictError("You already own this item")

        self.logger.info(
            "item_purchased",
            user_id=user_id,
            item_type=item_type.value,
            item_id=item_id,
            credits=item.credits,
        )
        return purchase


# Singleton instance
marketplace_service = MarketplaceService()
