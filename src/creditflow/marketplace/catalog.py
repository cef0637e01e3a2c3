"""Static catalog of purchasable components."""

from dataclasses import dataclass

from creditflow.credits.models import PurchasableItemType


@dataclass(frozen=True)
class CatalogItem:
    id: str
    name: str
    description: str
    credits: int
    item_type: PurchasableItemType = PurchasableItemType.COMPONENT


COMPONENT_CATALOG: tuple[CatalogItem, ...] = (
    CatalogItem(
        id="theme-switch",
        name="AI Photo Restoration",
        description="Repair scratches, revive colors and sharpen faces in old photos.",
        credits=1,
    ),
    CatalogItem(
        id="separator-with-text",
        name="Magic Effects & Styles",
        description="Cinematic filters and artistic styles for any shot.",
        credits=2,
    ),
    CatalogItem(
        id="nav-user",
        name="Age Transformation",
        description="See yourself younger or older.",
        credits=5,
    ),
    CatalogItem(
        id="page-header",
        name="Smart Object Removal",
        description="Erase photobombers, clutter or backgrounds with AI fill.",
        credits=10,
    ),
    CatalogItem(
        id="button",
        name="Batch Enhancements",
        description="Fix lighting, color and clarity across many photos at once.",
        credits=15,
    ),
)


def find_item(item_type: PurchasableItemType, item_id: str) -> CatalogItem | None:
    for item in COMPONENT_CATALOG:
        if item.item_type == item_type and item.id == item_id:
            return item
    return None
