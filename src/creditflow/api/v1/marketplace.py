"""Marketplace API v1 endpoints."""

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from creditflow.api.rate_limit import limiter
from creditflow.auth.middleware import require_auth
from creditflow.credits.models import PurchasableItemType
from creditflow.marketplace.service import marketplace_service
from creditflow.sessions.store import KVSession

router = APIRouter(prefix="/marketplace", tags=["marketplace"])


class MarketplaceItem(BaseModel):
    id: str
    item_type: PurchasableItemType
    name: str
    description: str
    credits: int
    owned: bool


class PurchaseRequest(BaseModel):
    item_type: PurchasableItemType = PurchasableItemType.COMPONENT
    item_id: str


@router.get("/items", response_model=list[MarketplaceItem])
async def list_items(kv_session: KVSession = Depends(require_auth)):
    return marketplace_service.list_items(kv_session.user_id)


@router.post("/purchase")
@limiter.limit("20/minute")
async def purchase(request: Request, body: PurchaseRequest, kv_session: KVSession = Depends(require_auth)):
    """Buy a catalog item with credits."""
    marketplace_service.purchase_item(kv_session.user_id, body.item_type, body.item_id)
    return {"success": True}
