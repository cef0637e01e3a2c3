"""Credits API v1 endpoints."""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from creditflow.auth.middleware import require_auth
from creditflow.credits.models import CreditTransactionType
from creditflow.credits.service import MAX_TRANSACTIONS_PER_PAGE, CreditService, credit_service
from creditflow.logging_config import get_logger
from creditflow.payments.stripe_service import create_payment_intent
from creditflow.sessions.store import KVSession

logger = get_logger(__name__)

router = APIRouter(prefix="/credits", tags=["credits"])


# ==================== MODELS ====================


class BalanceResponse(BaseModel):
    credits: int
    last_credit_refresh_at: datetime | None = None


class TransactionResponse(BaseModel):
    id: int
    amount: int
    remaining_amount: int
    type: CreditTransactionType
    description: str
    expiration_date: datetime | None = None
    expiration_date_processed_at: datetime | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class PaginationResponse(BaseModel):
    total: int
    pages: int
    current: int


class TransactionHistoryResponse(BaseModel):
    transactions: list[TransactionResponse]
    pagination: PaginationResponse


class CreditPackageResponse(BaseModel):
    id: str
    credits: int
    price_eur: float
    price_per_credit: float


class PaymentIntentRequest(BaseModel):
    package_id: str


class PaymentIntentResponse(BaseModel):
    client_secret: str
    payment_intent_id: str
    amount_cents: int
    credits: int


# ==================== ENDPOINTS ====================


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(kv_session: KVSession = Depends(require_auth)):
    """Current balance (monthly free credits already applied by session validation)."""
    return BalanceResponse(
        credits=credit_service.get_balance(kv_session.user_id),
        last_credit_refresh_at=kv_session.user.last_credit_refresh_at,
    )


@router.get("/transactions", response_model=TransactionHistoryResponse)
async def get_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(MAX_TRANSACTIONS_PER_PAGE, ge=1, le=100),
    kv_session: KVSession = Depends(require_auth),
):
    """Ledger entries, newest first."""
    transactions, pagination = credit_service.get_transaction_history(
        kv_session.user_id, page=page, limit=limit
    )
    return TransactionHistoryResponse(
        transactions=[TransactionResponse.model_validate(t) for t in transactions],
        pagination=PaginationResponse(**pagination),
    )


@router.get("/packages", response_model=list[CreditPackageResponse])
async def get_packages():
    return CreditService.get_packages()


@router.post("/payment-intent", response_model=PaymentIntentResponse)
async def create_intent(body: PaymentIntentRequest, kv_session: KVSession = Depends(require_auth)):
    """Start a credit package purchase with Stripe."""
    try:
        intent = create_payment_intent(kv_session.user_id, body.package_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return PaymentIntentResponse(**intent)
