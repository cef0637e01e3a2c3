"""Admin API v1 endpoints: runtime settings, user stats, reconciliation."""

from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.orm import Session

from creditflow.auth.accounts import account_service
from creditflow.auth.middleware import require_admin
from creditflow.auth.models import UserAccount
from creditflow.credits.app_settings import KNOWN_KEYS, app_settings_service, parse_number
from creditflow.credits.service import credit_service
from creditflow.logging_config import get_logger
from creditflow.sessions.store import KVSession
from creditflow.storage.db import get_db

logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])

STATS_EMAIL_LIMIT = 20


class SettingsUpdateRequest(BaseModel):
    settings: dict[str, str]


class UserBucket(BaseModel):
    count: int
    emails: list[str]


class UsersStatsResponse(BaseModel):
    registered_24h: UserBucket
    registered_30d: UserBucket
    registered_12m: UserBucket
    active_24h: UserBucket
    active_30d: UserBucket


class ReconcileResponse(BaseModel):
    user_id: int
    drift: int
    balance: int


@router.get("/settings")
async def get_settings(admin: KVSession = Depends(require_admin)):
    """All known settings (missing ones as empty strings)."""
    stored = app_settings_service.all_settings()
    return {key: stored.get(key, "") for key in KNOWN_KEYS}


@router.put("/settings")
async def update_settings(body: SettingsUpdateRequest, admin: KVSession = Depends(require_admin)):
    """Upsert settings. Values must be numeric; unknown keys are rejected."""
    unknown = sorted(set(body.settings) - set(KNOWN_KEYS))
    if unknown:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown settings: {', '.join(unknown)}",
        )

    invalid = sorted(key for key, value in body.settings.items() if parse_number(value, -1) < 0)
    if invalid:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Settings must be non-negative numbers: {', '.join(invalid)}",
        )

    for key, value in body.settings.items():
        app_settings_service.upsert_setting(key, value.strip())

    logger.info("admin_settings_updated", admin_id=admin.user_id, keys=sorted(body.settings))
    return {"success": True}


def _bucket(db: Session, column, since: datetime) -> UserBucket:
    query = db.query(UserAccount).filter(column >= since)
    count = query.with_entities(func.count(UserAccount.id)).scalar() or 0
    emails = [
        row.email
        for row in query.with_entities(UserAccount.email).order_by(UserAccount.created_at).limit(STATS_EMAIL_LIMIT)
    ]
    return UserBucket(count=count, emails=emails)


@router.get("/users/stats", response_model=UsersStatsResponse)
async def users_stats(
    admin: KVSession = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Registrations and activity over recent windows."""
    now = datetime.utcnow()
    return UsersStatsResponse(
        registered_24h=_bucket(db, UserAccount.created_at, now - timedelta(hours=24)),
        registered_30d=_bucket(db, UserAccount.created_at, now - timedelta(days=30)),
        registered_12m=_bucket(db, UserAccount.created_at, now - timedelta(days=365)),
        active_24h=_bucket(db, UserAccount.updated_at, now - timedelta(hours=24)),
        active_30d=_bucket(db, UserAccount.updated_at, now - timedelta(days=30)),
    )


@router.post("/users/{user_id}/reconcile", response_model=ReconcileResponse)
async def reconcile_user(user_id: int, fix: bool = True, admin: KVSession = Depends(require_admin)):
    """Recompute a user's balance from the ledger."""
    drift = credit_service.reconcile_balance(user_id, fix=fix)
    return ReconcileResponse(user_id=user_id, drift=drift, balance=credit_service.get_balance(user_id))


@router.delete("/users/{user_id}")
async def delete_user(user_id: int, admin: KVSession = Depends(require_admin)):
    """Delete an account with its sessions, ledger, purchases and sent invitations."""
    account_service.delete_user(user_id, acting_user_id=admin.user_id)
    return {"success": True}
