"""Referral API v1 endpoints."""

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, EmailStr

from creditflow.api.rate_limit import limiter
from creditflow.auth.middleware import require_auth
from creditflow.credits.app_settings import app_settings_service
from creditflow.email.service import email_service
from creditflow.logging_config import get_logger
from creditflow.referral.service import referral_service
from creditflow.sessions.store import KVSession

logger = get_logger(__name__)

router = APIRouter(prefix="/referral", tags=["referral"])


# ==================== MODELS ====================


class InviteRequest(BaseModel):
    email: EmailStr


class InviteResponse(BaseModel):
    success: bool
    email_sent: bool


class AcceptRequest(BaseModel):
    token: str


class ValidateTokenResponse(BaseModel):
    valid: bool
    invited_email: str | None = None


class ReferralStatsResponse(BaseModel):
    invitations_sent: int
    pending: int
    accepted: int
    expired: int
    referred_users: int
    credits_earned: int


# ==================== ENDPOINTS ====================


@router.post("/invite", response_model=InviteResponse)
@limiter.limit("10/minute")
async def invite(request: Request, body: InviteRequest, kv_session: KVSession = Depends(require_auth)):
    """Invite someone by email.

    The invitation is stored first; email delivery is best-effort.
    """
    invitation = referral_service.create_invitation(
        kv_session.user_id,
        body.email,
        app_settings_service.snapshot(),
    )

    email_sent = await email_service.send_referral_invitation_email(
        email=invitation.invited_email,
        invitation_token=invitation.token,
        inviter_name=kv_session.user.first_name,
    )
    if not email_sent:
        logger.warning("referral_invitation_email_not_sent", invitation_id=invitation.id)

    return InviteResponse(success=True, email_sent=email_sent)


@router.post("/accept")
async def accept(body: AcceptRequest, kv_session: KVSession = Depends(require_auth)):
    """Accept an invitation as the signed-in user."""
    referral_service.accept_invitation(body.token, kv_session.user_id, app_settings_service.snapshot())
    return {"success": True}


@router.get("/validate", response_model=ValidateTokenResponse)
@limiter.limit("30/minute")
async def validate(request: Request, token: str = Query(..., min_length=1)):
    """Check an invitation token before showing the sign-up form."""
    invitation = referral_service.validate_token(token)
    if not invitation:
        return ValidateTokenResponse(valid=False)
    return ValidateTokenResponse(valid=True, invited_email=invitation.invited_email)


@router.get("/stats", response_model=ReferralStatsResponse)
async def stats(kv_session: KVSession = Depends(require_auth)):
    return ReferralStatsResponse(**referral_service.get_referral_stats(kv_session.user_id))
