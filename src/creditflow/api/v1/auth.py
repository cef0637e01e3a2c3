"""Authentication API v1 endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, EmailStr

from creditflow.api.rate_limit import limiter
from creditflow.auth.local import auth_service
from creditflow.auth.middleware import require_auth
from creditflow.auth.models import CompleteInviteRequest, TokenResponse, User, UserCreate
from creditflow.auth.signup import signup_service
from creditflow.logging_config import get_logger
from creditflow.sessions.store import KVSession, session_store

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


class SignInRequest(BaseModel):
    email: EmailStr
    password: str


class SessionInfo(BaseModel):
    id: str
    current: bool


def _issue_token(user_id: int, authentication_type: str) -> TokenResponse:
    kv_session = session_store.create_session(user_id, authentication_type=authentication_type)
    token = auth_service.create_session_token(user_id, kv_session.id, kv_session.expires_at)
    return TokenResponse(
        access_token=token,
        expires_in=int(auth_service.token_lifetime().total_seconds()),
        user=kv_session.user,
    )


@router.post("/sign-up", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("5/minute")
async def sign_up(request: Request, body: UserCreate):
    """Register with email and password.

    Grants the sign-up bonus and applies a pending referral invitation.
    """
    user = signup_service.sign_up(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        referral_token=body.referral_token,
    )
    return _issue_token(user.id, "password")


@router.post("/complete-invite", response_model=TokenResponse)
@limiter.limit("5/minute")
async def complete_invite(request: Request, body: CompleteInviteRequest):
    """Finish sign-up from an invitation link."""
    user = signup_service.complete_invite(
        token=body.invitation,
        email=body.email,
        first_name=body.first_name,
        last_name=body.last_name,
        password=body.password,
    )
    return _issue_token(user.id, "password")


@router.post("/sign-in", response_model=TokenResponse)
@limiter.limit("10/minute")
async def sign_in(request: Request, body: SignInRequest):
    """Sign in with email and password."""
    user = auth_service.authenticate(body.email, body.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )
    return _issue_token(user.id, "password")


@router.post("/sign-out")
async def sign_out(kv_session: KVSession = Depends(require_auth)):
    session_store.delete_session(kv_session.id, kv_session.user_id)
    return {"success": True}


@router.get("/me", response_model=User)
async def get_me(kv_session: KVSession = Depends(require_auth)):
    """Current user snapshot, including the up-to-date credit balance."""
    return kv_session.user


@router.get("/sessions", response_model=list[SessionInfo])
async def list_sessions(kv_session: KVSession = Depends(require_auth)):
    keys = session_store.list_session_keys(kv_session.user_id)
    session_ids = [key.rsplit(":", 1)[-1] for key in keys]
    return [SessionInfo(id=sid, current=sid == kv_session.id) for sid in session_ids]


@router.delete("/sessions/{session_id}")
async def revoke_session(session_id: str, kv_session: KVSession = Depends(require_auth)):
    """Revoke one of the caller's own sessions."""
    session_store.delete_session(session_id, kv_session.user_id)
    return {"success": True}


@router.delete("/sessions")
async def revoke_all_sessions(
    keep_current: bool = Query(False),
    kv_session: KVSession = Depends(require_auth),
):
    """Revoke every session of the caller, optionally keeping the current one."""
    deleted = session_store.delete_all_sessions_of_user(
        kv_session.user_id,
        keep_session_id=kv_session.id if keep_current else None,
    )
    return {"success": True, "deleted": deleted}
