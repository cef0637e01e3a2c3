"""Authentication dependencies for FastAPI."""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from creditflow.auth.local import auth_service
from creditflow.auth.models import UserRole
from creditflow.logging_config import bind_request_context, get_logger
from creditflow.sessions.store import KVSession, session_store

logger = get_logger(__name__)

# Security scheme
security = HTTPBearer(auto_error=False)


def get_current_session(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> KVSession | None:
    """Resolve the bearer token to a live KV session.

    Validation runs the monthly free-credit grant when it is due, so the
    returned snapshot carries the current balance.

    Returns:
        Session or None if not authenticated
    """
    if not credentials:
        return None

    claims = auth_service.decode_session_token(credentials.credentials)
    if not claims:
        logger.debug("session_token_rejected")
        return None

    kv_session = session_store.validate_session(claims["session_id"], claims["user_id"])
    if kv_session:
        request.state.session = kv_session
        bind_request_context(user_id=kv_session.user_id)
    return kv_session


def require_auth(kv_session: KVSession | None = Depends(get_current_session)) -> KVSession:
    """Require authentication - raises 401 if not authenticated."""
    if not kv_session:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return kv_session


def require_admin(kv_session: KVSession = Depends(require_auth)) -> KVSession:
    """Require admin privileges.

    Raises:
        HTTPException: 403 if not admin
    """
    if kv_session.user.role != UserRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return kv_session
