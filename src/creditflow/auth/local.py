"""Local authentication service (email/password) and session tokens."""

from datetime import datetime, timedelta
from typing import Any

from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import func

from creditflow.auth.models import UserAccount
from creditflow.logging_config import get_logger
from creditflow.settings import settings
from creditflow.storage.db import Database, db

logger = get_logger(__name__)

# Password hashing
pwd_context = CryptContext(schemes=["scrypt"], deprecated="auto")

# JWT settings
JWT_ALGORITHM = "HS256"


class LocalAuthService:
    """Password hashing, login and signed session tokens."""

    def __init__(self, database: Database | None = None):
        """Initialize auth service."""
        self.db = database or db
        self.logger = get_logger(__name__)

    # ==================== PASSWORD ====================

    def hash_password(self, password: str) -> str:
        return pwd_context.hash(password)

    def verify_password(self, password: str, hashed: str) -> bool:
        """Verify a password against hash.

        Args:
            password: Plain password
            hashed: Hashed password

        Returns:
            True if matches
        """
        return pwd_context.verify(password, hashed)

    # ==================== USERS ====================

    def get_user_by_email(self, email: str) -> UserAccount | None:
        with self.db.session() as session:
            return session.query(UserAccount).filter(
                func.lower(UserAccount.email) == email.strip().lower(),
            ).first()

    def get_user_by_id(self, user_id: int) -> UserAccount | None:
        with self.db.session() as session:
            return session.get(UserAccount, user_id)

    def authenticate(self, email: str, password: str) -> UserAccount | None:
        """Authenticate a user.

        Args:
            email: User email
            password: Plain password

        Returns:
            User account if valid, None otherwise
        """
        user = self.get_user_by_email(email)
        if not user or not user.password_hash:
            return None

        if not self.verify_password(password, user.password_hash):
            return None

        self.logger.info("user_authenticated", user_id=user.id)
        return user

    # ==================== TOKENS ====================

    def create_session_token(self, user_id: int, session_id: str, expires_at: datetime) -> str:
        """Sign a token naming the user and the KV session it belongs to."""
        payload = {
            "sub": str(user_id),
            "sid": session_id,
            "exp": expires_at,
            "iat": datetime.utcnow(),
        }
        return jwt.encode(payload, settings.jwt_secret_key, algorithm=JWT_ALGORITHM)

    def decode_session_token(self, token: str) -> dict[str, Any] | None:
        """Decode a session token.

        Returns:
            Dict with user_id and session_id, or None if invalid or expired
        """
        try:
            payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[JWT_ALGORITHM])
        except JWTError as e:
            self.logger.warning("invalid_session_token", error=str(e))
            return None

        try:
            user_id = int(payload["sub"])
            session_id = str(payload["sid"])
        except (KeyError, TypeError, ValueError):
            return None

        return {"user_id": user_id, "session_id": session_id}

    @staticmethod
    def token_lifetime() -> timedelta:
        return timedelta(days=settings.session_ttl_days)


# Singleton instance
auth_service = LocalAuthService()
