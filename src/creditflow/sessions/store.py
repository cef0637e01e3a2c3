"""Session snapshots kept in the ephemeral key/value store.

Each session is stored under ``session:<userId>:<sessionId>`` as JSON holding
the session metadata and a snapshot of the user row (including the credit
balance and last refresh date). The snapshot is a cache: any committed
balance change rewrites every live session of the user, and validation
re-reads the durable row before granting monthly credits.
"""

import secrets
from datetime import datetime, timedelta

from pydantic import BaseModel

from creditflow.auth.models import User, UserAccount
from creditflow.credits.app_settings import AppSettingsService, app_settings_service
from creditflow.credits.service import CreditService, credit_service, is_refresh_due
from creditflow.errors import NotFoundError
from creditflow.logging_config import get_logger
from creditflow.settings import settings
from creditflow.storage.db import Database, db
from creditflow.storage.kv import KVStore, create_kv_store

logger = get_logger(__name__)

# Bump when the stored shape changes; older blobs are rebuilt from the database
CURRENT_SESSION_VERSION = 1

# Minimum TTL written back when refreshing a session close to expiry
MIN_TTL_SECONDS = 60


class KVSession(BaseModel):
    """Session blob stored in the KV store."""
    id: str
    user_id: int
    created_at: datetime
    expires_at: datetime
    authentication_type: str = "password"
    version: int = CURRENT_SESSION_VERSION
    user: User


def session_key(user_id: int, session_id: str) -> str:
    return f"session:{user_id}:{session_id}"


def session_prefix(user_id: int) -> str:
    return f"session:{user_id}:"


class SessionStore:
    """Create, validate and refresh KV sessions."""

    def __init__(
        self,
        kv: KVStore,
        database: Database | None = None,
        credit_service: CreditService | None = None,
        settings_service: AppSettingsService | None = None,
    ):
        """Initialize session store.

        Args:
            kv: Key/value backend
            database: Database to read user rows from
            credit_service: Runs the monthly grant during validation (optional)
            settings_service: Source of the settings snapshot for the grant
        """
        self.kv = kv
        self.db = database or db
        self.credit_service = credit_service
        self.settings_service = settings_service or app_settings_service
        self.logger = get_logger(__name__)

    def _load_user(self, user_id: int) -> User:
        with self.db.session() as session:
            account = session.get(UserAccount, user_id)
            if not account:
                raise NotFoundError("User not found")
            return User.model_validate(account)

    def _write(self, session: KVSession, now: datetime) -> None:
        ttl = max(int((session.expires_at - now).total_seconds()), MIN_TTL_SECONDS)
        self.kv.put(session_key(session.user_id, session.id), session.model_dump_json(), ttl)

    def create_session(
        self,
        user_id: int,
        authentication_type: str = "password",
        now: datetime | None = None,
    ) -> KVSession:
        """Create a session, evicting the oldest ones beyond the per-user limit."""
        now = now or datetime.utcnow()
        user = self._load_user(user_id)

        existing = sorted(self.kv.list_keys(session_prefix(user_id)), key=lambda item: item[1] or datetime.max)
        while len(existing) >= settings.max_sessions_per_user:
            oldest_key, _ = existing.pop(0)
            self.kv.delete(oldest_key)
            self.logger.info("session_evicted", user_id=user_id, key=oldest_key)

        kv_session = KVSession(
            id=secrets.token_urlsafe(24),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(days=settings.session_ttl_days),
            authentication_type=authentication_type,
            user=user,
        )
        self._write(kv_session, now)

        self.logger.info("session_created", user_id=user_id, session_id=kv_session.id)
        return kv_session

    def get_session(self, session_id: str, user_id: int) -> KVSession | None:
        raw = self.kv.get(session_key(user_id, session_id))
        if raw is None:
            return None
        return KVSession.model_validate_json(raw)

    def delete_session(self, session_id: str, user_id: int) -> None:
        self.kv.delete(session_key(user_id, session_id))
        self.logger.info("session_deleted", user_id=user_id, session_id=session_id)

    def list_session_keys(self, user_id: int) -> list[str]:
        return [key for key, _ in self.kv.list_keys(session_prefix(user_id))]

    def delete_all_sessions_of_user(self, user_id: int, keep_session_id: str | None = None) -> int:
        """Revoke every session of the user, optionally sparing one.

        Returns:
            Number of sessions deleted
        """
        deleted = 0
        for key in self.list_session_keys(user_id):
            if keep_session_id and key == session_key(user_id, keep_session_id):
                continue
            self.kv.delete(key)
            deleted += 1

        self.logger.info("sessions_revoked", user_id=user_id, count=deleted, kept=bool(keep_session_id))
        return deleted

    def update_all_sessions_of_user(self, user_id: int, now: datetime | None = None) -> int:
        """Rewrite every live session of the user with the current user row.

        Returns:
            Number of sessions rewritten
        """
        now = now or datetime.utcnow()
        user = self._load_user(user_id)

        updated = 0
        for key in self.list_session_keys(user_id):
            raw = self.kv.get(key)
            if raw is None:
                continue
            kv_session = KVSession.model_validate_json(raw)
            if kv_session.expires_at <= now:
                self.kv.delete(key)
                continue
            kv_session.user = user
            kv_session.version = CURRENT_SESSION_VERSION
            self._write(kv_session, now)
            updated += 1

        self.logger.debug("sessions_refreshed", user_id=user_id, count=updated)
        return updated

    def validate_session(
        self,
        session_id: str,
        user_id: int,
        now: datetime | None = None,
    ) -> KVSession | None:
        """Return the live session, granting monthly credits when due.

        Expired sessions are deleted and yield None.
        """
        now = now or datetime.utcnow()
        kv_session = self.get_session(session_id, user_id)
        if kv_session is None:
            return None

        if kv_session.expires_at <= now:
            self.delete_session(session_id, user_id)
            return None

        if kv_session.version != CURRENT_SESSION_VERSION:
            kv_session.user = self._load_user(user_id)
            kv_session.version = CURRENT_SESSION_VERSION
            self._write(kv_session, now)

        if self.credit_service and is_refresh_due(kv_session.user.last_credit_refresh_at, now):
            credits = self.credit_service.add_free_monthly_credits_if_needed(
                user_id,
                kv_session.user.last_credit_refresh_at,
                kv_session.user.current_credits,
                self.settings_service.snapshot(),
                now=now,
            )
            # The grant rewrote the stored snapshots; reload ours
            kv_session = self.get_session(session_id, user_id) or kv_session
            kv_session.user.current_credits = credits

        return kv_session


# Default wiring: balance changes refresh the cached sessions
kv_store = create_kv_store(settings.kv_url)
session_store = SessionStore(kv_store, credit_service=credit_service)
credit_service.on_balance_change = session_store.update_all_sessions_of_user
