import os
import tempfile
from datetime import datetime

import pytest

# Settings are read at import time; point the global database at a scratch file
_TMP_DIR = tempfile.mkdtemp(prefix="creditflow-tests-")
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'global.db')}"
os.environ["KV_URL"] = "memory://"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-min-32-characters-long"
os.environ["SENDGRID_API_KEY"] = ""
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["FREE_MONTHLY_CREDITS"] = "50"
os.environ["LOG_LEVEL"] = "WARNING"


@pytest.fixture
def database(tmp_path):
    from creditflow.storage.db import Database

    database = Database(f"sqlite:///{tmp_path / 'test.db'}")
    database.create_tables()
    yield database
    database.engine.dispose()


@pytest.fixture
def settings_service(database):
    from creditflow.credits.app_settings import AppSettingsService

    return AppSettingsService(database)


@pytest.fixture
def kv():
    from creditflow.storage.kv import MemoryKVStore

    return MemoryKVStore()


@pytest.fixture
def session_store(kv, database, settings_service):
    from creditflow.sessions.store import SessionStore

    return SessionStore(kv, database, settings_service=settings_service)


@pytest.fixture
def credit_service(database, session_store):
    from creditflow.credits.service import CreditService

    service = CreditService(database, on_balance_change=session_store.update_all_sessions_of_user)
    session_store.credit_service = service
    return service


@pytest.fixture
def referral_service(database, credit_service):
    from creditflow.referral.service import ReferralService

    return ReferralService(database, credit_service)


@pytest.fixture
def auth_service(database):
    from creditflow.auth.local import LocalAuthService

    return LocalAuthService(database)


@pytest.fixture
def signup_service(database, auth_service, credit_service, referral_service, settings_service):
    from creditflow.auth.signup import SignupService

    return SignupService(
        database,
        auth_service=auth_service,
        credit_service=credit_service,
        referral_service=referral_service,
        settings_service=settings_service,
    )


@pytest.fixture
def marketplace_service(database, credit_service):
    from creditflow.marketplace.service import MarketplaceService

    return MarketplaceService(database, credit_service)


@pytest.fixture
def make_user(database):
    """Factory inserting a bare account; returns its id."""
    from creditflow.auth.models import UserAccount

    counter = {"n": 0}

    def _make_user(email: str | None = None, **fields) -> int:
        counter["n"] += 1
        fields.setdefault("last_credit_refresh_at", datetime.utcnow())
        with database.session() as session:
            user = UserAccount(email=email or f"user{counter['n']}@example.com", **fields)
            session.add(user)
        return user.id

    return _make_user


@pytest.fixture
def entries(database):
    """Return a user's ledger entries, oldest first."""
    from creditflow.credits.models import CreditTransaction

    def _entries(user_id: int):
        with database.session() as session:
            return session.query(CreditTransaction).filter(
                CreditTransaction.user_id == user_id
            ).order_by(CreditTransaction.id).all()

    return _entries


@pytest.fixture
def global_db():
    """The module-level database used by the API and the CLI, emptied per test."""
    from creditflow.sessions.store import kv_store
    from creditflow.storage.db import db

    db.create_tables()
    db.drop_tables()
    db.create_tables()
    kv_store._data.clear()
    yield db
