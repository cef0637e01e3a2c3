"""Engine and transactional session scope for the relational store."""

from contextlib import contextmanager
from typing import Any, Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker

from creditflow.logging_config import get_logger
from creditflow.settings import settings
from creditflow.storage.models import Base

logger = get_logger(__name__)


def _engine_options(database_url: str) -> dict[str, Any]:
    options: dict[str, Any] = {"pool_pre_ping": True, "echo": settings.log_level.upper() == "DEBUG"}
    if make_url(database_url).get_backend_name() == "sqlite":
        # Request threads and the CLI share connections; wait on the write lock instead of failing
        options["connect_args"] = {"check_same_thread": False, "timeout": 30}
    return options


class Database:
    """Owns the engine and hands out unit-of-work sessions.

    Every ledger mutation runs inside ``session()``: the block commits as a
    whole or not at all.
    """

    def __init__(self, database_url: str | None = None):
        self.database_url = database_url or settings.database_url
        self.engine = create_engine(self.database_url, **_engine_options(self.database_url))
        self.SessionLocal = sessionmaker(
            bind=self.engine,
            autoflush=False,
            expire_on_commit=False,
        )
        logger.info("database_initialized", url=self.engine.url.render_as_string(hide_password=True))

    def create_tables(self) -> None:
        # Importing the model modules registers their tables on Base.metadata
        import creditflow.auth.models  # noqa: F401
        import creditflow.credits.models  # noqa: F401
        import creditflow.referral.models  # noqa: F401

        Base.metadata.create_all(bind=self.engine)
        logger.info("tables_created", tables=len(Base.metadata.tables))

    def drop_tables(self) -> None:
        Base.metadata.drop_all(bind=self.engine)
        logger.warning("tables_dropped")

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Transactional scope: commit on success, roll back on any error.

        Yields:
            Database session
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


db = Database()


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a transactional session."""
    with db.session() as session:
        yield session
