"""Database connection and session management."""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

import backoff
from sqlalchemy import create_engine, event, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Owns the SQLAlchemy engine and hands out transactional sessions.

    Usage:
        db = DatabaseManager("postgresql://...")
        with db.get_session() as session:
            session.add(row)
        # committed on exit, rolled back on exception
    """

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        engine_kwargs = {"echo": echo, "future": True}

        if database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in database_url or database_url == "sqlite://":
                # One shared connection so every session sees the same in-memory DB
                engine_kwargs["poolclass"] = StaticPool
        else:
            engine_kwargs["pool_pre_ping"] = True

        self.engine = create_engine(database_url, **engine_kwargs)

        if database_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)

        self._session_factory = sessionmaker(
            bind=self.engine, expire_on_commit=False,
        )

    def init_db(self) -> None:
        """Create all tables that do not exist yet."""
        Base.metadata.create_all(self.engine)
        logger.info("Database tables initialized")

    def drop_all(self) -> None:
        Base.metadata.drop_all(self.engine)

    @contextmanager
    def get_session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def dispose(self) -> None:
        self.engine.dispose()


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


_db_manager: Optional[DatabaseManager] = None


def get_database_manager(database_url: Optional[str] = None) -> DatabaseManager:
    """Return the process-wide DatabaseManager, creating it on first use."""
    global _db_manager
    if _db_manager is None:
        if database_url is None:
            from ...setting import get_settings
            settings = get_settings()
            database_url = settings.database.url
        _db_manager = DatabaseManager(database_url)
    return _db_manager


def wait_for_db(db_manager: DatabaseManager, max_tries: int = 10, max_time: float = 60) -> bool:
    """Block until the database accepts connections.

    Raises:
        OperationalError: if the database is still unreachable after retries
    """

    def _log_backoff(details: dict):
        logger.warning(
            f"Database not ready (attempt {details['tries']}/{max_tries}), "
            f"retrying in {details['wait']:.1f}s"
        )

    @backoff.on_exception(
        backoff.expo,
        OperationalError,
        max_tries=max_tries,
        max_time=max_time,
        on_backoff=_log_backoff,
    )
    def _ping():
        return db_manager.ping()

    result = _ping()
    logger.info("Database is available")
    return result
