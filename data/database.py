"""
Database engine and session handling for the diagram store.

The default URL comes from ``Settings.database_url``. SQLite databases get
foreign keys switched on so deleting a document also removes its pages,
questions and diagrams at the database level.
"""
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from config.logging_config import get_logger
from config.settings import settings
from .db_models import Base

logger = get_logger(__name__)


def _is_memory_url(url: str) -> bool:
    return url in ('sqlite://', 'sqlite:///:memory:') or 'mode=memory' in url


def _enable_sqlite_foreign_keys(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _set_pragma(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


class DatabaseManager:
    """Owns the engine and session factory for one database URL."""

    def __init__(self, database_url: Optional[str] = None):
        """
        Args:
            database_url: SQLAlchemy URL. Falls back to ``Settings.database_url``.
        """
        self.database_url = database_url or settings.database_url

        if self.database_url.startswith('sqlite'):
            # Pipeline work runs in worker threads; in-memory databases must
            # keep a single connection or each session sees an empty schema
            engine_kwargs = {'connect_args': {'check_same_thread': False}}
            if _is_memory_url(self.database_url):
                engine_kwargs['poolclass'] = StaticPool
            self.engine = create_engine(self.database_url, echo=False, **engine_kwargs)
            _enable_sqlite_foreign_keys(self.engine)
        else:
            self.engine = create_engine(self.database_url, echo=False, pool_pre_ping=True)

        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=self.engine
        )

    @property
    def is_sqlite(self) -> bool:
        return self.engine.dialect.name == 'sqlite'

    def create_tables(self):
        """Create all database tables."""
        Base.metadata.create_all(bind=self.engine)
        logger.info("Database tables created at: %s", self.database_url)

    def drop_tables(self):
        """Drop all database tables. Use with caution!"""
        Base.metadata.drop_all(bind=self.engine)
        logger.warning("Database tables dropped from: %s", self.database_url)

    def table_counts(self) -> dict:
        """Row count per table, in dependency order."""
        with self.session() as session:
            return {
                table.name: session.query(table).count()
                for table in Base.metadata.sorted_tables
            }

    def get_session(self) -> Session:
        """New unmanaged session; the caller closes it. Prefer ``session()``."""
        return self.SessionLocal()

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Transactional scope: commit on success, roll back on any exception.

        Usage:
            with db_manager.session() as session:
                storage = DiagramStorageService(session)
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


# Global database manager instance
_db_manager = None


def get_db_manager(database_url: Optional[str] = None) -> DatabaseManager:
    """
    Get or create global database manager instance.

    Args:
        database_url: Optional database URL. Only used on first call.
    """
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager(database_url)
    return _db_manager


def set_db_manager(manager: Optional[DatabaseManager]) -> None:
    """Replace the global database manager (tests, alternate entry points)."""
    global _db_manager
    _db_manager = manager


def init_database(database_url: Optional[str] = None) -> DatabaseManager:
    """Create all tables on the global manager and return it."""
    db_manager = get_db_manager(database_url)
    db_manager.create_tables()
    return db_manager


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Transactional scope on the global manager."""
    with get_db_manager().session() as session:
        yield session


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency yielding a session from the global manager.

    Usage:
        @app.get("/questions/{question_id}/coordinates")
        def get_coordinates(question_id: str, db: Session = Depends(get_db)):
            ...
    """
    with session_scope() as session:
        yield session
