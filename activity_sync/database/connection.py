"""
Database Connection Module
Handles connection pooling and session management using SQLAlchemy.
"""

import os
from contextlib import contextmanager
from typing import Generator, List, Optional

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from activity_sync.config_manager import ConfigManager
from activity_sync.utils.logger import get_logger

logger = get_logger(__name__)


class DatabaseConnection:
    """Manages database connections with connection pooling."""

    def __init__(self, url: Optional[str] = None):
        """
        Initialize the engine.

        Args:
            url: SQLAlchemy URL; built from the 'database' config section when omitted
        """
        self._engine: Engine = None
        self._session_factory = None
        self._initialize_engine(url)

    def _initialize_engine(self, url: Optional[str]) -> None:
        """Create SQLAlchemy engine with connection pooling."""
        db_config = ConfigManager().get_database_config()
        db_url = url or self._build_connection_url(db_config)
        echo = os.getenv('SQL_ECHO', 'false').lower() == 'true'

        if db_url.startswith('sqlite'):
            # SQLite: allow use from scheduler worker threads, wait on write locks
            self._engine = create_engine(
                db_url,
                connect_args={'check_same_thread': False, 'timeout': 30},
                echo=echo
            )
            event.listen(self._engine, 'connect', _configure_sqlite_connection)
            event.listen(self._engine, 'begin', _begin_sqlite_transaction)
        else:
            logger.info(f"Initializing database connection to {db_config.get('host')}:{db_config.get('port')}/{db_config.get('name')}")
            self._engine = create_engine(
                db_url,
                pool_size=db_config.get('pool_size', 5),
                max_overflow=db_config.get('max_overflow', 10),
                pool_timeout=db_config.get('pool_timeout', 30),
                pool_pre_ping=True,  # Enable connection health checks
                echo=echo
            )

        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)

        logger.info("Database engine initialized successfully")

    def _build_connection_url(self, db_config: dict) -> str:
        """Build connection URL from config."""
        if db_config.get('url'):
            return db_config['url']

        host = db_config.get('host', 'localhost')
        port = db_config.get('port', 5432)
        name = db_config.get('name', 'activity_sync')
        user = db_config.get('user', 'activity_sync')
        password = db_config.get('password', '')

        return f"postgresql+psycopg2://{user}:{password}@{host}:{port}/{name}"

    @property
    def engine(self) -> Engine:
        """Get the SQLAlchemy engine."""
        return self._engine

    @property
    def dialect_name(self) -> str:
        """Name of the backing database dialect."""
        return self._engine.dialect.name

    def get_session(self) -> Session:
        """Create a new database session."""
        return self._session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Provide a transactional scope around a series of operations.

        Usage:
            with db.session_scope() as session:
                session.query(...)
        """
        session = self.get_session()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.debug(f"Database session rolled back: {e}")
            raise
        finally:
            session.close()

    def create_schema(self) -> None:
        """Create all tables that do not exist yet."""
        from activity_sync.database.models import Base
        Base.metadata.create_all(self._engine)

    def drop_schema(self) -> None:
        """Drop every table of the sync service."""
        from activity_sync.database.models import Base
        Base.metadata.drop_all(self._engine)
        logger.warning("All sync tables dropped")

    def table_names(self) -> List[str]:
        return sorted(inspect(self._engine).get_table_names())

    def check_connection(self) -> bool:
        """
        Check if database connection is healthy.

        Returns:
            bool: True if connection is healthy, False otherwise.
        """
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.debug("Database connection health check passed")
            return True
        except Exception as e:
            logger.error(f"Database connection health check failed: {e}")
            return False

    def dispose(self) -> None:
        """Dispose of the connection pool."""
        if self._engine:
            self._engine.dispose()
            logger.info("Database connection pool disposed")


def _configure_sqlite_connection(dbapi_connection, connection_record) -> None:
    # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs behave
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _begin_sqlite_transaction(conn) -> None:
    # Take the write lock up front; concurrent writers queue on the busy timeout
    conn.exec_driver_sql("BEGIN IMMEDIATE")


_default_db: Optional[DatabaseConnection] = None


def get_db() -> DatabaseConnection:
    """Get the process-wide database connection instance."""
    global _default_db
    if _default_db is None:
        _default_db = DatabaseConnection()
    return _default_db


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """
    Convenience function to get a database session.

    Usage:
        with get_session() as session:
            session.query(...)
    """
    with get_db().session_scope() as session:
        yield session
