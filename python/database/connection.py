"""
Database Connection Management for ATS Verify

Resolves the database URL from config.yaml and the environment, builds the
engine (PostgreSQL in production, SQLite for local runs and tests) and hands
out sessions:

- get_db / get_db_provider: FastAPI dependencies
- DatabaseSessionProvider.session_scope: commit-or-rollback block for the CLI
- init_db / close_db: application startup and shutdown

Environment variables take precedence over the `database` section of
config.yaml: DATABASE_URL, or DB_HOST, DB_PORT, DB_NAME, DB_USER and
DB_PASSWORD, plus DB_POOL_SIZE and DB_ECHO.
"""

import os
import logging
from typing import Generator, Optional
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy import create_engine, event, text, Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from sqlalchemy.exc import SQLAlchemyError, OperationalError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

from config_manager import DatabaseConfig
from database.models import Base

logger = logging.getLogger(__name__)


# ============================================
# SETTINGS
# ============================================

@dataclass
class DatabaseSettings:
    """Resolved connection settings."""
    url: str
    pool_size: int = 5
    max_overflow: int = 10
    pool_recycle: int = 1800
    echo: bool = False

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @classmethod
    def from_config(cls, database: Optional[DatabaseConfig] = None) -> 'DatabaseSettings':
        """Merge the config.yaml database section with environment overrides."""
        database = database or DatabaseConfig()
        return cls(
            url=get_database_url(database),
            pool_size=int(os.getenv("DB_POOL_SIZE", database.pool_size)),
            echo=os.getenv("DB_ECHO", str(database.echo)).lower() == "true"
        )


def get_database_url(database: Optional[DatabaseConfig] = None) -> str:
    """Build the SQLAlchemy URL; DATABASE_URL wins, then a configured url."""
    database = database or DatabaseConfig()

    full_url = os.getenv("DATABASE_URL") or database.url
    if full_url:
        return full_url

    host = os.getenv("DB_HOST", database.host)
    port = os.getenv("DB_PORT", str(database.port))
    name = os.getenv("DB_NAME", database.name)
    user = os.getenv("DB_USER", database.user)
    password = os.getenv("DB_PASSWORD", database.password)
    return f"postgresql+psycopg2://{user}:{password}@{host}:{port}/{name}"


# Transient connection failures at startup (database container still booting)
db_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(OperationalError),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True
)


def enable_sqlite_savepoints(engine: Engine) -> None:
    """Let SQLAlchemy emit BEGIN itself so begin_nested() works on pysqlite.

    Auto-flagging isolates every profile write in a SAVEPOINT; the pysqlite
    driver otherwise opens transactions lazily and breaks nesting.
    """

    @event.listens_for(engine, "connect")
    def on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_sqlite_engine(url: str = "sqlite://", echo: bool = False) -> Engine:
    """SQLite engine usable from several threads.

    In-memory databases share one connection, so every session (including
    the ones FastAPI opens in its worker threads) sees the same data.
    """
    options = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        options["poolclass"] = StaticPool

    engine = create_engine(url, echo=echo, **options)
    enable_sqlite_savepoints(engine)
    return engine


# ============================================
# SESSION PROVIDER
# ============================================

class DatabaseSessionProvider:
    """
    Owns the engine and session factory.

    Usage:
        provider = init_db()

        @app.get("/api/v1/risks")
        def list_risks(db: Session = Depends(provider.get_session)):
            return RiskProfileRepository(db).list_all()
    """

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        engine: Optional[Engine] = None
    ):
        self._settings = settings or DatabaseSettings.from_config()
        self._engine = engine
        self._session_factory: Optional[sessionmaker] = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def settings(self) -> DatabaseSettings:
        return self._settings

    def init(self, echo: Optional[bool] = None) -> None:
        """Create the engine (unless one was injected) and the session factory."""
        if self._initialized:
            return

        if echo is not None:
            self._settings.echo = echo

        if self._engine is None:
            self._engine = self._connect()

        # Results are read after commit when building API responses
        self._session_factory = sessionmaker(
            bind=self._engine,
            autoflush=False,
            expire_on_commit=False
        )

        self._initialized = True
        logger.info("Database ready (%s)", self._engine.dialect.name)

    @db_retry
    def _connect(self) -> Engine:
        settings = self._settings

        if settings.is_sqlite:
            engine = create_sqlite_engine(settings.url, echo=settings.echo)
        else:
            engine = create_engine(
                settings.url,
                echo=settings.echo,
                pool_size=settings.pool_size,
                max_overflow=settings.max_overflow,
                pool_recycle=settings.pool_recycle,
                pool_pre_ping=True
            )

        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))

        return engine

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    def get_session(self) -> Generator[Session, None, None]:
        """
        FastAPI dependency yielding a session.

        The endpoint commits explicitly; anything left uncommitted is
        rolled back when the session closes.
        """
        if not self._initialized:
            self.init()

        session = self._session_factory()
        try:
            yield session
        finally:
            session.close()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Session that commits on success and rolls back on error."""
        if not self._initialized:
            self.init()

        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_tables(self) -> None:
        """Create the schema directly (local runs; production uses Alembic)."""
        Base.metadata.create_all(self.engine)
        logger.info("Database tables created")

    def health_check(self) -> bool:
        try:
            with self.session_scope() as session:
                session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error("Database health check failed: %s", e)
            return False

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            logger.info("Database engine disposed")
        self._initialized = False


# ============================================
# GLOBAL PROVIDER
# ============================================

_db_provider: Optional[DatabaseSessionProvider] = None


def get_db_provider() -> DatabaseSessionProvider:
    """FastAPI dependency returning the process-wide provider."""
    global _db_provider
    if _db_provider is None:
        _db_provider = DatabaseSessionProvider()
    return _db_provider


def init_db(echo: bool = False, database: Optional[DatabaseConfig] = None) -> DatabaseSessionProvider:
    """
    Initialize the process-wide provider.

    Args:
        echo: Log all SQL statements
        database: config.yaml database section (environment still wins)
    """
    global _db_provider
    if _db_provider is None:
        _db_provider = DatabaseSessionProvider(settings=DatabaseSettings.from_config(database))
    _db_provider.init(echo=echo)
    return _db_provider


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a session from the process-wide provider."""
    yield from get_db_provider().get_session()


def close_db() -> None:
    global _db_provider
    if _db_provider is not None:
        _db_provider.close()
        _db_provider = None


def create_test_provider(engine: Optional[Engine] = None) -> DatabaseSessionProvider:
    """Provider bound to a pre-built engine (in-memory SQLite in tests)."""
    return DatabaseSessionProvider(
        settings=DatabaseSettings(url="sqlite://"),
        engine=engine
    )
