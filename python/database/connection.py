"""
Database Connection Management for the Controlled Substance Compliance Engine

The async engine backs the API and the CLI; each request or command runs
inside one session scope that commits on success and rolls back on error.
Batch scripts (reference data loading) get a synchronous engine instead.

Engine creation and health checks retry transient OperationalErrors
with tenacity. Settings come from DATABASE_URL or the DB_* variables.
"""

import os
import logging
from typing import Generator, Optional, AsyncGenerator, Callable
from contextlib import contextmanager, asynccontextmanager
from functools import lru_cache
from dataclasses import dataclass

from sqlalchemy import create_engine, text, Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
from sqlalchemy.exc import SQLAlchemyError, OperationalError
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncSession,
    async_sessionmaker,
    AsyncEngine
)
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

from database.models import Base

logger = logging.getLogger(__name__)


# ============================================
# CONFIGURATION
# ============================================

@dataclass
class DatabaseSettings:
    """Database configuration settings."""
    host: str = "localhost"
    port: int = 5432
    database: str = "compliance"
    user: str = "compliance_user"
    password: str = "compliance_password"
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800
    echo: bool = False
    url: Optional[str] = None

    @classmethod
    def from_env(cls) -> 'DatabaseSettings':
        """Create settings from environment variables."""
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "compliance"),
            user=os.getenv("DB_USER", "compliance_user"),
            password=os.getenv("DB_PASSWORD", "compliance_password"),
            pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
            pool_recycle=int(os.getenv("DB_POOL_RECYCLE", "1800")),
            echo=os.getenv("DB_ECHO", "false").lower() == "true",
            url=os.getenv("DATABASE_URL") or None
        )

    def get_url(self, async_mode: bool = False) -> str:
        """Build database URL."""
        # A full URL wins over the individual parts
        if self.url:
            if async_mode and self.url.startswith("postgresql://"):
                return self.url.replace("postgresql://", "postgresql+asyncpg://", 1)
            if async_mode and self.url.startswith("sqlite:///"):
                return self.url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
            return self.url

        driver = "postgresql+asyncpg" if async_mode else "postgresql+psycopg2"
        return f"{driver}://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"

    def is_sqlite(self) -> bool:
        return bool(self.url) and self.url.startswith("sqlite")


@lru_cache()
def get_settings() -> DatabaseSettings:
    """Get cached database settings."""
    return DatabaseSettings.from_env()


def get_pool_settings(settings: Optional[DatabaseSettings] = None) -> dict:
    """
    Get connection pool settings.

    Returns:
        Dictionary of pool settings (empty for SQLite)
    """
    settings = settings or get_settings()
    if settings.is_sqlite():
        return {}
    return {
        "pool_size": settings.pool_size,
        "max_overflow": settings.max_overflow,
        "pool_timeout": settings.pool_timeout,
        "pool_recycle": settings.pool_recycle,
        "pool_pre_ping": True,
    }


# ============================================
# RETRY LOGIC
# ============================================

def create_retry_decorator(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10
) -> Callable:
    """
    Create a retry decorator for database operations.

    Works on plain functions and coroutines alike.

    Args:
        max_attempts: Maximum number of retry attempts
        min_wait: Minimum wait time between retries (seconds)
        max_wait: Maximum wait time between retries (seconds)

    Returns:
        Retry decorator
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(OperationalError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )


# Create default retry decorator
db_retry = create_retry_decorator()


# ============================================
# UNIT OF WORK PATTERN
# ============================================

class AsyncUnitOfWork:
    """
    Async Unit of Work pattern for explicit transaction management.

    Usage:
        async with AsyncUnitOfWork(async_session_factory) as uow:
            repos = ComplianceRepositories(uow.session)
            await repos.licences.create(data)
            await uow.commit()
    """

    def __init__(self, session_factory):
        self._session_factory = session_factory
        self._session: Optional[AsyncSession] = None

    async def __aenter__(self) -> 'AsyncUnitOfWork':
        self._session = self._session_factory()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            await self.rollback()
        await self.close()

    @property
    def session(self) -> AsyncSession:
        """Get the current session."""
        if self._session is None:
            raise RuntimeError("AsyncUnitOfWork not started. Use as context manager.")
        return self._session

    async def commit(self) -> None:
        """Explicitly commit the transaction."""
        if self._session:
            await self._session.commit()

    async def rollback(self) -> None:
        """Rollback the transaction."""
        if self._session:
            await self._session.rollback()

    async def close(self) -> None:
        """Close the session."""
        if self._session:
            await self._session.close()
            self._session = None


# ============================================
# DATABASE SESSION PROVIDER
# ============================================

class DatabaseSessionProvider:
    """
    Owns the engines and hands out session scopes.

    Usage:
        db_provider = DatabaseSessionProvider()
        await db_provider.init()

        async with db_provider.async_session_scope() as session:
            service = ComplianceService.from_session(session)
    """

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        engine: Optional[Engine] = None,
        async_engine: Optional[AsyncEngine] = None
    ):
        """
        Initialize the database session provider.

        Args:
            settings: Database settings (uses env if not provided)
            engine: Pre-created synchronous engine (for scripts and testing)
            async_engine: Pre-created async engine (for testing)
        """
        self._settings = settings or get_settings()
        self._engine = engine
        self._async_engine = async_engine
        self._session_factory: Optional[sessionmaker] = None
        self._async_session_factory: Optional[async_sessionmaker] = None
        self._initialized = False

    async def init(self, echo: Optional[bool] = None) -> None:
        """
        Initialize the async engine and session factory.

        Args:
            echo: Override echo setting for SQL logging
        """
        if self._initialized:
            return

        if echo is not None:
            self._settings.echo = echo

        if self._async_engine is None:
            self._async_engine = await self._create_async_engine_with_retry()

        self._async_session_factory = async_sessionmaker(
            bind=self._async_engine,
            class_=AsyncSession,
            autoflush=False,
            expire_on_commit=False
        )

        self._initialized = True
        logger.info("Database session provider initialized")

    def init_sync(self) -> None:
        """Initialize the synchronous engine used by batch scripts."""
        if self._session_factory is not None:
            return

        if self._engine is None:
            self._engine = self._create_engine_with_retry()

        self._session_factory = sessionmaker(
            bind=self._engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False
        )
        logger.info("Synchronous database engine initialized")

    @db_retry
    def _create_engine_with_retry(self) -> Engine:
        """Create synchronous database engine with retry logic."""
        url = self._settings.get_url(async_mode=False)
        pool_settings = get_pool_settings(self._settings)

        if pool_settings:
            engine = create_engine(url, echo=self._settings.echo, poolclass=QueuePool, **pool_settings)
        else:
            engine = create_engine(url, echo=self._settings.echo)

        # Verify connection
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))

        return engine

    @db_retry
    async def _create_async_engine_with_retry(self) -> AsyncEngine:
        """Create async database engine and verify it with retry logic."""
        url = self._settings.get_url(async_mode=True)
        pool_settings = get_pool_settings(self._settings)

        engine = create_async_engine(url, echo=self._settings.echo, **pool_settings)

        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

        return engine

    @property
    def engine(self) -> Engine:
        """Get the synchronous SQLAlchemy engine."""
        if self._engine is None:
            raise RuntimeError("Synchronous database not initialized. Call init_sync() first.")
        return self._engine

    @property
    def async_engine(self) -> AsyncEngine:
        """Get the async SQLAlchemy engine."""
        if self._async_engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._async_engine

    async def get_async_unit_of_work(self) -> AsyncUnitOfWork:
        """Get an async Unit of Work for explicit transaction management."""
        if self._async_session_factory is None:
            await self.init()
        return AsyncUnitOfWork(self._async_session_factory)

    @asynccontextmanager
    async def async_session_scope(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Context manager for async session with auto-commit/rollback.

        Usage:
            async with db_provider.async_session_scope() as session:
                session.add(entity)
                # Auto-commits on exit, rollbacks on exception
        """
        if self._async_session_factory is None:
            await self.init()

        session = self._async_session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Synchronous session with auto-commit/rollback, for batch scripts."""
        if self._session_factory is None:
            self.init_sync()

        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    async def create_tables(self) -> None:
        """Create all database tables."""
        if self._async_engine is None:
            await self.init()
        async with self._async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

    @db_retry
    async def _ping(self) -> None:
        async with self.async_session_scope() as session:
            await session.execute(text("SELECT 1"))

    async def health_check(self) -> bool:
        """
        Check if database connection is healthy.

        Returns:
            True if connection is healthy, False otherwise
        """
        try:
            await self._ping()
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False

    async def close(self) -> None:
        """Close database connections and clean up."""
        if self._async_engine:
            await self._async_engine.dispose()
            logger.info("Async database engine disposed")
        if self._engine:
            self._engine.dispose()
            logger.info("Database engine disposed")
        self._initialized = False


# ============================================
# GLOBAL PROVIDER INSTANCE
# ============================================

# Default database provider instance
_db_provider: Optional[DatabaseSessionProvider] = None


def get_db_provider() -> DatabaseSessionProvider:
    """
    Get the global database provider instance.

    Returns:
        DatabaseSessionProvider instance
    """
    global _db_provider
    if _db_provider is None:
        _db_provider = DatabaseSessionProvider()
    return _db_provider


async def init_db(echo: bool = False) -> DatabaseSessionProvider:
    """
    Initialize the global database provider.

    Call this during application startup.

    Args:
        echo: If True, log all SQL statements

    Returns:
        DatabaseSessionProvider instance
    """
    provider = get_db_provider()
    await provider.init(echo=echo)
    return provider


async def close_db() -> None:
    """
    Close the global database provider.

    Call this during application shutdown.
    """
    global _db_provider
    if _db_provider:
        await _db_provider.close()
        _db_provider = None


# ============================================
# PYTEST FIXTURES SUPPORT
# ============================================

def create_test_provider(
    async_engine: Optional[AsyncEngine] = None,
    settings: Optional[DatabaseSettings] = None,
    engine: Optional[Engine] = None
) -> DatabaseSessionProvider:
    """
    Create a database provider for testing.

    Args:
        async_engine: Pre-created async engine (e.g., aiosqlite for unit tests)
        settings: Custom settings for testing
        engine: Pre-created synchronous engine

    Returns:
        DatabaseSessionProvider configured for testing
    """
    provider = DatabaseSessionProvider(
        settings=settings or DatabaseSettings(url="sqlite:///:memory:"),
        engine=engine,
        async_engine=async_engine
    )
    return provider
