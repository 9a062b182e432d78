"""
Database Connection Management for the Driver Compliance Service

This module provides:
- Environment-based database settings
- Connection pooling with proper configuration
- Engine creation with retry logic (tenacity)
- Tenant-scoped sessions: the "scoped handle" every compliance operation receives
- FastAPI-friendly provider object and test helpers

Uses SQLAlchemy 2.0 style with proper typing support.
"""

import os
import re
import logging
import uuid
from typing import Generator, Optional, Callable
from contextlib import contextmanager
from functools import lru_cache
from dataclasses import dataclass

from sqlalchemy import create_engine, event, text, Engine
from sqlalchemy.orm import sessionmaker, Session, SessionTransaction
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.exc import OperationalError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

from database.models import Base
from database.monitoring import check_health, HealthStatus

logger = logging.getLogger(__name__)

_IP_PATTERN = re.compile(r'^[0-9a-f.:]+$', re.IGNORECASE)

SYSTEM_ACTOR = "system"


class TenantScopeError(ValueError):
    """Raised when a tenant scope cannot be built from caller input."""
    pass


# ============================================
# CONFIGURATION
# ============================================

@dataclass
class DatabaseSettings:
    """Database configuration settings."""
    host: str = "localhost"
    port: int = 5432
    database: str = "compliance_database"
    user: str = "compliance_user"
    password: str = "compliance_password"
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800
    echo: bool = False

    @classmethod
    def from_env(cls) -> 'DatabaseSettings':
        """Create settings from environment variables."""
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "compliance_database"),
            user=os.getenv("DB_USER", "compliance_user"),
            password=os.getenv("DB_PASSWORD", "compliance_password"),
            pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
            pool_recycle=int(os.getenv("DB_POOL_RECYCLE", "1800")),
            echo=os.getenv("DB_ECHO", "false").lower() == "true"
        )

    def get_url(self) -> str:
        """Build database URL."""
        # Check for full URL first
        full_url = os.getenv("DATABASE_URL")
        if full_url:
            return full_url

        return (
            f"postgresql+psycopg2://{self.user}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )


@lru_cache()
def get_settings() -> DatabaseSettings:
    """Get cached database settings."""
    return DatabaseSettings.from_env()


def get_pool_settings(settings: Optional[DatabaseSettings] = None) -> dict:
    """
    Get connection pool settings.

    Returns:
        Dictionary of pool settings
    """
    settings = settings or get_settings()
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
# TENANT SCOPE (SCOPED HANDLE)
# ============================================

@dataclass(frozen=True)
class TenantScope:
    """
    Identity a transaction is scoped to.

    Passed explicitly to every operation; nothing reads tenant identity
    from ambient state.
    """
    tenant_id: uuid.UUID
    actor_id: str = SYSTEM_ACTOR
    ip_address: str = "127.0.0.1"

    def __post_init__(self):
        if not isinstance(self.tenant_id, uuid.UUID):
            raise TenantScopeError(f"tenant_id must be a UUID, got {self.tenant_id!r}")
        if not _IP_PATTERN.match(self.ip_address or ""):
            raise TenantScopeError("Invalid IP address format")

    @classmethod
    def parse(
        cls,
        tenant_id: Optional[str],
        actor_id: Optional[str],
        ip_address: Optional[str] = None
    ) -> 'TenantScope':
        """
        Build a scope from untrusted string input (HTTP headers).

        Raises:
            TenantScopeError: If the tenant or actor id is missing or malformed
        """
        if not tenant_id or not actor_id:
            raise TenantScopeError("Tenant and user identity are required")
        try:
            tenant_uuid = uuid.UUID(tenant_id.strip())
            actor_uuid = uuid.UUID(actor_id.strip())
        except ValueError:
            raise TenantScopeError("Invalid UUID format in tenant context")
        return cls(
            tenant_id=tenant_uuid,
            actor_id=str(actor_uuid),
            ip_address=(ip_address or "127.0.0.1").strip()
        )

    @classmethod
    def system(cls, tenant_id: uuid.UUID) -> 'TenantScope':
        """Scope used by scheduled jobs."""
        return cls(tenant_id=tenant_id, actor_id=SYSTEM_ACTOR)


class ScopedSession:
    """
    A session bound to exactly one tenant for one transaction.

    This is the handle the compliance core consumes. Row visibility is the
    provider's responsibility; repositories add the tenant predicate from
    ``tenant_id`` and never take it from anywhere else.
    """

    def __init__(self, session: Session, scope: TenantScope):
        self.session = session
        self.scope = scope

    @property
    def tenant_id(self) -> uuid.UUID:
        return self.scope.tenant_id

    @property
    def dialect_name(self) -> str:
        return self.session.get_bind().dialect.name

    def savepoint(self) -> SessionTransaction:
        """Begin a nested transaction (SAVEPOINT)."""
        return self.session.begin_nested()

    def __repr__(self) -> str:
        return f"<ScopedSession(tenant_id={self.tenant_id}, actor='{self.scope.actor_id}')>"


def _apply_tenant_settings(session: Session, scope: TenantScope) -> None:
    """Set transaction-local tenant variables used by PostgreSQL RLS policies."""
    if session.get_bind().dialect.name != "postgresql":
        return

    session.execute(
        text(
            "SELECT set_config('app.current_tenant_id', :tenant_id, true), "
            "set_config('app.current_user_id', :user_id, true), "
            "set_config('app.current_user_ip', :user_ip, true)"
        ),
        {
            "tenant_id": str(scope.tenant_id),
            "user_id": scope.actor_id,
            "user_ip": scope.ip_address,
        }
    )


# ============================================
# DATABASE SESSION PROVIDER
# ============================================

class DatabaseSessionProvider:
    """
    Provides database sessions and tenant-scoped transactions.

    Usage:
        db_provider = DatabaseSessionProvider()
        db_provider.init()

        with db_provider.tenant_session(scope) as handle:
            evaluation = evaluator.evaluate(handle, driver_id)
    """

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        engine: Optional[Engine] = None
    ):
        """
        Initialize the database session provider.

        Args:
            settings: Database settings (uses env if not provided)
            engine: Pre-created engine (for testing)
        """
        self._settings = settings or get_settings()
        self._engine = engine
        self._session_factory: Optional[sessionmaker] = None
        self._initialized = False

    def init(self, echo: Optional[bool] = None) -> None:
        """
        Initialize database engine and session factory.

        Args:
            echo: Override echo setting for SQL logging
        """
        if self._initialized:
            return

        if echo is not None:
            self._settings.echo = echo

        # Create engine if not provided
        if self._engine is None:
            self._engine = self._create_engine_with_retry()

        self._session_factory = sessionmaker(
            bind=self._engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False
        )

        self._setup_event_listeners()

        self._initialized = True
        logger.info("Database session provider initialized")

    @db_retry
    def _create_engine_with_retry(self) -> Engine:
        """Create database engine with retry logic."""
        url = self._settings.get_url()

        engine = create_engine(
            url,
            echo=self._settings.echo,
            poolclass=QueuePool,
            **get_pool_settings(self._settings)
        )

        # Verify connection
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))

        return engine

    def _setup_event_listeners(self) -> None:
        """Set up SQLAlchemy event listeners for logging and debugging."""

        @event.listens_for(self._engine, "checkout")
        def on_checkout(dbapi_connection, connection_record, connection_proxy):
            logger.debug("Connection checked out from pool")

        @event.listens_for(self._engine, "checkin")
        def on_checkin(dbapi_connection, connection_record):
            logger.debug("Connection returned to pool")

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def engine(self) -> Engine:
        """Get the SQLAlchemy engine."""
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        """Get the session factory."""
        if self._session_factory is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._session_factory

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Context manager for an unscoped session with auto-commit/rollback.

        Only used for cross-tenant reads such as tenant enumeration.
        """
        if self._session_factory is None:
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

    @contextmanager
    def tenant_session(self, scope: TenantScope) -> Generator[ScopedSession, None, None]:
        """
        One transaction scoped to one tenant.

        Commits on normal exit, rolls back on exception. Each call gets its
        own session and connection.

        Usage:
            with db_provider.tenant_session(scope) as handle:
                stats = generator.run(handle)
        """
        if self._session_factory is None:
            self.init()

        session = self._session_factory()
        try:
            _apply_tenant_settings(session, scope)
            yield ScopedSession(session, scope)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_tables(self) -> None:
        """Create all database tables."""
        if self._engine is None:
            self.init()
        Base.metadata.create_all(self._engine)
        logger.info("Database tables created")

    def health_check(self) -> HealthStatus:
        """Check database connectivity and pool state."""
        if self._session_factory is None:
            self.init()
        return check_health(self._session_factory)

    def close(self) -> None:
        """Close database connections and clean up."""
        if self._engine:
            self._engine.dispose()
            logger.info("Database engine disposed")
        self._initialized = False


# ============================================
# GLOBAL PROVIDER INSTANCE
# ============================================

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


def set_db_provider(provider: Optional[DatabaseSessionProvider]) -> None:
    """Replace the global provider (application startup and tests)."""
    global _db_provider
    _db_provider = provider


def init_db(echo: bool = False) -> DatabaseSessionProvider:
    """
    Initialize the global database provider.

    Call this during application startup.
    """
    provider = get_db_provider()
    provider.init(echo=echo)
    return provider


def close_db() -> None:
    """
    Close the global database provider.

    Call this during application shutdown.
    """
    global _db_provider
    if _db_provider:
        _db_provider.close()
        _db_provider = None


# ============================================
# PYTEST FIXTURES SUPPORT
# ============================================

def create_sqlite_engine(url: str = "sqlite://") -> Engine:
    """
    Create a SQLite engine usable by the compliance core in tests.

    pysqlite's own transaction handling breaks SAVEPOINT, so transactions
    are emitted explicitly. BEGIN IMMEDIATE serializes writers across
    threads instead of failing with "database is locked" on upgrade.

    Args:
        url: "sqlite://" for a shared in-memory database, or a file URL
    """
    if url in ("sqlite://", "sqlite:///:memory:"):
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool
        )
    else:
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30}
        )

    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def create_test_provider(
    engine: Optional[Engine] = None,
    settings: Optional[DatabaseSettings] = None
) -> DatabaseSessionProvider:
    """
    Create a database provider for testing.

    Args:
        engine: Pre-created engine (defaults to in-memory SQLite)
        settings: Custom settings for testing

    Returns:
        Initialized DatabaseSessionProvider with all tables created
    """
    provider = DatabaseSessionProvider(
        settings=settings or DatabaseSettings(),
        engine=engine or create_sqlite_engine()
    )
    provider.init()
    provider.create_tables()
    return provider
