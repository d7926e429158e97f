"""
SwingDesk Database Connection Manager
Database connection management with SQLAlchemy session pooling and thread-safe setup
"""

import logging
import time
from contextlib import contextmanager
from threading import Lock
from typing import Optional, Dict, Any, Generator, Callable, TypeVar
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import DisconnectionError, OperationalError, TimeoutError, SQLAlchemyError
from sqlalchemy.pool import QueuePool, StaticPool
import sqlite3

from .models import Base
from . import trading_models  # noqa: F401  (registers the trading tables on Base.metadata)

logger = logging.getLogger(__name__)

T = TypeVar('T')


class DatabaseConfig:
    """Database configuration settings"""

    def __init__(self,
                 database_url: str = None,
                 pool_size: int = 10,
                 max_overflow: int = 20,
                 pool_timeout: int = 30,
                 pool_recycle: int = 3600,
                 pool_pre_ping: bool = True,
                 echo: bool = False,
                 connect_args: Dict[str, Any] = None):
        """
        Initialize database configuration

        Args:
            database_url: Database connection URL (settings.database_url by default)
            pool_size: Number of connections to maintain
            max_overflow: Max additional connections beyond pool_size
            pool_timeout: Timeout for getting connection from pool (seconds)
            pool_recycle: Connection recycle time (seconds)
            pool_pre_ping: Enable connection health checks
            echo: Enable SQL query logging
            connect_args: Additional connection arguments
        """
        self.database_url = database_url or self._get_default_database_url()
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.pool_timeout = pool_timeout
        self.pool_recycle = pool_recycle
        self.pool_pre_ping = pool_pre_ping
        self.echo = echo
        self.connect_args = dict(connect_args or {})

        if self.is_sqlite:
            self.connect_args.setdefault('check_same_thread', False)
            self.connect_args.setdefault('timeout', 30)

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith('sqlite')

    @property
    def is_memory(self) -> bool:
        return self.is_sqlite and (':memory:' in self.database_url or self.database_url == 'sqlite://')

    def _get_default_database_url(self) -> str:
        from config.settings import settings
        return settings.database_url


class ConnectionHealthChecker:
    """Manages connection health checks"""

    def __init__(self, engine: Engine, health_check_interval: int = 60):
        self.engine = engine
        self.last_health_check = 0.0
        self.health_check_interval = health_check_interval
        self.is_healthy = True

    def check_connection_health(self, force: bool = False) -> bool:
        """
        Check if database connection is healthy

        Returns:
            True if connection is healthy, False otherwise
        """
        current_time = time.time()
        if not force and current_time - self.last_health_check < self.health_check_interval:
            return self.is_healthy

        try:
            with self.engine.connect() as conn:
                self.is_healthy = conn.execute(text('SELECT 1')).scalar() == 1
                logger.debug(f"Database health check: {'healthy' if self.is_healthy else 'unhealthy'}")
        except SQLAlchemyError as e:
            self.is_healthy = False
            logger.warning(f"Database health check failed: {e}")

        self.last_health_check = current_time
        return self.is_healthy


class RetryManager:
    """Manages retry logic for transient database errors"""

    def __init__(self,
                 max_retries: int = 3,
                 base_delay: float = 0.5,
                 max_delay: float = 5.0,
                 exponential_base: float = 2.0):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for given attempt number"""
        delay = self.base_delay * (self.exponential_base ** attempt)
        return min(delay, self.max_delay)

    def is_retryable_error(self, error: Exception) -> bool:
        """Check if error is retryable (lost connections, locked SQLite files, pool timeouts)"""
        if isinstance(error, OperationalError):
            error_str = str(error).lower()
            return any(msg in error_str for msg in
                       ['database is locked', 'disk i/o error', 'temporary failure', 'connection'])
        return isinstance(error, (DisconnectionError, TimeoutError))


class DatabaseManager:
    """
    Main database connection manager
    Provides thread-safe engine setup and transactional session scopes
    """

    def __init__(self, config: DatabaseConfig = None, retry_manager: RetryManager = None):
        self.config = config or DatabaseConfig()
        self.engine: Optional[Engine] = None
        self.SessionLocal: Optional[sessionmaker] = None
        self.health_checker: Optional[ConnectionHealthChecker] = None
        self.retry_manager = retry_manager or RetryManager()
        self._initialized = False
        self._setup_lock = Lock()

    def initialize(self) -> None:
        """Initialize database engine and session maker and create missing tables"""
        if self._initialized:
            return

        with self._setup_lock:
            if self._initialized:
                return

            engine_kwargs = {
                'echo': self.config.echo,
                'connect_args': self.config.connect_args,
            }
            if self.config.is_memory:
                # one shared connection so every session sees the same in-memory database
                engine_kwargs['poolclass'] = StaticPool
            else:
                engine_kwargs.update({
                    'poolclass': QueuePool,
                    'pool_size': self.config.pool_size,
                    'max_overflow': self.config.max_overflow,
                    'pool_timeout': self.config.pool_timeout,
                    'pool_recycle': self.config.pool_recycle,
                    'pool_pre_ping': self.config.pool_pre_ping,
                })

            try:
                self.engine = create_engine(self.config.database_url, **engine_kwargs)
                if self.config.is_sqlite:
                    self._configure_sqlite(self.engine)

                self.SessionLocal = sessionmaker(
                    bind=self.engine,
                    autocommit=False,
                    autoflush=False,
                    expire_on_commit=False
                )
                self.health_checker = ConnectionHealthChecker(self.engine)
                Base.metadata.create_all(bind=self.engine)
            except SQLAlchemyError as e:
                logger.error(f"Failed to initialize database manager: {e}")
                raise

            self._initialized = True
            logger.info(f"Database manager initialized with URL: {self._mask_url(self.config.database_url)}")

    def _configure_sqlite(self, engine: Engine) -> None:
        """Configure SQLite pragmas on every new connection"""

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            if isinstance(dbapi_connection, sqlite3.Connection):
                cursor = dbapi_connection.cursor()
                if not self.config.is_memory:
                    cursor.execute("PRAGMA journal_mode=WAL")  # readers do not block the writer
                    cursor.execute("PRAGMA synchronous=NORMAL")
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

    def _mask_url(self, url: str) -> str:
        """Mask credentials in a database URL"""
        if '://' in url:
            protocol, rest = url.split('://', 1)
            if '@' in rest:
                _, host_part = rest.split('@', 1)
                return f"{protocol}://***:***@{host_part}"
        return url

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Transactional session scope: commit on success, rollback on error, always close

        Yields:
            SQLAlchemy session
        """
        if not self._initialized:
            self.initialize()

        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def run_with_retry(self, work: Callable[[Session], T]) -> T:
        """
        Run work(session) in a fresh session scope, retrying transient connection errors

        Args:
            work: Callable receiving the session; its return value is passed through
        """
        attempt = 0
        while True:
            try:
                with self.get_session() as session:
                    return work(session)
            except SQLAlchemyError as e:
                if attempt >= self.retry_manager.max_retries or not self.retry_manager.is_retryable_error(e):
                    logger.error(f"Database operation failed: {e}")
                    raise
                delay = self.retry_manager.calculate_delay(attempt)
                logger.warning(f"Database operation failed (attempt {attempt + 1}), retrying in {delay}s: {e}")
                time.sleep(delay)
                attempt += 1

    def check_health(self) -> bool:
        """
        Check database connection health

        Returns:
            True if healthy, False otherwise
        """
        if not self._initialized:
            try:
                self.initialize()
            except SQLAlchemyError as e:
                logger.error(f"Failed to initialize database for health check: {e}")
                return False

        return self.health_checker.check_connection_health(force=True)

    def get_connection_info(self) -> Dict[str, Any]:
        """Database connection information for the health endpoint"""
        if not self._initialized:
            return {'status': 'not_initialized'}

        pool = self.engine.pool
        return {
            'status': 'connected',
            'database_url': self._mask_url(self.config.database_url),
            'pool': pool.status(),
            'is_healthy': self.health_checker.is_healthy if self.health_checker else False
        }

    def close_all_connections(self) -> None:
        """Close all database connections"""
        if self.engine:
            self.engine.dispose()
            logger.info("All database connections closed")
