import logging
import time
from typing import Callable, Generator, TypeVar

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from badgerswap.config import settings
from badgerswap.errors import StoreUnavailableError
from badgerswap.metrics import record_store_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _connect_args(database_url: str) -> dict:
    # SQLite: allow use across FastAPI's threads and bound the busy wait
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": settings.STORE_TIMEOUT_SECONDS}
    return {"connect_timeout": int(settings.STORE_TIMEOUT_SECONDS)}


engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args(settings.DATABASE_URL),
    pool_pre_ping=True,
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("conversations", "messages")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from badgerswap import models  # noqa: F401

        logger.debug("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and the chat schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            logger.debug("Database connectivity OK")

        existing = set(inspect(engine).get_table_names())
        missing = [name for name in REQUIRED_TABLES if name not in existing]
        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


def run_with_retry(operation: Callable[[], T], name: str) -> T:
    """
    Run an idempotent store read, retrying transient failures with backoff.

    Only reads go through here. Appends are never retried blindly since a
    repeated insert could duplicate a message.

    Backoff sleeps block the calling thread: call this from sync code
    (threadpool routes, subscription refreshes), never on the event loop.

    Args:
        operation: Zero-argument callable performing the read
        name: Operation name used in logs and metrics

    Returns:
        Whatever the operation returns

    Raises:
        StoreUnavailableError: when every attempt failed
    """
    attempts = max(1, settings.STORE_MAX_ATTEMPTS)
    delay = settings.STORE_RETRY_BACKOFF_SECONDS

    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except (OperationalError, DBAPIError) as e:
            if attempt == attempts:
                logger.error(f"Store read {name} failed after {attempts} attempts: {e}")
                raise StoreUnavailableError(name, details=str(e.orig) if e.orig else None) from e
            logger.warning(f"Store read {name} failed (attempt {attempt}/{attempts}), retrying in {delay:.3f}s")
            record_store_retry(name)
            time.sleep(delay)
            delay *= 2
