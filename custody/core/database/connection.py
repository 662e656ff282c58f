"""
Database connection and session management.
Supports both sync and async operations.

The async engine serves the custody stores; the sync engine serves
migrations and the key-rotation procedure.
"""
from sqlalchemy import create_engine, text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import OperationalError, DBAPIError
from typing import Generator, AsyncGenerator, Optional
import logging
import time

from custody.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Create engines
engine = None
async_engine = None
SessionLocal = None
AsyncSessionLocal = None


def _engine_options(url: str, settings: Settings) -> dict:
    """Pool and connect options appropriate for the backend."""
    if url.startswith("sqlite"):
        # SQLite pools don't take size/overflow arguments
        return {"echo": False}
    options = {
        "pool_pre_ping": True,  # Verify connections before using
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_recycle": 3600,  # Recycle connections after 1 hour
        "echo": False,
    }
    return options


def init_db(settings: Optional[Settings] = None, max_retries: int = 3, retry_delay: float = 1.0):
    """
    Initialize database engines and session factories with retry logic.
    Call this once at application startup.

    Args:
        settings: Settings to use (default: get_settings())
        max_retries: Number of connection attempts
        retry_delay: Seconds to wait between retries

    Raises:
        RuntimeError: If connection fails after all retries
    """
    global engine, async_engine, SessionLocal, AsyncSessionLocal

    settings = settings or get_settings()
    sync_url = settings.database_url_sync
    async_url = settings.database_url_async

    for attempt in range(max_retries):
        try:
            sync_options = _engine_options(sync_url, settings)
            if sync_url.startswith("postgresql"):
                sync_options["connect_args"] = {"connect_timeout": settings.database_connect_timeout}

            # Sync engine (for migrations and key rotation)
            engine = create_engine(sync_url, **sync_options)

            # Test connection
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))

            # Async engine (for custody operations)
            async_engine = create_async_engine(async_url, **_engine_options(async_url, settings))

            # Session factories
            SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
            AsyncSessionLocal = async_sessionmaker(
                async_engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            logger.info(f"Database initialized: {sync_url.split('@')[1] if '@' in sync_url else 'local'}")
            return

        except (OperationalError, DBAPIError) as e:
            logger.warning(f"Database connection attempt {attempt + 1}/{max_retries} failed: {e}")
            if attempt < max_retries - 1:
                time.sleep(retry_delay * (attempt + 1))
            else:
                logger.error(f"Database initialization failed after {max_retries} attempts")
                raise RuntimeError(f"Failed to connect to database: {e}") from e


def get_db() -> Generator[Session, None, None]:
    """
    Get a sync database session (for key rotation, migrations).

    Usage:
        from custody.core.database import get_db

        db = next(get_db())
        share = db.query(KeyShare).first()
    """
    if not SessionLocal:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    db = SessionLocal()
    try:
        yield db
    except (OperationalError, DBAPIError) as e:
        logger.error(f"Database session error: {e}")
        db.rollback()
        raise
    finally:
        db.close()


def get_session_factory() -> async_sessionmaker:
    """
    Get the async session factory the custody stores are built on.

    Usage:
        store = KeyShareStore(get_session_factory(), cipher)
    """
    if not AsyncSessionLocal:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return AsyncSessionLocal


async def get_async_db() -> AsyncGenerator[AsyncSession, None]:
    """Get an async database session."""
    if not AsyncSessionLocal:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    async with AsyncSessionLocal() as session:
        try:
            yield session
        except (OperationalError, DBAPIError) as e:
            logger.error(f"Async database session error: {e}")
            await session.rollback()
            raise


def create_tables():
    """
    Create all tables in the database.
    Only use for initial setup - prefer Alembic migrations for production.
    """
    if not engine:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    from .models import Base
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created")


async def dispose_engines():
    """Close all pooled connections (call on shutdown)."""
    if async_engine is not None:
        await async_engine.dispose()
    if engine is not None:
        engine.dispose()
    logger.info("Database engines disposed")
