"""
paddock/database.py
Database configuration and session handling
"""
import logging

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker

# Import Base from orm.base to avoid circular imports
from paddock.orm.base import Base
import paddock.orm  # ensures all models are registered
from paddock.config import settings

logger = logging.getLogger(__name__)

DATABASE_URL = settings.DATABASE_URL

if not DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is not set")


def build_engine(database_url: str) -> AsyncEngine:
    """
    Create an async engine with pool settings for the given backend.

    SQLite gets a busy timeout so concurrent booking writes wait for the
    lock instead of failing immediately.
    """
    if "sqlite" in database_url.lower():
        return create_async_engine(
            database_url,
            echo=settings.SQL_ECHO,
            future=True,
            pool_pre_ping=True,
            connect_args={
                "timeout": 30.0,   # SQLite busy timeout in seconds
            }
        )
    return create_async_engine(
        database_url,
        echo=settings.SQL_ECHO,
        future=True,
        pool_pre_ping=True,
        pool_size=20,           # Base pool size
        max_overflow=30,        # Additional connections under load
        pool_timeout=30,        # Wait up to 30s for connection
        pool_recycle=3600,      # Recycle connections after 1 hour
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine(DATABASE_URL)
AsyncSessionLocal = build_session_factory(engine)


async def init_db(bind: AsyncEngine = None):
    """
    Initialize database: create missing tables.
    Idempotent: safe to run multiple times.
    """
    bind = bind or engine
    logger.info("Initializing database...")

    try:
        logger.info(f"Database dialect: {bind.url.get_backend_name()}")
        if bind.url.get_backend_name() == "sqlite":
            logger.warning("Running on SQLite: JSONB downgraded to JSON.")

        async with bind.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        logger.info("✓ Database initialization complete")

    except Exception as e:
        logger.error(f"Database initialization failed: {str(e)}")
        raise


async def close_db():
    """Close database connection"""
    await engine.dispose()
    logger.info("Database connection closed")
