"""
NIMBUS - Database
Async database connections with connection pooling and health monitoring
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from app.core.config import settings

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()


class DatabaseManager:
    """Database manager with connection pooling and monitoring"""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or settings.DATABASE_URL
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None
        self._connection_stats: Dict[str, Any] = {
            "total_connections": 0,
            "active_connections": 0,
            "queries_executed": 0,
            "errors": 0
        }

    @property
    def engine(self) -> Optional[AsyncEngine]:
        return self._engine

    @property
    def is_memory(self) -> bool:
        return self.database_url.startswith("sqlite") and (
            self.database_url.endswith("://") or ":memory:" in self.database_url
        )

    async def initialize(self) -> None:
        """Initialize database engine and session factory"""
        if self._engine is not None:
            return

        logger.info("Initializing database connection...")

        engine_kwargs: Dict[str, Any] = {"echo": settings.DATABASE_ECHO}
        if self.is_memory:
            # One shared connection, or each session would see its own empty database
            engine_kwargs["poolclass"] = StaticPool
        elif not self.database_url.startswith("sqlite"):
            engine_kwargs.update(
                pool_size=settings.DATABASE_POOL_SIZE,
                max_overflow=settings.DATABASE_MAX_OVERFLOW,
                pool_timeout=settings.DATABASE_POOL_TIMEOUT,
                pool_recycle=settings.DATABASE_POOL_RECYCLE,
                pool_pre_ping=True,  # Enable connection health checks
            )

        self._engine = create_async_engine(self.database_url, **engine_kwargs)

        self._session_factory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False
        )

        self._setup_event_listeners()

        logger.info("Database connection initialized successfully")

    def _setup_event_listeners(self) -> None:
        """Set up SQLAlchemy event listeners for monitoring"""
        if not self._engine:
            return

        @event.listens_for(self._engine.sync_engine, "checkout")
        def receive_checkout(dbapi_connection, connection_record, connection_proxy):
            self._connection_stats["active_connections"] += 1

        @event.listens_for(self._engine.sync_engine, "checkin")
        def receive_checkin(dbapi_connection, connection_record):
            self._connection_stats["active_connections"] -= 1

        @event.listens_for(self._engine.sync_engine, "connect")
        def receive_connect(dbapi_connection, connection_record):
            self._connection_stats["total_connections"] += 1

    async def close(self) -> None:
        """Close database connection pool"""
        if self._engine:
            logger.info("Closing database connection pool...")
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database connection pool closed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get async database session; commits on success, rolls back on error"""
        if not self._session_factory:
            await self.initialize()

        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as e:
                await session.rollback()
                self._connection_stats["errors"] += 1
                logger.error(f"Database session error: {e}")
                raise

    async def create_tables(self) -> None:
        """Create all tables from model metadata (development / tests)"""
        if not self._engine:
            await self.initialize()
        import app.models  # noqa: F401  register models on Base.metadata
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def health_check(self) -> Dict[str, Any]:
        """Check database health and connectivity"""
        try:
            start_time = asyncio.get_running_loop().time()

            async with self.session() as session:
                result = await session.execute(text("SELECT 1"))
                _ = result.scalar()

            latency_ms = (asyncio.get_running_loop().time() - start_time) * 1000

            return {
                "status": "healthy",
                "latency_ms": round(latency_ms, 2),
                "stats": self._connection_stats
            }
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return {
                "status": "unhealthy",
                "error": str(e),
                "stats": self._connection_stats
            }


# Global database manager instance
db_manager = DatabaseManager()


async def init_db() -> None:
    """Initialize database and create tables"""
    await db_manager.initialize()
    try:
        await db_manager.create_tables()
        logger.info("Tables ensured/created")
    except Exception as e:
        logger.error(f"Error creating tables: {e}")
        raise


def get_database_manager() -> DatabaseManager:
    """Get the global database manager instance."""
    return db_manager
