from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool
import structlog

logger = structlog.get_logger()

# Base class for models
Base = declarative_base()


class Database:
    """Async engine and session factory for the credential/challenge row store."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.engine = create_async_engine(
            url,
            poolclass=NullPool,  # Use NullPool for async
            echo=echo,
        )
        self.sessionmaker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

    async def init(self, create_tables: bool = True):
        """Initialize database"""
        # Make sure the models are registered on Base.metadata
        from passkey_gate.models import passkey  # noqa: F401

        if not create_tables:
            return
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error("Database initialization failed", error=str(e))
            raise

    async def close(self):
        """Close database connections"""
        await self.engine.dispose()
        logger.info("Database connections closed")


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session"""
    database: Database = request.app.state.database
    async with database.sessionmaker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
