"""
Open Bookkeeping Payroll - Database Configuration

SQLAlchemy 2.0 async engine and session factory.

Sessions are created with expire_on_commit=False: the payroll service
commits between the phases of a calculation and keeps using the run it
already loaded, re-reading it with populate_existing where freshness matters.
"""

from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import MetaData

from app.config import settings


# Constraint names match the Alembic migration
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s"
}


class Base(DeclarativeBase):
    """Declarative base for the payroll tables."""
    metadata = MetaData(naming_convention=convention)


engine = create_async_engine(
    settings.database_url_async,
    echo=settings.debug,
    pool_pre_ping=True,
    pool_size=settings.database_pool_size,
    max_overflow=settings.database_max_overflow,
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session for FastAPI's Depends()."""
    async with async_session_maker() as session:
        yield session


async def init_db():
    """
    Create the payroll tables directly.
    Development only; deployed databases are migrated with Alembic.
    """
    import app.models  # noqa: F401  (registers payroll tables on Base.metadata)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db():
    await engine.dispose()
