"""Async SQLAlchemy engine for the SQL audit sink."""

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from app.core.config import settings
from app.db.base import Base
from app.models import AuditRecordRow  # noqa: F401  (registers the table on Base.metadata)


def create_engine(url: str | None = None) -> AsyncEngine:
    return create_async_engine(
        url or settings.audit_database_url,
        echo=False,
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


async def init_audit_schema(engine: AsyncEngine) -> None:
    """Create the audit table if it does not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
