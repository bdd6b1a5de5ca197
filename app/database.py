import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, date
from decimal import Decimal
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from app.config import settings


logger = logging.getLogger(__name__)


# Custom JSON encoder that handles Decimal, datetime, UUID, etc.
class CustomJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal, datetime, UUID and other types."""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, UUID):
            return str(obj)
        return super().default(obj)


def custom_json_dumps(obj):
    """JSON serializer used for document values."""
    return json.dumps(obj, cls=CustomJSONEncoder)


def normalize_database_url(url: str) -> str:
    """Route PostgreSQL URLs through the async psycopg driver."""
    if url.startswith("postgresql+asyncpg://"):
        return url.replace("postgresql+asyncpg://", "postgresql+psycopg://")
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://")
    return url


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with settings appropriate for the backend."""
    # SQLite doesn't support pool settings
    if url.startswith("sqlite"):
        return create_async_engine(
            url,
            echo=echo,
            future=True,
            json_serializer=custom_json_dumps,
            connect_args={"check_same_thread": False},
        )

    return create_async_engine(
        normalize_database_url(url),
        echo=echo,
        future=True,
        json_serializer=custom_json_dumps,
        pool_pre_ping=True,  # Check connection health before use
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        connect_args={
            "prepare_threshold": None,  # Disable prepared statements for poolers
            "connect_timeout": 30,
        },
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)

# Create async session factory
async_session_factory = build_session_factory(engine)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


@asynccontextmanager
async def get_db_session(factory: async_sessionmaker[AsyncSession] = async_session_factory):
    """Context manager for getting a database session outside a request."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(bind: AsyncEngine = engine) -> None:
    """Initialize database tables."""
    # Import all models to register them with Base.metadata
    from app.models.document import Document  # noqa: F401

    logger.info(f"Registered {len(Base.metadata.tables)} tables")

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ready")
