"""
ShiftTrack Database Session Management

Async SQLAlchemy engine and session factory.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from core.config import Settings, get_settings

settings = get_settings()


def driver_connect_args(database_url: str, timeout_seconds: float) -> dict:
    """Per-statement / lock-wait timeouts so no store call blocks indefinitely."""
    if database_url.startswith("postgresql+asyncpg"):
        return {"command_timeout": timeout_seconds}
    if database_url.startswith("sqlite"):
        return {"timeout": timeout_seconds}
    return {}


def build_engine(runtime_settings: Settings | None = None, **overrides) -> AsyncEngine:
    """Create an engine with bounded pool and statement timeouts."""
    runtime_settings = runtime_settings or get_settings()
    url = overrides.pop("database_url", runtime_settings.database_url)
    kwargs = {
        "echo": runtime_settings.database_echo,
        "pool_pre_ping": True,
        "connect_args": driver_connect_args(url, runtime_settings.database_statement_timeout_seconds),
    }
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=runtime_settings.database_pool_size,
            max_overflow=10,
            pool_timeout=runtime_settings.database_pool_timeout_seconds,
        )
    kwargs.update(overrides)
    return create_async_engine(url, **kwargs)


engine = build_engine(settings)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Declarative base for all SQLAlchemy models."""
    pass
