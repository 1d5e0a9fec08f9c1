"""Database engine and session factory configuration."""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from app.config import get_settings


def create_db_engine(database_url: str = None, **overrides) -> AsyncEngine:
    """Create an async engine for the configured database.

    SQLite gets no pool sizing (aiosqlite ignores it) and a busy timeout
    so concurrent writers wait instead of failing immediately.
    """
    settings = get_settings()
    url = database_url or settings.DATABASE_URL
    kwargs = dict(echo=settings.SQLALCHEMY_ECHO)
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"timeout": 30}
    else:
        kwargs.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_recycle=1800,
            pool_pre_ping=True,
            pool_timeout=10,
        )
    kwargs.update(overrides)
    return create_async_engine(url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create an async session factory bound to ``engine``."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create tables for all registered models."""
    from db.base import Base
    import db.models  # noqa: F401  (registers models)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(engine: AsyncEngine) -> None:
    """Dispose of the engine's connection pool."""
    await engine.dispose()


def dialect_insert(db: AsyncSession):
    """``insert`` construct with ON CONFLICT support for the session's dialect."""
    dialect = db.bind.dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"Upsert not supported on {dialect}")
    return insert
