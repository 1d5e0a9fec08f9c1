"""Worker-safe database access for Celery tasks.

Creates a fresh async engine per call to avoid the 'Future attached
to a different loop' error when asyncpg connections are shared
across event loops in forked Celery workers.
"""

from contextlib import asynccontextmanager

from db.session import create_db_engine, create_session_factory


@asynccontextmanager
async def worker_session_factory():
    """Provide a session factory whose engine lives for one task run.

    Usage:
        async with worker_session_factory() as session_factory:
            components = build_components(session_factory, ...)
    """
    engine = create_db_engine(pool_recycle=300)
    try:
        yield create_session_factory(engine)
    finally:
        await engine.dispose()
