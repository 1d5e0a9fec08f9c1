"""Database seed script: creates tables and installs built-in workflow definitions.

Run: python -m scripts.seed_definitions
"""

import asyncio

import structlog

from core.logging_config import setup_logging
from db.session import close_db, create_db_engine, create_session_factory, init_db
from services.definition_service import DefinitionService

logger = structlog.get_logger(__name__)


async def seed() -> int:
    """Seed the database with the built-in definitions."""
    engine = create_db_engine()
    try:
        await init_db(engine)
        session_factory = create_session_factory(engine)
        async with session_factory() as db:
            created = await DefinitionService(db).seed_defaults()
            await db.commit()
    finally:
        await close_db(engine)

    logger.info("Workflow definitions seeded", created=created)
    return created


if __name__ == "__main__":
    setup_logging()
    asyncio.run(seed())
