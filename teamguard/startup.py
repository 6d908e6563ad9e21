from __future__ import annotations

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from .database import Base, async_session_maker, engine
from .rbac.service import rbac_service

logger = structlog.get_logger(__name__)


async def create_tables(engine: AsyncEngine) -> None:
    """Create all tables in the database."""
    # Register every model on the metadata before create_all
    from . import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def startup() -> None:
    """Application startup tasks."""
    await create_tables(engine)

    async with async_session_maker() as session:
        seeded = await rbac_service.initialize_roles(session)
    if seeded:
        logger.info("Seeded system roles at startup", roles_count=seeded)
