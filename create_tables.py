"""
create_tables.py
----------------
Create the users, chatrooms and messages tables for a fresh deployment.
Existing tables are left alone; pass --reset to drop them first
(local development only, it deletes every message).

Usage:
    python create_tables.py [--reset]
"""

import asyncio
import sys
from typing import Optional

from sqlalchemy import inspect

from chatroom_ai.core.config import settings
from chatroom_ai.core.logging import configure_logging, get_logger
from chatroom_ai.db.session import build_engine
from chatroom_ai.models import Base

logger = get_logger(__name__)


async def create_all_tables(database_url: Optional[str] = None, reset: bool = False) -> list[str]:
    """Create missing tables and return the names present afterwards."""
    engine = build_engine(database_url or settings.DATABASE_URL, echo=settings.DEBUG)
    try:
        async with engine.begin() as conn:
            if reset:
                await conn.run_sync(Base.metadata.drop_all)
                logger.warning("Dropped all tables")
            await conn.run_sync(Base.metadata.create_all)
            tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
    finally:
        await engine.dispose()

    logger.info("Database schema ready", tables=sorted(tables))
    return sorted(tables)


if __name__ == "__main__":
    configure_logging(process="setup")
    asyncio.run(create_all_tables(reset="--reset" in sys.argv[1:]))
