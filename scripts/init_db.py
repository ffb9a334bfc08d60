"""
Create the sync service tables without running migrations (local and CI databases)

Usage:
    python scripts/init_db.py           # create missing tables
    python scripts/init_db.py --drop    # drop and recreate (refused in production)
"""

import argparse
import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import build_engine
from core.logging import setup_logging
# Importing the models package registers every table on Base.metadata
from models import Base

setup_logging()
logger = logging.getLogger(__name__)


async def init_database(drop: bool = False) -> int:
    if drop and settings.ENVIRONMENT == "production":
        logger.error("Refusing to drop tables in production")
        return 1

    engine = build_engine()
    try:
        async with engine.begin() as conn:
            if drop:
                logger.warning(f"Dropping {len(Base.metadata.tables)} tables")
                await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
    finally:
        await engine.dispose()

    logger.info(f"Tables ready: {', '.join(sorted(Base.metadata.tables))}")
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create sync service tables")
    parser.add_argument("--drop", action="store_true", help="Drop existing tables first")
    sys.exit(asyncio.run(init_database(parser.parse_args().drop)))
