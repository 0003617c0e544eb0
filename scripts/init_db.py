import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import build_engine
from core.logging import setup_logging
from models import Base  # registers every table on Base.metadata

setup_logging()
logger = logging.getLogger(__name__)


async def init_database():
    logger.info("Connecting to database...")
    engine = build_engine(echo=True)

    async with engine.begin() as conn:
        logger.info("Creating tables...")
        await conn.run_sync(Base.metadata.create_all)
        logger.info("Tables created successfully.")

    await engine.dispose()

    os.makedirs(settings.DATASET_STORAGE_DIR, exist_ok=True)
    logger.info(f"Dataset storage ready at {settings.DATASET_STORAGE_DIR}")


if __name__ == "__main__":
    asyncio.run(init_database())
