"""Database initialization script.

Run this to create the Memorychain ledger schema and report what it holds.
"""

import asyncio
import sys
from pathlib import Path

# Add repository root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.config import config
from src.database import db
from src.logging_utils import get_logger, setup_logging
from src.models import PaymentStatus

setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)


async def main():
    """Initialize the database."""
    logger.info("Initializing Memorychain database...")
    logger.info(f"Database path: {db.db_path}")

    await db.initialize()

    for status in PaymentStatus:
        intents = await db.intents.list_by_status(status, limit=1000)
        if intents:
            logger.info(f"- {status.value}: {len(intents)} intents")

    logger.info("Database initialization complete!")


if __name__ == "__main__":
    asyncio.run(main())
