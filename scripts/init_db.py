"""Database initialization script.

Run this to create the reward service tables before first start.
"""

import asyncio

from runstr_rewards.config import config
from runstr_rewards.database import db
from runstr_rewards.logging_utils import get_logger, setup_logging

setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)


async def main():
    """Initialize the database."""
    logger.info("Initializing reward database...")
    logger.info(f"Database path: {db.db_path}")

    await db.initialize()

    streaks = await db.list_streaks()
    logger.info(f"Database ready with {len(streaks)} streak record(s)")


if __name__ == "__main__":
    asyncio.run(main())
