import argparse
import asyncio
import logging
import sys

import config
from db import Base, engine
from fill_test_data import fill_with_sample_data

logger = logging.getLogger("init_db")

async def init_database(with_sample_data: bool = True):
    try:
        async with engine.begin() as conn:
            logger.info("Dropping all existing tables...")
            await conn.run_sync(Base.metadata.drop_all)
            logger.info("Creating all tables based on current models...")
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database initialized (tables recreated)")

        if with_sample_data:
            logger.info("Filling database with sample data...")
            await fill_with_sample_data()
    except Exception:
        logger.exception("Database initialization failed")
        sys.exit(1)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    parser = argparse.ArgumentParser(description="Recreate the database schema.")
    parser.add_argument("--no-sample-data", action="store_true", help="only create tables")
    args = parser.parse_args()
    asyncio.run(init_database(with_sample_data=not args.no_sample_data))
