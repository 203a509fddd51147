"""
Check that the configured database is reachable and report the user count.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy import func, select, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine

from meditrack.config import async_database_url, get_settings
from meditrack.db import UserRow

logger = logging.getLogger(__name__)


async def check(database_url: str, timeout_seconds: float) -> int:
    engine = create_async_engine(async_database_url(database_url))
    try:
        async with engine.connect() as conn:
            await asyncio.wait_for(conn.execute(text("SELECT 1")), timeout_seconds)
            logger.info("Database connection successful")
            result = await conn.execute(select(func.count()).select_from(UserRow))
            logger.info("Users in database: %d", result.scalar_one())
    except TimeoutError:
        logger.error("Database connection timed out; it may be sleeping or overloaded")
        return 1
    except (SQLAlchemyError, OSError) as exc:
        logger.error("Database check failed: %s", exc)
        return 1
    finally:
        await engine.dispose()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Check the MediTrack database")
    parser.add_argument(
        "--database-url",
        type=str,
        default=None,
        help="Override DATABASE_URL",
    )
    parser.add_argument(
        "--timeout-seconds",
        type=float,
        default=10.0,
        help="Connection timeout",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    database_url = args.database_url or get_settings().database_url
    if not database_url:
        logger.error("DATABASE_URL not set in environment variables")
        return 1

    logger.info(
        "Testing database connection to %s",
        make_url(async_database_url(database_url)).render_as_string(hide_password=True),
    )
    return asyncio.run(check(database_url, args.timeout_seconds))


if __name__ == "__main__":
    raise SystemExit(main())
