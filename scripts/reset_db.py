"""
Drop the MediTrack tables (and optionally recreate them empty).
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

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine

from meditrack.config import async_database_url, get_settings
from meditrack.db import Base

logger = logging.getLogger(__name__)

# Children first so foreign keys never block a drop.
TABLES = ("family_members", "doctors", "patients", "users")


async def reset(database_url: str, recreate: bool) -> int:
    url = async_database_url(database_url)
    cascade = " CASCADE" if make_url(url).get_backend_name() == "postgresql" else ""
    engine = create_async_engine(url)
    try:
        async with engine.begin() as conn:
            for table in TABLES:
                await conn.execute(text(f"DROP TABLE IF EXISTS {table}{cascade}"))
                logger.info("Dropped %s", table)
            if recreate:
                await conn.run_sync(Base.metadata.create_all)
                logger.info("Recreated schema")
    except (SQLAlchemyError, OSError) as exc:
        logger.error("Database reset failed: %s", exc)
        return 1
    finally:
        await engine.dispose()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Reset the MediTrack database")
    parser.add_argument(
        "--database-url",
        type=str,
        default=None,
        help="Override DATABASE_URL",
    )
    parser.add_argument(
        "--recreate",
        action="store_true",
        help="Create empty tables after dropping them",
    )
    parser.add_argument(
        "--yes",
        action="store_true",
        help="Confirm that all data should be deleted",
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
    if not args.yes:
        logger.error("Refusing to drop tables without --yes")
        return 2

    logger.info(
        "Resetting database %s",
        make_url(async_database_url(database_url)).render_as_string(hide_password=True),
    )
    return asyncio.run(reset(database_url, args.recreate))


if __name__ == "__main__":
    raise SystemExit(main())
