"""
Script to run one time-boxed discovery pass (cron / container entrypoint)
"""

import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from core.config import settings
from core.exceptions import DiscoveryException
from core.logging import setup_logging
from discovery.factory import build_http_client, build_scanner, build_time_budget

logger = logging.getLogger(__name__)


async def run_discovery() -> int:
    """Run the scanner once; returns the process exit code"""
    budget = build_time_budget(settings)

    engine = create_async_engine(settings.DATABASE_URL, echo=False)
    AsyncSessionLocal = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    try:
        async with AsyncSessionLocal() as session:
            async with build_http_client(settings, "registry") as feed_http, \
                    build_http_client(settings, "tarballs", client_errors_open_circuit=False) as tarball_http:
                scanner = build_scanner(session, feed_http, tarball_http)
                result = await scanner.run(budget)

        logger.info(
            f"Discovery finished ({result['status']}): marker {result['marker_before']} -> "
            f"{result['marker']}, notified {result['notified_count']}"
        )
        return 0

    except DiscoveryException as e:
        logger.error(f"Discovery failed: {e}")
        return 1
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2
    finally:
        await engine.dispose()


if __name__ == "__main__":
    setup_logging()
    sys.exit(asyncio.run(run_discovery()))
