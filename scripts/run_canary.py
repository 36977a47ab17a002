"""
Script to run one package canary tick
"""

import asyncio
import sys
import os
import logging

sys.path.append(os.getcwd())

from core.config import settings
from core.exceptions import DiscoveryException
from core.logging import setup_logging
from discovery.factory import build_canary, build_http_client

logger = logging.getLogger(__name__)


async def run_canary() -> int:
    try:
        async with build_http_client(settings, "canary") as http:
            state = await build_canary(http).tick()
    except DiscoveryException as e:
        logger.error(f"Canary tick failed: {e}")
        return 1
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    logger.info(f"Canary state: {state.version or '-'} ({state.phase.value})")
    return 0


if __name__ == "__main__":
    setup_logging()
    sys.exit(asyncio.run(run_canary()))
