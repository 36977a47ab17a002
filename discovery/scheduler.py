import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from core.config import settings
from discovery.factory import build_canary, build_http_client, build_scanner, build_time_budget

logger = logging.getLogger(__name__)


class DiscoveryScheduler:
    """
    Self-hosted trigger for the scanner and the canary.

    The discovery job runs every DISCOVERY_TIMEOUT_SECONDS with at most one
    instance in flight, so the marker always has a single writer.
    """

    def __init__(self):
        self.scheduler = AsyncIOScheduler()
        self.engine = create_async_engine(settings.DATABASE_URL, echo=False)
        self.SessionLocal = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def run_discovery_job(self):
        """Job to run one discovery scan"""
        logger.info("Scheduler: Starting discovery job")
        async with self.SessionLocal() as session:
            try:
                async with build_http_client(settings, "registry") as feed_http, \
                        build_http_client(settings, "tarballs", client_errors_open_circuit=False) as tarball_http:
                    scanner = build_scanner(session, feed_http, tarball_http)
                    await scanner.run(build_time_budget(settings))
            except Exception as e:
                logger.error(f"Scheduler: discovery job failed - {e}")

    async def run_canary_job(self):
        """Job to run one canary tick"""
        try:
            async with build_http_client(settings, "canary") as http:
                await build_canary(http).tick()
        except Exception as e:
            logger.error(f"Scheduler: canary job failed - {e}")

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_discovery_job,
            trigger=IntervalTrigger(seconds=settings.DISCOVERY_TIMEOUT_SECONDS),
            id="discovery_job",
            max_instances=1,  # Only one execution (avoids races on the marker)
            coalesce=True,
            replace_existing=True
        )
        self.scheduler.add_job(
            self.run_canary_job,
            trigger=IntervalTrigger(seconds=settings.CANARY_INTERVAL_SECONDS),
            id="canary_job",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self.scheduler.start()
        logger.info("Discovery scheduler started")

    def stop(self):
        self.scheduler.shutdown()
        logger.info("Discovery scheduler stopped")
