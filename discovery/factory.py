"""
Wiring of the scanner and the canary from application settings
"""

from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings, settings as default_settings
from core.metrics import MetricsRecorder, build_metrics_backend
from discovery.canary import CanaryStateStore, PackageCanary, ProbePublisher, RegistryProbe
from discovery.checkpoint import DatabaseCheckpointStore
from discovery.constants import CANARY_METRIC_NAMESPACE, METRIC_NAMESPACE
from discovery.deferred import DatabaseDeferredVersionStore
from discovery.feed_reader import RegistryFeedReader
from discovery.governor import TimeBudget
from discovery.http import ResilientHttpClient
from discovery.notifier import QueueNotifier
from discovery.queue import SQSMessageQueue
from discovery.relevance import RelevanceFilter
from discovery.runs import RunTracker
from discovery.scanner import DiscoveryScanner
from discovery.stager import ArtifactStager
from discovery.storage import S3ObjectStore


def build_http_client(
    config: Settings,
    name: str,
    client_errors_open_circuit: bool = True
) -> ResilientHttpClient:
    return ResilientHttpClient(
        name=name,
        max_retries=config.MAX_RETRIES,
        retry_delay=config.RETRY_DELAY_SECONDS,
        timeout=config.HTTP_TIMEOUT_SECONDS,
        client_errors_open_circuit=client_errors_open_circuit,
    )


def build_time_budget(config: Settings) -> TimeBudget:
    return TimeBudget.from_seconds(
        config.DISCOVERY_TIMEOUT_SECONDS,
        config.DISCOVERY_SAFETY_MARGIN_SECONDS,
    )


def build_scanner(
    db_session: AsyncSession,
    feed_http: ResilientHttpClient,
    tarball_http: ResilientHttpClient,
    config: Settings = default_settings
) -> DiscoveryScanner:
    """
    Scanner backed by the database, S3 and SQS.

    The change feed and the tarball origin use separate clients, each with
    its own circuit breaker.
    """
    if not config.BUCKET_NAME:
        raise ValueError("BUCKET_NAME is required to run discovery")
    if not config.QUEUE_URL:
        raise ValueError("QUEUE_URL is required to run discovery")

    metrics = MetricsRecorder(
        METRIC_NAMESPACE,
        backend=build_metrics_backend(config.METRICS_BACKEND, config.AWS_REGION),
    )

    return DiscoveryScanner(
        feed=RegistryFeedReader(config.REGISTRY_FEED_URL, feed_http),
        relevance=RelevanceFilter(
            keywords=config.RELEVANT_KEYWORDS,
            metadata_field=config.LIBRARY_METADATA_FIELD,
            deny_list=config.DENY_LIST,
            probe_package=config.PACKAGE_NAME,
        ),
        stager=ArtifactStager(
            store=S3ObjectStore(config.BUCKET_NAME, region_name=config.AWS_REGION),
            http=tarball_http,
            metrics=metrics,
            key_prefix=config.STAGED_KEY_PREFIX,
        ),
        notifier=QueueNotifier(SQSMessageQueue(config.QUEUE_URL, region_name=config.AWS_REGION)),
        checkpoints=DatabaseCheckpointStore(db_session, config.FEED_NAME),
        metrics=metrics,
        batch_size=config.FEED_BATCH_SIZE,
        deferred=DatabaseDeferredVersionStore(db_session),
        tracker=RunTracker(db_session, config.FEED_NAME),
        max_staging_attempts=config.MAX_STAGING_ATTEMPTS,
    )


def build_canary_state_store(config: Settings = default_settings) -> CanaryStateStore:
    bucket = config.canary_bucket_name
    if not bucket:
        raise ValueError("PACKAGE_CANARY_BUCKET_NAME (or BUCKET_NAME) is required for the canary")
    return CanaryStateStore(S3ObjectStore(bucket, region_name=config.AWS_REGION), config.PACKAGE_NAME)


def build_canary(
    http: ResilientHttpClient,
    config: Settings = default_settings,
    publisher: Optional[ProbePublisher] = None
) -> PackageCanary:
    metrics = MetricsRecorder(
        CANARY_METRIC_NAMESPACE,
        backend=build_metrics_backend(config.METRICS_BACKEND, config.AWS_REGION),
        dimensions={"PackageName": config.PACKAGE_NAME},
    )
    return PackageCanary(
        package_name=config.PACKAGE_NAME,
        state_store=build_canary_state_store(config),
        probe=RegistryProbe(
            http=http,
            registry_url=config.REGISTRY_URL,
            replica_url=config.REGISTRY_FEED_URL,
            catalog_base_url=config.CATALOG_BASE_URL,
        ),
        metrics=metrics,
        publisher=publisher,
    )
