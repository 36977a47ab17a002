"""
Registry discovery pipeline and package canary.

This package contains every component of the discovery run:

Modules:
    feed_reader: Change-feed reader with retry logic
    relevance: Pure relevance filter (irrelevant / malformed / candidate)
    stager: Tarball download, integrity check and staging to object storage
    notifier: One queue message per staged artifact
    governor: Time budget that ends the run ahead of the hard deadline
    checkpoint: Durable marker store
    deferred: Retry parking for candidates whose staging failed
    runs: Run audit trail
    scanner: Orchestrator of the whole run
    canary: Probe-package round trip (replica lag, time-to-catalog)
    storage / queue / http: Narrow interfaces to S3, SQS and HTTP
    scheduler: APScheduler driver for self-hosted deployments
    factory: Wiring from application settings

Architecture:
    read batch -> classify -> stage -> notify -> save marker -> check budget

    The marker only advances after a batch's effects are committed, so a
    crash reprocesses at most one batch and notifications are at-least-once.

Usage:
    from core.database import async_session_maker
    from discovery.factory import build_http_client, build_scanner, build_time_budget

    async with async_session_maker() as session:
        async with build_http_client(settings, "registry") as http:
            scanner = build_scanner(session, http)
            result = await scanner.run(build_time_budget(settings))

    print(f"Marker now at {result['marker']}")
"""

__all__ = [
    "DiscoveryScanner",
    "RegistryFeedReader",
    "RelevanceFilter",
    "ArtifactStager",
    "QueueNotifier",
    "TimeBudget",
    "DatabaseCheckpointStore",
    "PackageCanary",
]
