"""
Package canary: measures how long a probe package takes to travel from the
upstream registry to the replica feed and on to the catalog.

Each scheduled tick loads the persisted state, performs one bounded check
and exits; it never waits. Phases of the tracked probe version:

    NOT_YET_PUBLISHED -> PUBLISHED_UPSTREAM -> VISIBLE_IN_REPLICA -> VISIBLE_IN_CATALOG

Once a version has reached the catalog it is retired on the next tick, a
new probe version may be published through an external ProbePublisher,
and tracking starts over.

Metrics (namespace RegistryDiscovery/PackageCanary):
    DwellTime               publish -> replica visibility (growing while pending)
    EstimatedNpmReplicaLag  upstream "modified" minus replica "modified" of the
                            probe document; no finer than the publishing interval
    TimeToCatalog           publish -> catalog visibility
    TrackedVersionCount     1 while a version is in flight, else 0
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, NamedTuple, Optional
import json
import logging

from pydantic import ValidationError

from core.clock import WallClock, ensure_utc, utc_now
from core.exceptions import CanaryError, HttpError, ResourceNotFoundError
from core.metrics import MetricsRecorder, MetricUnit
from discovery.constants import CanaryMetricName, canary_state_key
from discovery.http import ResilientHttpClient, encode_package_name
from discovery.storage import ObjectStore
from schemas.canary import CanaryPhase, CanaryState

logger = logging.getLogger(__name__)


class ProbePublisher(ABC):
    """Publishes a fresh probe version upstream (outside this service)"""

    @abstractmethod
    async def publish(self, package_name: str, retired_version: Optional[str]) -> Optional[str]:
        """Returns the published version if known"""
        pass


class CanaryStateStore:
    """One JSON state object per probe package in the canary bucket"""

    def __init__(self, store: ObjectStore, package_name: str):
        self.store = store
        self.package_name = package_name
        self.key = canary_state_key(package_name)

    async def load(self) -> CanaryState:
        try:
            body = await self.store.get_object(self.key)
        except Exception as e:
            raise CanaryError(
                "Failed to read canary state",
                context={"package_name": self.package_name, "probe": "state", "key": self.key},
                original_exception=e
            )

        if body is None:
            return CanaryState(package_name=self.package_name)

        try:
            return CanaryState.model_validate(json.loads(body))
        except (ValueError, ValidationError) as e:
            logger.warning(f"Discarding unreadable canary state at {self.key}: {e}")
            return CanaryState(package_name=self.package_name)

    async def save(self, state: CanaryState) -> None:
        body = state.model_dump_json().encode("utf-8")
        try:
            await self.store.put_object(self.key, body, content_type="application/json")
        except Exception as e:
            raise CanaryError(
                "Failed to write canary state",
                context={"package_name": self.package_name, "probe": "state", "key": self.key},
                original_exception=e
            )


class UpstreamRelease(NamedTuple):
    version: str
    published_at: datetime
    modified_at: datetime


class ReplicaView(NamedTuple):
    has_version: bool
    modified_at: Optional[datetime] = None


class RegistryProbe:
    """Visibility checks against the upstream registry, the replica and the catalog"""

    def __init__(
        self,
        http: ResilientHttpClient,
        registry_url: str,
        replica_url: str,
        catalog_base_url: Optional[str]
    ):
        self.http = http
        self.registry_url = registry_url.rstrip("/")
        self.replica_url = replica_url.rstrip("/")
        self.catalog_base_url = catalog_base_url.rstrip("/") if catalog_base_url else None

    async def upstream_latest(self, package_name: str) -> Optional[UpstreamRelease]:
        """``latest`` dist-tag with its publish time, None if the package does not exist"""
        doc = await self._document(f"{self.registry_url}/{encode_package_name(package_name)}", package_name, "upstream")
        if doc is None:
            return None

        version = (doc.get("dist-tags") or {}).get("latest")
        times = doc.get("time") or {}
        published = times.get(version) if version else None
        if not version or not published:
            return None

        published_at = self._timestamp(published, package_name, "upstream")
        modified = times.get("modified")
        modified_at = self._timestamp(modified, package_name, "upstream") if modified else published_at
        return UpstreamRelease(version, published_at, modified_at)

    async def replica_view(self, package_name: str, version: str) -> ReplicaView:
        """Whether the replica lists ``version`` and when its copy of the document last changed"""
        doc = await self._document(f"{self.replica_url}/{encode_package_name(package_name)}", package_name, "replica")
        if doc is None:
            return ReplicaView(has_version=False)

        modified = (doc.get("time") or {}).get("modified")
        return ReplicaView(
            has_version=version in (doc.get("versions") or {}),
            modified_at=self._timestamp(modified, package_name, "replica") if modified else None,
        )

    @staticmethod
    def _timestamp(raw: Any, package_name: str, probe: str) -> datetime:
        try:
            return ensure_utc(datetime.fromisoformat(str(raw).replace("Z", "+00:00")))
        except ValueError as e:
            raise CanaryError(
                f"Unreadable timestamp in {probe} document",
                context={"package_name": package_name, "probe": probe, "timestamp": str(raw)[:100]},
                original_exception=e
            )

    async def catalog_has(self, package_name: str, version: str) -> bool:
        if self.catalog_base_url is None:
            raise CanaryError(
                "No catalog base URL configured",
                context={"package_name": package_name, "probe": "catalog"}
            )
        url = f"{self.catalog_base_url}/data/{package_name}/v{version}/metadata.json"
        try:
            await self.http.get(url)
        except ResourceNotFoundError:
            return False
        except HttpError as e:
            raise CanaryError(
                "Catalog probe failed",
                context={"package_name": package_name, "probe": "catalog", **e.context},
                original_exception=e
            )
        return True

    async def _document(self, url: str, package_name: str, probe: str) -> Optional[Dict[str, Any]]:
        try:
            doc = await self.http.get_json(url)
        except ResourceNotFoundError:
            return None
        except HttpError as e:
            raise CanaryError(
                f"{probe.capitalize()} probe failed",
                context={"package_name": package_name, "probe": probe, **e.context},
                original_exception=e
            )
        return doc if isinstance(doc, dict) else None


class PackageCanary:
    """One tick of the canary state machine per call"""

    def __init__(
        self,
        package_name: str,
        state_store: CanaryStateStore,
        probe: RegistryProbe,
        metrics: MetricsRecorder,
        publisher: Optional[ProbePublisher] = None,
        clock: WallClock = utc_now
    ):
        self.package_name = package_name
        self.state_store = state_store
        self.probe = probe
        self.metrics = metrics
        self.publisher = publisher
        self.clock = clock

    async def tick(self) -> CanaryState:
        try:
            state = await self.state_store.load()
            state = await self._advance(state, self.clock())
            state.updated_at = self.clock()
            await self.state_store.save(state)
        finally:
            await self.metrics.flush()

        logger.info(
            f"Canary {self.package_name}: tracking {state.version or '-'} ({state.phase.value})"
        )
        return state

    async def _advance(self, state: CanaryState, now: datetime) -> CanaryState:
        if state.phase == CanaryPhase.VISIBLE_IN_CATALOG:
            return await self._retire(state)

        if state.phase == CanaryPhase.NOT_YET_PUBLISHED:
            state = await self._discover(state)
            if state.phase == CanaryPhase.NOT_YET_PUBLISHED:
                self.metrics.put(CanaryMetricName.TRACKED_VERSION_COUNT, 0)
                return state

        if state.phase == CanaryPhase.PUBLISHED_UPSTREAM:
            published_at = ensure_utc(state.published_at)
            view = await self.probe.replica_view(self.package_name, state.version)

            if view.modified_at is not None:
                upstream_modified = ensure_utc(state.upstream_modified_at or published_at)
                lag = max(0.0, (upstream_modified - ensure_utc(view.modified_at)).total_seconds())
                # Largest lag seen while this version was pending
                state.estimated_replica_lag_seconds = max(lag, state.estimated_replica_lag_seconds or 0.0)
                self.metrics.put(CanaryMetricName.NPM_REPLICA_LAG, lag * 1000, MetricUnit.MILLISECONDS)

            if view.has_version:
                state.replica_seen_at = now
                state.phase = CanaryPhase.VISIBLE_IN_REPLICA
                logger.info(
                    f"{self.package_name}@{state.version} visible in replica after "
                    f"{(now - published_at).total_seconds():.0f}s "
                    f"(estimated replica lag {state.estimated_replica_lag_seconds or 0.0:.0f}s)"
                )
            self.metrics.put(
                CanaryMetricName.DWELL_TIME,
                (ensure_utc(state.replica_seen_at or now) - published_at).total_seconds() * 1000,
                MetricUnit.MILLISECONDS
            )

        if state.phase == CanaryPhase.VISIBLE_IN_REPLICA:
            if await self.probe.catalog_has(self.package_name, state.version):
                published_at = ensure_utc(state.published_at)
                state.catalog_seen_at = now
                state.phase = CanaryPhase.VISIBLE_IN_CATALOG
                elapsed = (now - published_at).total_seconds()
                self.metrics.put(CanaryMetricName.TIME_TO_CATALOG, elapsed * 1000, MetricUnit.MILLISECONDS)
                logger.info(f"{self.package_name}@{state.version} visible in catalog after {elapsed:.0f}s")

        self.metrics.put(CanaryMetricName.TRACKED_VERSION_COUNT, 1 if state.is_tracking else 0)
        return state

    async def _discover(self, state: CanaryState) -> CanaryState:
        """Start tracking the upstream ``latest`` version unless it was already retired"""
        latest = await self.probe.upstream_latest(self.package_name)
        if latest is None:
            logger.info(f"No published version of {self.package_name} upstream yet")
            return state

        if latest.version == state.retired_version:
            logger.info(
                f"Waiting for a new {self.package_name} version (latest {latest.version} already retired)"
            )
            return state

        return CanaryState(
            package_name=self.package_name,
            version=latest.version,
            phase=CanaryPhase.PUBLISHED_UPSTREAM,
            published_at=latest.published_at,
            upstream_modified_at=latest.modified_at,
            retired_version=state.retired_version,
        )

    async def _retire(self, state: CanaryState) -> CanaryState:
        logger.info(f"Retiring {self.package_name}@{state.version}")
        if self.publisher is not None:
            published = await self.publisher.publish(self.package_name, state.version)
            if published:
                logger.info(f"Published new probe version {self.package_name}@{published}")

        self.metrics.put(CanaryMetricName.TRACKED_VERSION_COUNT, 0)
        return CanaryState(package_name=self.package_name, retired_version=state.version)
